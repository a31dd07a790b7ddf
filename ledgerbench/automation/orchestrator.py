#!/usr/bin/env python3
"""One end-to-end load-test run: teardown, startup, readiness, warm-up, reset, load test.

The orchestrator is the only place that decides the process exit code:

    0    load test passed
    1    readiness timeout or store reset failure (load test not started)
    N    load-test runner exited with N
    130  interrupted by the operator
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ledgerbench.automation.config import StackConfig, load_config
from ledgerbench.automation.containers import ComposeClient
from ledgerbench.automation.db_reset import PsqlStore, reset_store, wait_for_store
from ledgerbench.automation.errors import (
    EXIT_FATAL,
    EXIT_INTERRUPTED,
    EXIT_OK,
    ConfigError,
    FatalRunError,
    RunInterrupted,
)
from ledgerbench.automation.readiness import wait_for_services
from ledgerbench.automation.results import RunRecorder
from ledgerbench.automation.run_log import RunLog
from ledgerbench.automation.stats_logger import StatsLogger
from ledgerbench.automation.warmup import run_warmup

TOTAL_STEPS = 7


class RunState(str, Enum):
    INIT = "INIT"
    TEARDOWN = "TEARDOWN"
    STARTUP = "STARTUP"
    AWAIT_READY = "AWAIT_READY"
    WARMUP = "WARMUP"
    RESET = "RESET"
    LOAD_TEST = "LOAD_TEST"
    DONE = "DONE"
    ABORTED = "ABORTED"
    INTERRUPTED = "INTERRUPTED"


CommandRunner = Callable[[str, List[str], Optional[Path]], int]


def build_plan(config: StackConfig, client: Optional[ComposeClient] = None) -> Dict:
    client = client or ComposeClient(config.compose)
    warmup = config.warmup
    return {
        "teardown": [client.down_argv(), client.force_remove_argv()],
        "startup": client.up_argv(),
        "readiness": {
            "services": config.readiness.services,
            "timeout_s": config.readiness.timeout_s,
            "interval_s": config.readiness.interval_s,
        },
        "warmup": {
            "read": warmup.base_url + warmup.read_path,
            "write": warmup.base_url + warmup.write_path,
            "ids": warmup.ids,
            "rounds": warmup.rounds,
        },
        "reset": {"service": config.store.service, "statements": config.store.statements},
        "load_test": {
            "argv": config.load_test.argv(),
            "cwd": str(config.load_test.cwd) if config.load_test.cwd else None,
        },
        "stats": config.stats.command,
    }


class Orchestrator:
    def __init__(
        self,
        config: StackConfig,
        log: RunLog,
        stats_log_path: Optional[Path] = None,
        stop_flag: Optional[Path] = None,
        client=None,
        store=None,
        runner: Optional[CommandRunner] = None,
        warmup: Callable = run_warmup,
        cancel: Optional[threading.Event] = None,
        result_path: Optional[Path] = None,
    ):
        self.config = config
        self.log = log
        self.stats_log_path = stats_log_path
        self.stop_flag = stop_flag
        self.client = client or ComposeClient(config.compose)
        self.store = store or PsqlStore(self.client, config.store)
        self.runner = runner or self._run_logged
        self.warmup = warmup
        self.cancel = cancel or threading.Event()
        self.state = RunState.INIT
        self.stats_logger: Optional[StatsLogger] = None
        self.steps_active = False
        self.recorder = RunRecorder(
            result_path or log.path.with_name(log.path.name + ".result.json"),
            plan=build_plan(config, self.client),
        )

    def _run_logged(self, title: str, argv: List[str], cwd: Optional[Path]) -> int:
        return self.log.run_command(title, argv, cwd=cwd)

    def _enter(self, state: RunState) -> None:
        self.state = state
        self.recorder.enter(state.value)

    def _step(self, number: int, message: str) -> None:
        self.log.write("")
        self.log.write(f"[STEP {number}/{TOTAL_STEPS}] {message}")

    def _best_effort(self, title: str, argv: Optional[List[str]]) -> None:
        if not argv:
            return
        code = self.runner(title, argv, self.client.cwd)
        if code != 0:
            self.log.write(f"[WARN] '{title}' exited with {code}; continuing.")

    def _start_stats_logger(self) -> None:
        if self.stats_log_path is None:
            return
        stats = self.config.stats
        self.stats_logger = StatsLogger(
            self.stats_log_path,
            os.getpid(),
            stop_flag=self.stop_flag,
            interval_s=stats.interval_s,
            command=stats.command,
            command_timeout_s=stats.command_timeout_s,
        )
        self.stats_logger.start()
        self.log.write(f"Stats logger started -> {self.stats_log_path}")

    def _stop_stats_logger(self, interrupted: bool) -> None:
        if self.stats_logger is None:
            return
        if self.stop_flag is not None:
            try:
                self.stop_flag.parent.mkdir(parents=True, exist_ok=True)
                self.stop_flag.touch()
            except OSError as exc:
                self.log.write(f"[WARN] could not create stop flag {self.stop_flag}: {exc}")
        grace = self.config.stats.stop_grace_s
        if interrupted:
            self.stats_logger.interrupt(grace)
        else:
            self.stats_logger.stop(grace)
        if self.stop_flag is not None:
            try:
                self.stop_flag.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                self.log.write(f"[WARN] could not remove stop flag {self.stop_flag}: {exc}")

    def _load_test(self) -> int:
        load_test = self.config.load_test
        argv = load_test.argv()
        code = self.runner(f"load test {load_test.scenario or ' '.join(argv)}", argv, load_test.cwd)
        self.recorder.note(f"exit={code}")
        if code != 0:
            self.log.write(f"Load test failed. Exit={code}")
        else:
            self.log.write("Load test completed successfully.")
        return code

    def run(self) -> int:
        exit_code = EXIT_FATAL
        interrupted = False
        self.log.write(f"[orchestrator] run started (config={self.config.source})")
        self.steps_active = True
        try:
            self._enter(RunState.TEARDOWN)
            self._step(1, "Stopping and removing previous containers (failures ignored)...")
            self._best_effort("docker compose down -v", self.client.down_argv())
            self._step(2, "Force-removing leftover containers (failures ignored)...")
            self._best_effort("docker rm -f", self.client.force_remove_argv())

            self._enter(RunState.STARTUP)
            self._step(3, "Building and starting containers (failures ignored)...")
            self._best_effort("docker compose up", self.client.up_argv())
            self._start_stats_logger()

            self._enter(RunState.AWAIT_READY)
            self._step(4, "Waiting for containers to become ready...")
            readiness = self.config.readiness
            wait_for_services(
                self.client,
                readiness.services,
                timeout_s=readiness.timeout_s,
                interval_s=readiness.interval_s,
                log=self.log,
                cancel=self.cancel,
            )

            self._enter(RunState.WARMUP)
            self._step(5, "Warming up the API...")
            report = self.warmup(self.config.warmup, log=self.log, cancel=self.cancel)
            self.recorder.warmup = {"ok": report.ok, "failed": report.failed}

            self._enter(RunState.RESET)
            self._step(6, "Resetting the database...")
            store = self.config.store
            wait_for_store(
                self.store,
                timeout_s=store.timeout_s,
                interval_s=store.interval_s,
                log=self.log,
                cancel=self.cancel,
            )
            reset_store(self.store, store.statements, log=self.log)

            self._enter(RunState.LOAD_TEST)
            self._step(7, "Running the load test...")
            exit_code = self._load_test()
            self._enter(RunState.DONE)
        except FatalRunError as exc:
            self.steps_active = False
            self.recorder.record_error(exc)
            self.log.write(f"[ABORTED] {self.state.value} failed: {exc}")
            self._enter(RunState.ABORTED)
            exit_code = EXIT_FATAL
        except (RunInterrupted, KeyboardInterrupt) as exc:
            self.steps_active = False
            interrupted = True
            self.cancel.set()
            self.recorder.record_error(exc)
            self.log.write(f"[INTERRUPT] run interrupted during {self.state.value}")
            self._enter(RunState.INTERRUPTED)
            exit_code = EXIT_INTERRUPTED
        finally:
            self.steps_active = False
            try:
                self._stop_stats_logger(interrupted)
                if interrupted:
                    self.log.write("Stopping containers after interrupt...")
                    self.client.stop()
            except (RunInterrupted, KeyboardInterrupt):
                self.cancel.set()
                self.log.write("[INTERRUPT] interrupted during cleanup")
            if self.cancel.is_set() and self.state is not RunState.INTERRUPTED:
                # signal arrived after the last step had already finished
                self.log.write(f"[INTERRUPT] run interrupted after {self.state.value}")
                self._enter(RunState.INTERRUPTED)
                exit_code = EXIT_INTERRUPTED
                self.log.write("Stopping containers after interrupt...")
                self.client.stop()
            self.recorder.finalize(exit_code)
        self.log.write(f"[orchestrator] run finished state={self.state.value} exit={exit_code}")
        return exit_code


def install_signal_handlers(cancel: threading.Event, raise_when: Optional[Callable[[], bool]] = None) -> None:
    """Set cancel on SIGINT/SIGTERM.

    The first signal also raises RunInterrupted, but only while raise_when()
    is true; outside the steps the run notices cancel during cleanup. Later
    signals are ignored so cleanup can finish.
    """

    def _handler(signum, _frame):
        if cancel.is_set():
            return
        cancel.set()
        if raise_when is None or raise_when():
            raise RunInterrupted(f"received signal {signum}")

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def default_log_path() -> Path:
    return Path(f"__test_logs-{datetime.now().strftime('%Y%m%d-%H%M%S')}.txt")


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Run one ledger load test end to end")
    parser.add_argument("log_file", nargs="?", type=Path, help="Main log file (default: __test_logs-<ts>.txt)")
    parser.add_argument("--config", help="Stack config YAML (default: packaged stack.yaml)")
    parser.add_argument("--stats-log", type=Path, help="Write docker stats snapshots here")
    parser.add_argument("--stop-flag", type=Path, help="Sentinel file that also stops the stats logger")
    parser.add_argument("--result", type=Path, help="Run result JSON (default: <log_file>.result.json)")
    parser.add_argument("--dry-run", action="store_true", help="Print the planned commands and exit")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"[orchestrator] error: {exc}", file=sys.stderr)
        return EXIT_FATAL

    if args.dry_run:
        try:
            print(json.dumps(build_plan(config), indent=2))
        except BrokenPipeError:
            pass
        return EXIT_OK

    cancel = threading.Event()
    try:
        with RunLog(args.log_file or default_log_path()) as log:
            orchestrator = Orchestrator(
                config,
                log,
                stats_log_path=args.stats_log,
                stop_flag=args.stop_flag,
                cancel=cancel,
                result_path=args.result,
            )
            install_signal_handlers(cancel, raise_when=lambda: orchestrator.steps_active)
            return orchestrator.run()
    except (RunInterrupted, KeyboardInterrupt):
        print("[orchestrator] interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
