#!/usr/bin/env python3
"""Repeat the load-test run N times, each with its own logs and stop flag.

Typical usage:
  ledgerbench            # one run
  ledgerbench 5          # five sequential runs
  ledgerbench 3 --config my-stack.yaml --summary runs.json

Each run executes the orchestrator in its own process group so an operator
interrupt can stop everything it started (docker, maven, the JVM) as a unit.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import signal
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from ledgerbench.automation.errors import EXIT_INTERRUPTED, EXIT_OK, EXIT_USAGE, RunInterrupted
from ledgerbench.automation.process_utils import exit_status, managed_process

_RUNS_RE = re.compile(r"^[0-9]+$")
BANNER = "=" * 68


@dataclass
class RunPaths:
    iteration: int
    timestamp: str
    main_log: Path
    stats_log: Path
    stop_flag: Path
    result: Path


@dataclass
class RunOutcome:
    iteration: int
    exit_code: int
    main_log: str
    stats_log: str
    result: str


def parse_run_count(raw: str) -> int:
    if not _RUNS_RE.match(str(raw).strip()):
        raise ValueError("<runs> must be an integer >= 1")
    count = int(raw)
    if count < 1:
        raise ValueError("<runs> must be an integer >= 1")
    return count


def allocate_run_paths(
    log_dir: Path,
    iteration: int,
    now: Optional[datetime] = None,
    pid: Optional[int] = None,
) -> RunPaths:
    """Reserve timestamp-qualified log names for one run.

    The main log is created exclusively, so two launchers starting in the same
    second still get distinct sinks; the stop flag also carries the launcher
    PID.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    pid = os.getpid() if pid is None else pid
    for attempt in range(0, 1000):
        suffix = "" if attempt == 0 else f"_{attempt}"
        stem = f"__{ts}-iter{iteration}{suffix}"
        main_log = log_dir / f"{stem}-test_logs.txt"
        try:
            with main_log.open("x", encoding="utf-8"):
                pass
        except FileExistsError:
            continue
        return RunPaths(
            iteration=iteration,
            timestamp=ts,
            main_log=main_log,
            stats_log=log_dir / f"{stem}-stats_logs.txt",
            stop_flag=log_dir / f"stop-logging.iter{iteration}.{ts}.{pid}{suffix}.flg",
            result=log_dir / f"{stem}-result.json",
        )
    raise RuntimeError(f"failed to allocate unique log names under {log_dir} for iteration {iteration}")


def signal_logger_stop(stop_flag: Path, grace_s: float) -> None:
    """Create the stop flag, give the logger a moment to see it, then remove it."""
    try:
        stop_flag.touch()
    except OSError:
        return
    if grace_s > 0:
        time.sleep(grace_s)
    stop_flag.unlink(missing_ok=True)


def orchestrator_argv(paths: RunPaths, config: Optional[str]) -> List[str]:
    argv = [
        sys.executable,
        "-m",
        "ledgerbench.automation.orchestrator",
        str(paths.main_log),
        "--stats-log",
        str(paths.stats_log),
        "--stop-flag",
        str(paths.stop_flag),
        "--result",
        str(paths.result),
    ]
    if config:
        argv += ["--config", config]
    return argv


def make_executor(config: Optional[str], grace_s: float, logger_grace_s: float) -> Callable[[RunPaths], int]:
    def _execute(paths: RunPaths) -> int:
        with managed_process(f"run {paths.iteration}", orchestrator_argv(paths, config), grace_s=grace_s) as proc:
            try:
                code = exit_status(proc.wait())
            except (KeyboardInterrupt, RunInterrupted):
                # tell the run's logger first; managed_process escalates on the way out
                try:
                    paths.stop_flag.touch()
                except OSError:
                    pass
                raise
        signal_logger_stop(paths.stop_flag, logger_grace_s)
        return code

    return _execute


def run_repetitions(
    runs: int,
    log_dir: Path,
    execute: Callable[[RunPaths], int],
    now: Callable[[], datetime] = datetime.now,
    outcomes: Optional[List[RunOutcome]] = None,
) -> List[RunOutcome]:
    """Run sequentially, stopping at the first run that does not exit 0."""
    outcomes = [] if outcomes is None else outcomes
    for iteration in range(1, runs + 1):
        paths = allocate_run_paths(log_dir, iteration, now=now())
        print(BANNER)
        print(f" Starting run {iteration}/{runs} - {paths.timestamp}")
        print("  Logs:")
        print(f"    Main : {paths.main_log}")
        print(f"    Stats: {paths.stats_log}")
        print(BANNER, flush=True)
        code = execute(paths)
        outcomes.append(
            RunOutcome(
                iteration=iteration,
                exit_code=code,
                main_log=str(paths.main_log),
                stats_log=str(paths.stats_log),
                result=str(paths.result),
            )
        )
        if code != EXIT_OK:
            print(f"[launcher] run {iteration}/{runs} failed with exit={code}; skipping remaining runs.", file=sys.stderr)
            break
        print(f"[OK] Run {iteration}/{runs} finished. See the logs above.")
    return outcomes


class _UsageParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        raise SystemExit(EXIT_USAGE)


def parse_args(argv: Optional[List[str]] = None):
    parser = _UsageParser(prog="ledgerbench", description="Run the ledger load test one or more times")
    parser.add_argument("runs", nargs="?", default="1", help="How many runs to execute (integer >= 1, default 1)")
    parser.add_argument("--config", help="Stack config YAML passed to every run")
    parser.add_argument("--log-dir", type=Path, default=Path("."), help="Directory for per-run logs")
    parser.add_argument("--summary", type=Path, help="Write a JSON summary of all runs to this path")
    parser.add_argument("--grace", type=float, default=1.0, help="Seconds between INT, TERM and KILL on interrupt")
    parser.add_argument("--logger-grace", type=float, default=2.0, help="Seconds to leave the stop flag in place")
    return parser.parse_args(argv)


def _raise_interrupt(signum, _frame):
    raise RunInterrupted(f"received signal {signum}")


def main(argv: Optional[List[str]] = None, execute: Optional[Callable[[RunPaths], int]] = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        return int(exc.code or 0)
    try:
        runs = parse_run_count(args.runs)
    except ValueError as exc:
        print(f"Usage: ledgerbench <runs>\nError: {exc}", file=sys.stderr)
        return EXIT_USAGE

    execute = execute or make_executor(args.config, args.grace, args.logger_grace)
    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    outcomes: List[RunOutcome] = []
    try:
        run_repetitions(runs, args.log_dir, execute, outcomes=outcomes)
    except (KeyboardInterrupt, RunInterrupted):
        for flag in args.log_dir.glob(f"stop-logging.iter*.*.{os.getpid()}*.flg"):
            flag.unlink(missing_ok=True)
        print()
        print("[INTERRUPT] Run interrupted by user.")
        return EXIT_INTERRUPTED
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
        if args.summary:
            args.summary.write_text(json.dumps([asdict(o) for o in outcomes], indent=2), encoding="utf-8")

    failed = next((o for o in outcomes if o.exit_code != EXIT_OK), None)
    if failed is not None:
        return failed.exit_code
    print(BANNER)
    print(f"[DONE] All {runs} runs completed.")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
