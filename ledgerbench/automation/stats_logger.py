#!/usr/bin/env python3
"""Periodic container resource snapshots (docker stats) for the duration of a run.

Runs either as a background thread of the orchestrator (stopped through a
threading.Event) or as a standalone process watching another PID and an
optional stop-flag file:

    python -m ledgerbench.automation.stats_logger <logfile> <main_pid> [stop_flag]
"""

from __future__ import annotations

import argparse
import signal
import subprocess
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ledgerbench.automation.errors import EXIT_INTERRUPTED, EXIT_OK
from ledgerbench.automation.process_utils import is_alive, utf8_environment

DEFAULT_INTERVAL_S = 2.0
DEFAULT_COMMAND = ["docker", "stats", "--no-stream"]
POLL_SLICE_S = 0.1


def stats_timestamp() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


class StatsLogger:
    def __init__(
        self,
        log_path: Path,
        watched_pid: int,
        stop_flag: Optional[Path] = None,
        stop_event: Optional[threading.Event] = None,
        interval_s: float = DEFAULT_INTERVAL_S,
        command: Optional[List[str]] = None,
        command_timeout_s: float = 10.0,
    ):
        self.log_path = Path(log_path)
        self.watched_pid = watched_pid
        self.stop_flag = Path(stop_flag) if stop_flag else None
        self.stop_event = stop_event or threading.Event()
        self.interval_s = interval_s
        self.command = list(command or DEFAULT_COMMAND)
        self.command_timeout_s = command_timeout_s
        self.exit_status: Optional[int] = None
        self._interrupted = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _write(self, fh, message: str) -> None:
        fh.write(f"{stats_timestamp()} {message}\n")
        fh.flush()

    def _stop_requested(self) -> bool:
        if self.stop_event.is_set():
            return True
        if self.stop_flag is None:
            return False
        try:
            return self.stop_flag.exists()
        except OSError:
            return False

    def _wait_interval(self) -> None:
        """Sleep one interval in short slices so a stop flag is seen promptly."""
        deadline = time.monotonic() + self.interval_s
        while not self._stop_requested():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.stop_event.wait(min(POLL_SLICE_S, remaining))

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        try:
            proc.communicate(timeout=POLL_SLICE_S * 10)
        except subprocess.TimeoutExpired:
            pass

    def _snapshot(self, fh) -> None:
        try:
            proc = subprocess.Popen(
                self.command,
                env=utf8_environment(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            self._write(fh, f"[docker stats error] {exc}")
            return
        deadline = time.monotonic() + self.command_timeout_s
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_SLICE_S)
                break
            except subprocess.TimeoutExpired:
                if self._stop_requested():
                    # abandoned sample; the loop reports the stop
                    self._kill(proc)
                    return
                if time.monotonic() >= deadline:
                    self._kill(proc)
                    self._write(fh, f"[docker stats error] timed out after {self.command_timeout_s:g}s")
                    return
        if proc.returncode != 0:
            detail = (stderr or "").strip().splitlines()
            self._write(fh, f"[docker stats error] exit={proc.returncode} {detail[0] if detail else ''}".rstrip())
            return
        for line in (stdout or "").splitlines():
            fh.write(f"{stats_timestamp()} {line}\n")
        # blank line separates samples
        fh.write("\n")
        fh.flush()

    def run(self) -> int:
        """Tick until stopped; return EXIT_OK, or EXIT_INTERRUPTED after an interrupt."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        status = EXIT_OK
        with self.log_path.open("a", encoding="utf-8") as fh:
            self._write(fh, f"Logger started. Watching PID={self.watched_pid}")
            while True:
                if self._interrupted.is_set():
                    self._write(fh, "Logger interrupted by signal. Exiting.")
                    status = EXIT_INTERRUPTED
                    break
                if self._stop_requested():
                    self._write(fh, "Stop signal detected. Stopping logger.")
                    break
                if not is_alive(self.watched_pid):
                    self._write(fh, "Watched process exited. Stopping logger.")
                    break
                self._snapshot(fh)
                self._wait_interval()
        self.exit_status = status
        return status

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="stats-logger", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, grace_s: float = 2.0) -> None:
        self.stop_event.set()
        self.join(grace_s)

    def request_interrupt(self) -> None:
        self._interrupted.set()
        self.stop_event.set()

    def interrupt(self, grace_s: float = 2.0) -> None:
        self.request_interrupt()
        self.join(grace_s)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Append docker stats snapshots to a log until told to stop")
    parser.add_argument("logfile", type=Path)
    parser.add_argument("main_pid", type=int)
    parser.add_argument("stop_flag", nargs="?", type=Path, default=None)
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL_S)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logger = StatsLogger(args.logfile, args.main_pid, stop_flag=args.stop_flag, interval_s=args.interval)

    def _on_signal(_signum, _frame):
        logger.request_interrupt()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    return logger.run()


if __name__ == "__main__":
    sys.exit(main())
