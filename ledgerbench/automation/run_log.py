#!/usr/bin/env python3
"""Append-only, timestamped run log that also echoes to the console."""

from __future__ import annotations

import subprocess
import sys
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import List, Optional, TextIO

from ledgerbench.automation.process_utils import exit_status, terminate_process, utf8_environment

COMMAND_NOT_FOUND = 127


def timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


class RunLog:
    """Single sink for one run.

    Lines are only ever appended and each write is flushed before returning,
    so a reader tailing the file never sees a partial or reordered record.
    """

    def __init__(self, path: Path, echo: bool = True, stream: Optional[TextIO] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("a", encoding="utf-8")
        self._echo = echo
        self._stream = stream
        self._lock = Lock()

    def __enter__(self) -> "RunLog":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def write(self, message: str = "") -> None:
        line = f"{timestamp()} {message}".rstrip() + "\n"
        with self._lock:
            if self._fh.closed:
                return
            self._fh.write(line)
            self._fh.flush()
            if self._echo:
                out = self._stream or sys.stdout
                out.write(line)
                out.flush()

    def write_block(self, text: str) -> None:
        for line in text.splitlines():
            self.write(line)

    def run_command(
        self,
        title: str,
        argv: List[str],
        cwd: Optional[Path] = None,
    ) -> int:
        """Run argv, streaming merged stdout/stderr into the log; return its exit code.

        The child is always reaped: if the caller is interrupted while the
        command runs, the child is terminated before the exception propagates.
        """
        self.write(f"[CMD] {title}")
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=utf8_environment(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except (FileNotFoundError, PermissionError) as exc:
            self.write(f"[CMD] {title}: cannot execute {argv[0]}: {exc}")
            return COMMAND_NOT_FOUND
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                self.write(line.rstrip("\r\n"))
            return exit_status(proc.wait())
        finally:
            if proc.poll() is None:
                terminate_process(proc)
            if proc.stdout is not None:
                proc.stdout.close()

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()
