#!/usr/bin/env python3
"""Bring the ledger store back to a known baseline before the measured run.

The reset statements run as a single transaction through psql; any error
rolls everything back and aborts the run before the load test starts.
"""

from __future__ import annotations

import re
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from ledgerbench.automation.config import StoreSettings
from ledgerbench.automation.errors import FatalRunError, RunInterrupted
from ledgerbench.automation.process_utils import utf8_environment
from ledgerbench.automation.run_log import RunLog

PING_TIMEOUT_S = 10.0
EXEC_TIMEOUT_S = 120.0
_PSQL_ERROR_RE = re.compile(r"psql:<stdin>:(\d+):\s*ERROR:")


class ResetError(FatalRunError):
    def __init__(
        self,
        message: str,
        statement_index: Optional[int] = None,
        statement: Optional[str] = None,
        output: str = "",
    ):
        self.statement_index = statement_index
        self.statement = statement
        self.output = output
        if statement is not None:
            message = f"{message} (statement {statement_index}: {statement})"
        super().__init__(message)


@dataclass
class ExecResult:
    returncode: int
    output: str
    failed_index: Optional[int] = None  # 1-based index of the failing statement

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def build_script(statements: List[str]) -> Tuple[str, List[int]]:
    """Join statements into a psql script; also return each statement's first line number."""
    lines: List[str] = []
    starts: List[int] = []
    for stmt in statements:
        body = stmt.strip().rstrip(";").strip()
        starts.append(len(lines) + 1)
        lines.extend((body + ";").splitlines())
    return "\n".join(lines) + "\n", starts


def locate_failed_statement(output: str, starts: List[int]) -> Optional[int]:
    match = _PSQL_ERROR_RE.search(output)
    if not match:
        return None
    line_no = int(match.group(1))
    index = None
    for idx, start in enumerate(starts, start=1):
        if start <= line_no:
            index = idx
    return index


class PsqlStore:
    """Runs pg_isready / psql inside the store container through `docker exec`."""

    def __init__(self, client, settings: StoreSettings):
        self.client = client
        self.settings = settings
        self._container_id: Optional[str] = None
        self._has_pg_isready: Optional[bool] = None

    def container_id(self) -> Optional[str]:
        if self._container_id is None:
            self._container_id = self.client.first_container(self.settings.service)
        return self._container_id

    def _run(self, argv: List[str], timeout: float, stdin: Optional[str] = None) -> ExecResult:
        try:
            cp = subprocess.run(
                argv,
                input=stdin,
                env=utf8_environment(),
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return ExecResult(returncode=124, output=f"timed out after {timeout:g}s")
        except OSError as exc:
            return ExecResult(returncode=127, output=str(exc))
        return ExecResult(returncode=cp.returncode, output=cp.stdout or "")

    def _psql(self, *args: str) -> List[str]:
        return ["psql", "-U", self.settings.user, "-d", self.settings.database, *args]

    def ping(self) -> bool:
        cid = self.container_id()
        if not cid:
            return False
        if self._has_pg_isready is None:
            probe = self._run(
                self.client.exec_argv(cid, ["sh", "-lc", "command -v pg_isready >/dev/null 2>&1"]),
                PING_TIMEOUT_S,
            )
            self._has_pg_isready = probe.ok
        if self._has_pg_isready:
            argv = ["pg_isready", "-U", self.settings.user, "-d", self.settings.database, "-q"]
        else:
            argv = self._psql("-c", "SELECT 1;")
        return self._run(self.client.exec_argv(cid, argv), PING_TIMEOUT_S).ok

    def execute(self, statements: List[str]) -> ExecResult:
        cid = self.container_id()
        if not cid:
            return ExecResult(returncode=1, output=f"no container for service {self.settings.service}")
        script, starts = build_script(statements)
        argv = self.client.exec_argv(
            cid,
            self._psql("-v", "ON_ERROR_STOP=1", "--single-transaction", "-f", "-"),
            interactive=True,
        )
        result = self._run(argv, EXEC_TIMEOUT_S, stdin=script)
        if not result.ok:
            result.failed_index = locate_failed_statement(result.output, starts)
        return result


def wait_for_store(
    store,
    timeout_s: float = 90.0,
    interval_s: float = 3.0,
    log: Optional[RunLog] = None,
    cancel: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], object]] = None,
) -> None:
    if sleep is None:
        sleep = cancel.wait if cancel is not None else time.sleep
    deadline = clock() + timeout_s
    while True:
        if cancel is not None and cancel.is_set():
            raise RunInterrupted("store wait cancelled")
        if store.ping():
            return
        remaining = deadline - clock()
        if remaining <= 0:
            break
        if log is not None:
            log.write("Waiting for the database to accept connections...")
        sleep(min(interval_s, remaining))
    raise ResetError(f"store did not accept connections within {timeout_s:g}s")


def reset_store(store, statements: List[str], log: Optional[RunLog] = None) -> None:
    """Apply every statement or none of them; raise ResetError on any failure."""
    if not statements:
        if log is not None:
            log.write("No reset statements configured; store left as is.")
        return
    result = store.execute(statements)
    if log is not None and result.output.strip():
        log.write_block(result.output)
    if result.ok:
        if log is not None:
            log.write(f"Store reset: {len(statements)} statement(s) committed.")
        return
    idx = result.failed_index
    statement = statements[idx - 1] if idx and 0 < idx <= len(statements) else None
    if log is not None:
        log.write(f"Store reset failed (exit={result.returncode}); transaction rolled back.")
    raise ResetError("store reset failed", statement_index=idx, statement=statement, output=result.output)
