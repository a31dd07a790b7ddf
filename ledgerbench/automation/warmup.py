#!/usr/bin/env python3
"""Best-effort warm-up traffic so cold-start cost stays out of the measured run."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from ledgerbench.automation.config import WarmupSettings
from ledgerbench.automation.errors import RunInterrupted
from ledgerbench.automation.run_log import RunLog


@dataclass
class WarmupReport:
    ok: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.ok + self.failed


def _request(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float,
    report: WarmupReport,
    log: Optional[RunLog],
    payload: Optional[dict] = None,
) -> None:
    try:
        resp = session.request(method, url, json=payload, timeout=timeout)
    except requests.RequestException as exc:
        _record_failure(report, log, f"{method} {url} failed: {type(exc).__name__}: {exc}")
        return
    # drain the body so the connection goes back to the pool
    _ = resp.content
    if 200 <= resp.status_code < 300:
        report.ok += 1
    else:
        _record_failure(report, log, f"{method} {url} returned HTTP {resp.status_code}")


def _record_failure(report: WarmupReport, log: Optional[RunLog], message: str) -> None:
    report.failed += 1
    report.errors.append(message)
    if log is not None:
        log.write(f"[warmup] {message}")


def run_warmup(
    settings: WarmupSettings,
    log: Optional[RunLog] = None,
    session: Optional[requests.Session] = None,
    cancel: Optional[threading.Event] = None,
) -> WarmupReport:
    """Issue `rounds` x `ids` read and write requests; individual failures are only logged."""
    report = WarmupReport()
    owns_session = session is None
    session = session or requests.Session()
    try:
        for round_no in range(1, settings.rounds + 1):
            for entity_id in settings.ids:
                if cancel is not None and cancel.is_set():
                    raise RunInterrupted("warm-up cancelled")
                read_url = settings.base_url + settings.read_path.format(id=entity_id)
                write_url = settings.base_url + settings.write_path.format(id=entity_id)
                _request(session, "GET", read_url, settings.request_timeout_s, report, log)
                _request(
                    session,
                    "POST",
                    write_url,
                    settings.request_timeout_s,
                    report,
                    log,
                    payload=settings.payload,
                )
            if log is not None:
                log.write(f"[warmup] round {round_no}/{settings.rounds} done")
    finally:
        if owns_session:
            session.close()
    if log is not None:
        log.write(f"[warmup] completed: {report.ok} ok, {report.failed} failed")
    return report
