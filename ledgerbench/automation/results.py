#!/usr/bin/env python3
"""Helpers for recording what a run did: states traversed, timings, exit code."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class StateRecord:
    state: str
    started_at: str
    duration_s: Optional[float] = None
    detail: Optional[str] = None


@dataclass
class RunRecorder:
    result_path: Path
    plan: Dict
    states: List[StateRecord] = field(default_factory=list)
    warmup: Optional[Dict] = None
    exit_code: Optional[int] = None
    error: Optional[Dict] = None
    _current_started: float = 0.0

    def enter(self, state: str) -> None:
        self._close_current()
        self.states.append(StateRecord(state=state, started_at=_utc_now()))
        self._current_started = time.monotonic()

    def note(self, detail: str) -> None:
        if self.states:
            self.states[-1].detail = detail

    def record_error(self, exc: BaseException) -> None:
        self.error = {"type": type(exc).__name__, "message": str(exc)}

    def _close_current(self) -> None:
        if self.states and self.states[-1].duration_s is None:
            self.states[-1].duration_s = round(time.monotonic() - self._current_started, 3)

    @property
    def final_state(self) -> Optional[str]:
        return self.states[-1].state if self.states else None

    def finalize(self, exit_code: int) -> None:
        self._close_current()
        self.exit_code = exit_code
        payload = {
            "plan": self.plan,
            "states": [asdict(record) for record in self.states],
            "warmup": self.warmup,
            "exit_code": exit_code,
            "error": self.error,
            "generated_at": _utc_now(),
        }
        self.result_path.parent.mkdir(parents=True, exist_ok=True)
        self.result_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def read_result(path: Path) -> Optional[Dict]:
    if not path or not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
