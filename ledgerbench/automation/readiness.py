#!/usr/bin/env python3
"""Block until every essential service is running and, where declared, healthy."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from ledgerbench.automation.containers import ContainerState
from ledgerbench.automation.errors import FatalRunError, RunInterrupted
from ledgerbench.automation.run_log import RunLog

DEFAULT_TIMEOUT_S = 90.0
DEFAULT_INTERVAL_S = 5.0


@dataclass
class ServiceStatus:
    name: str
    instances: List[ContainerState] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        return bool(self.instances)

    @property
    def running(self) -> bool:
        return self.exists and all(inst.running for inst in self.instances)

    @property
    def has_health_check(self) -> bool:
        return any(inst.has_health_check for inst in self.instances)

    @property
    def health_state(self) -> Optional[str]:
        if not self.has_health_check:
            return None
        for inst in self.instances:
            if not inst.healthy:
                return inst.health or "none"
        return "healthy"


class ReadinessTimeout(FatalRunError):
    def __init__(self, timeout_s: float, statuses: List[ServiceStatus]):
        self.timeout_s = timeout_s
        self.statuses = statuses
        pending = [s.name for s in statuses if not service_ready(s)]
        super().__init__(f"services not ready after {timeout_s:g}s: {', '.join(pending) or '-'}")


def probe_service(client, name: str) -> ServiceStatus:
    """Fresh view of one service; nothing is carried over between calls."""
    return ServiceStatus(name=name, instances=[client.inspect(cid) for cid in client.service_ids(name)])


def probe_services(client, services: Iterable[str]) -> List[ServiceStatus]:
    return [probe_service(client, name) for name in services]


def service_ready(status: ServiceStatus) -> bool:
    if not status.exists:
        return False
    if not status.running:
        return False
    if status.has_health_check:
        return all(inst.healthy for inst in status.instances)
    return True


def all_services_ready(statuses: Iterable[ServiceStatus]) -> bool:
    return all(service_ready(status) for status in statuses)


def format_diagnostics(statuses: Iterable[ServiceStatus]) -> List[str]:
    lines: List[str] = []
    for status in statuses:
        verdict = "ready" if service_ready(status) else "NOT READY"
        lines.append(f"{status.name}: instances={len(status.instances)} {verdict}")
        for inst in status.instances:
            lines.append(f"  {inst.id[:12]} status={inst.status} health={inst.health or 'none'}")
    return lines


def _emit(log: Optional[RunLog], message: str) -> None:
    if log is not None:
        log.write(message)


def wait_for_services(
    client,
    services: List[str],
    timeout_s: float = DEFAULT_TIMEOUT_S,
    interval_s: float = DEFAULT_INTERVAL_S,
    log: Optional[RunLog] = None,
    cancel: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], object]] = None,
) -> List[ServiceStatus]:
    """Poll until all services are ready or the deadline passes.

    Returns the statuses of the tick that observed success. Raises
    ReadinessTimeout (after dumping every service's state to the log) once
    the deadline has been reached, and RunInterrupted if cancel is set.
    """
    if sleep is None:
        sleep = cancel.wait if cancel is not None else time.sleep
    deadline = clock() + timeout_s
    while True:
        if cancel is not None and cancel.is_set():
            raise RunInterrupted("readiness wait cancelled")
        statuses = probe_services(client, services)
        ready = sum(1 for status in statuses if service_ready(status))
        _emit(log, f"Waiting... ({ready} of {len(statuses)} services ready)")
        if ready == len(statuses):
            _emit(log, "All essential services are ready. Continuing.")
            return statuses
        remaining = deadline - clock()
        if remaining <= 0:
            break
        sleep(min(interval_s, remaining))

    _emit(log, "")
    _emit(log, "--- CURRENT CONTAINER STATE ---")
    for line in format_diagnostics(statuses):
        _emit(log, line)
    ps_table = getattr(client, "ps_table", None)
    if ps_table is not None and log is not None:
        log.write_block(ps_table())
    _emit(log, f"Timeout: not all containers became ready within {timeout_s:g} seconds.")
    raise ReadinessTimeout(timeout_s, statuses)
