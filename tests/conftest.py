"""
Shared fixtures for the ledgerbench test suite.

Docker, psql and the HTTP API are replaced with in-memory fakes so the
orchestration logic can be exercised without a container runtime.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from ledgerbench.automation.config import load_config
from ledgerbench.automation.containers import ContainerState
from ledgerbench.automation.db_reset import ExecResult
from ledgerbench.automation.run_log import RunLog
from ledgerbench.automation.warmup import WarmupReport


# Prints one fake "docker stats" table and exits 0.
FAKE_STATS_COMMAND = [sys.executable, "-c", "print('CONTAINER ID   NAME   CPU %')"]


class FakeClock:
    """Monotonic clock that only moves when the fake sleep is called."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeComposeClient:
    """
    Stand-in for ComposeClient.

    `services` maps a service name to its container states. A list of
    mappings can be given as `timeline` to change what is observed on
    successive probes of the first service.
    """

    def __init__(self, services: Optional[Dict[str, List[ContainerState]]] = None, timeline=None):
        self.services = dict(services or {})
        self.timeline = list(timeline or [])
        self.cwd = None
        self.stopped = 0
        self.probe_rounds = 0
        self._by_id: Dict[str, ContainerState] = {}

    def service_ids(self, service: str) -> List[str]:
        current = self.services
        if self.timeline:
            # a probe round starts when the first service is queried
            if service == next(iter(self.timeline[0])):
                self.probe_rounds += 1
            current = self.timeline[min(max(self.probe_rounds - 1, 0), len(self.timeline) - 1)]
        instances = current.get(service, [])
        for inst in instances:
            self._by_id[inst.id] = inst
        return [inst.id for inst in instances]

    def first_container(self, service: str) -> Optional[str]:
        ids = self.service_ids(service)
        return ids[0] if ids else None

    def inspect(self, container_id: str) -> ContainerState:
        return self._by_id.get(container_id, ContainerState(id=container_id, status="unknown"))

    def ps_table(self) -> str:
        return "NAME      STATUS\nledger-a  Up 3 seconds"

    def down_argv(self) -> List[str]:
        return ["docker", "compose", "down", "-v"]

    def force_remove_argv(self) -> Optional[List[str]]:
        return ["docker", "rm", "-f", "postgres"]

    def up_argv(self) -> List[str]:
        return ["docker", "compose", "--compatibility", "up", "-d", "--build", "--force-recreate"]

    def stop(self) -> None:
        self.stopped += 1


class FakeStore:
    """Store whose ping/execute outcomes are scripted."""

    def __init__(self, ping_results=None, fail_at: Optional[int] = None, returncode: int = 3):
        self.ping_results = list(ping_results or [True])
        self.fail_at = fail_at
        self.returncode = returncode
        self.pings = 0
        self.executed: List[List[str]] = []

    def ping(self) -> bool:
        self.pings += 1
        if len(self.ping_results) > 1:
            return self.ping_results.pop(0)
        return self.ping_results[0]

    def execute(self, statements: List[str]) -> ExecResult:
        self.executed.append(list(statements))
        if self.fail_at is None:
            return ExecResult(returncode=0, output="BEGIN\nCOMMIT\n")
        output = f'psql:<stdin>:{self.fail_at}: ERROR:  relation "accounts" does not exist\n'
        return ExecResult(returncode=self.returncode, output=output, failed_index=self.fail_at)


class RecordingRunner:
    """Command runner that records every call and returns scripted exit codes."""

    def __init__(self, codes: Optional[Dict[str, int]] = None, load_test_code: int = 0):
        self.codes = dict(codes or {})
        self.load_test_code = load_test_code
        self.calls: List[tuple] = []

    def __call__(self, title: str, argv: List[str], cwd) -> int:
        self.calls.append((title, list(argv), cwd))
        if title.startswith("load test"):
            return self.load_test_code
        return self.codes.get(title, 0)

    @property
    def titles(self) -> List[str]:
        return [call[0] for call in self.calls]

    @property
    def load_test_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0].startswith("load test")]


def healthy(container_id: str) -> ContainerState:
    return ContainerState(id=container_id, status="running", health="healthy")


def running(container_id: str) -> ContainerState:
    return ContainerState(id=container_id, status="running")


def fake_warmup(settings, log=None, cancel=None):
    return WarmupReport(ok=len(settings.ids) * settings.rounds * 2)


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def run_log(tmp_path):
    with RunLog(tmp_path / "run.txt", echo=False) as log:
        yield log


@pytest.fixture
def stack_config():
    """Packaged defaults with timings shrunk for tests."""
    return load_config(
        overrides={
            "readiness": {"services": ["postgres", "app1"], "timeout_s": 0, "interval_s": 0.01},
            "store": {"timeout_s": 0, "interval_s": 0.01},
            "stats": {"interval_s": 0.05, "command": FAKE_STATS_COMMAND, "stop_grace_s": 5},
        }
    )


@pytest.fixture
def ready_client():
    return FakeComposeClient({"postgres": [healthy("pg0000000001")], "app1": [running("app100000001")]})


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8") if path.exists() else ""
