#!/usr/bin/env python3
"""Thin wrapper over the docker / docker compose CLI.

Query helpers never raise: an unreachable daemon or a missing binary simply
yields no instances or an "unknown" state, which the callers treat as
"not ready".
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ledgerbench.automation.config import ComposeSettings
from ledgerbench.automation.process_utils import utf8_environment

QUERY_TIMEOUT_S = 15.0


@dataclass
class ContainerState:
    id: str
    status: str
    health: Optional[str] = None  # None when the container declares no health check

    @property
    def running(self) -> bool:
        return self.status == "running"

    @property
    def has_health_check(self) -> bool:
        return self.health is not None

    @property
    def healthy(self) -> bool:
        return self.health == "healthy"


def parse_state(container_id: str, raw: str) -> ContainerState:
    """Build a ContainerState from the JSON printed by `docker inspect -f '{{json .State}}'`."""
    try:
        state = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        state = {}
    if not isinstance(state, dict):
        state = {}
    health = state.get("Health")
    health_status = None
    if isinstance(health, dict) and health.get("Status"):
        health_status = str(health["Status"])
    return ContainerState(id=container_id, status=str(state.get("Status") or "unknown"), health=health_status)


class ComposeClient:
    def __init__(self, settings: ComposeSettings, docker_bin: str = "docker"):
        self.settings = settings
        self.docker_bin = docker_bin

    @property
    def cwd(self) -> Path:
        return self.settings.project_dir

    def _compose(self, *args: str) -> List[str]:
        argv = [self.docker_bin, "compose"]
        if self.settings.project_name:
            argv += ["-p", self.settings.project_name]
        for compose_file in self.settings.files:
            argv += ["-f", compose_file]
        return argv + list(args)

    def down_argv(self) -> List[str]:
        return self._compose("down", "-v")

    def force_remove_argv(self) -> Optional[List[str]]:
        if not self.settings.force_remove:
            return None
        return [self.docker_bin, "rm", "-f", *self.settings.force_remove]

    def up_argv(self) -> List[str]:
        return self._compose("--compatibility", "up", "-d", "--build", "--force-recreate")

    def stop_argv(self) -> List[str]:
        return self._compose("stop")

    def ps_argv(self) -> List[str]:
        return self._compose("ps")

    def exec_argv(self, container_id: str, argv: List[str], interactive: bool = False) -> List[str]:
        cmd = [self.docker_bin, "exec"]
        if interactive:
            cmd.append("-i")
        return cmd + [container_id] + list(argv)

    def _query(self, argv: List[str]) -> Optional[str]:
        try:
            cp = subprocess.run(
                argv,
                cwd=self.cwd,
                env=utf8_environment(),
                check=False,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=QUERY_TIMEOUT_S,
            )
        except (OSError, subprocess.SubprocessError):
            return None
        if cp.returncode != 0:
            return None
        return cp.stdout

    def service_ids(self, service: str) -> List[str]:
        out = self._query(self._compose("ps", "-q", service))
        if not out:
            return []
        return [line.strip() for line in out.splitlines() if line.strip()]

    def first_container(self, service: str) -> Optional[str]:
        ids = self.service_ids(service)
        return ids[0] if ids else None

    def inspect(self, container_id: str) -> ContainerState:
        out = self._query([self.docker_bin, "inspect", "-f", "{{json .State}}", container_id])
        if out is None:
            return ContainerState(id=container_id, status="unknown")
        return parse_state(container_id, out)

    def ps_table(self) -> str:
        return self._query(self.ps_argv()) or ""

    def stop(self) -> None:
        self._query(self.stop_argv())
