#!/usr/bin/env python3
"""Load the stack description (services, endpoints, store, runner) from YAML."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ledgerbench.automation.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "stack.yaml"
ALLOWED_KEYS = {"compose", "readiness", "warmup", "store", "load_test", "stats"}


@dataclass
class ComposeSettings:
    project_dir: Path = Path(".")
    files: List[str] = field(default_factory=list)
    project_name: Optional[str] = None
    force_remove: List[str] = field(default_factory=list)


@dataclass
class ReadinessSettings:
    services: List[str]
    timeout_s: float = 90.0
    interval_s: float = 5.0


@dataclass
class WarmupSettings:
    base_url: str
    ids: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    rounds: int = 5
    request_timeout_s: float = 2.0
    read_path: str = "/clientes/{id}/extrato"
    write_path: str = "/clientes/{id}/transacoes"
    payload: Dict[str, Any] = field(default_factory=lambda: {"valor": 1, "tipo": "c", "descricao": "warmup"})


@dataclass
class StoreSettings:
    service: str = "postgres"
    user: str = "postgres"
    database: str = "postgres"
    timeout_s: float = 90.0
    interval_s: float = 3.0
    statements: List[str] = field(default_factory=list)


@dataclass
class LoadTestSettings:
    scenario: str
    command: List[str]
    cwd: Optional[Path] = None

    def argv(self) -> List[str]:
        return [_format_template(part, scenario=self.scenario) for part in self.command]


@dataclass
class StatsSettings:
    interval_s: float = 2.0
    command: List[str] = field(default_factory=lambda: ["docker", "stats", "--no-stream"])
    command_timeout_s: float = 10.0
    stop_grace_s: float = 2.0


@dataclass
class StackConfig:
    compose: ComposeSettings
    readiness: ReadinessSettings
    warmup: WarmupSettings
    store: StoreSettings
    load_test: LoadTestSettings
    stats: StatsSettings
    source: Optional[Path] = None


def _format_template(template: str, **kwargs) -> str:
    try:
        return template.format(**kwargs)
    except (KeyError, IndexError, ValueError):
        return template


def deep_merge(base: Dict, extra: Dict) -> Dict:
    result = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _warn_unknown_keys(label: str, mapping: Dict) -> None:
    unknown = sorted(set(mapping.keys()) - ALLOWED_KEYS)
    if unknown:
        print(
            f"[config] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def _read_yaml(path: Path) -> Dict:
    if not path.exists():
        raise ConfigError(f"stack config not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return raw


def _section(raw: Dict, name: str) -> Dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"section '{name}' must be a mapping")
    return value


def _str_list(value, label: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{label} must be a list")
    return [str(item) for item in value]


def _optional_path(value, base_dir: Optional[Path] = None) -> Optional[Path]:
    if not value:
        return None
    path = Path(value)
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return path


def _number(section: Dict, key: str, default: float, label: str) -> float:
    value = section.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label}.{key} must be a number, got {value!r}") from exc


def build_config(raw: Dict, source: Optional[Path] = None, base_dir: Optional[Path] = None) -> StackConfig:
    """Validate the merged mapping; relative paths are taken against base_dir when given."""
    compose = _section(raw, "compose")
    readiness = _section(raw, "readiness")
    warmup = _section(raw, "warmup")
    store = _section(raw, "store")
    load_test = _section(raw, "load_test")
    stats = _section(raw, "stats")

    services = _str_list(readiness.get("services"), "readiness.services")
    if not services:
        raise ConfigError("readiness.services must name at least one service")
    if not warmup.get("base_url"):
        raise ConfigError("warmup.base_url is required")
    command = _str_list(load_test.get("command"), "load_test.command")
    if not command:
        raise ConfigError("load_test.command is required")
    try:
        ids = [int(item) for item in warmup.get("ids", [1, 2, 3, 4, 5])]
        rounds = int(warmup.get("rounds", 5))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"warmup ids/rounds must be integers: {exc}") from exc

    return StackConfig(
        compose=ComposeSettings(
            project_dir=_optional_path(compose.get("project_dir") or ".", base_dir),
            files=_str_list(compose.get("files"), "compose.files"),
            project_name=compose.get("project_name"),
            force_remove=_str_list(compose.get("force_remove"), "compose.force_remove"),
        ),
        readiness=ReadinessSettings(
            services=services,
            timeout_s=_number(readiness, "timeout_s", 90, "readiness"),
            interval_s=_number(readiness, "interval_s", 5, "readiness"),
        ),
        warmup=WarmupSettings(
            base_url=str(warmup["base_url"]).rstrip("/"),
            ids=ids,
            rounds=rounds,
            request_timeout_s=_number(warmup, "request_timeout_s", 2, "warmup"),
            read_path=str(warmup.get("read_path", "/clientes/{id}/extrato")),
            write_path=str(warmup.get("write_path", "/clientes/{id}/transacoes")),
            payload=dict(warmup.get("payload") or {"valor": 1, "tipo": "c", "descricao": "warmup"}),
        ),
        store=StoreSettings(
            service=str(store.get("service", "postgres")),
            user=str(store.get("user", "postgres")),
            database=str(store.get("database", "postgres")),
            timeout_s=_number(store, "timeout_s", 90, "store"),
            interval_s=_number(store, "interval_s", 3, "store"),
            statements=_str_list(store.get("statements"), "store.statements"),
        ),
        load_test=LoadTestSettings(
            scenario=str(load_test.get("scenario", "")),
            command=command,
            cwd=_optional_path(load_test.get("cwd"), base_dir),
        ),
        stats=StatsSettings(
            interval_s=_number(stats, "interval_s", 2, "stats"),
            command=_str_list(stats.get("command"), "stats.command") or ["docker", "stats", "--no-stream"],
            command_timeout_s=_number(stats, "command_timeout_s", 10, "stats"),
            stop_grace_s=_number(stats, "stop_grace_s", 2, "stats"),
        ),
        source=source,
    )


def load_config(path: Optional[str] = None, overrides: Optional[Dict] = None) -> StackConfig:
    """Packaged defaults, then the user file (if any), then explicit overrides.

    Relative paths resolve against the user file's directory; with the
    packaged defaults alone they stay relative to the working directory.
    """
    raw = _read_yaml(DEFAULT_CONFIG_PATH)
    source = DEFAULT_CONFIG_PATH
    base_dir = None
    if path:
        source = Path(path)
        base_dir = source.resolve().parent
        user = _read_yaml(source)
        _warn_unknown_keys(str(source), user)
        raw = deep_merge(raw, user)
    if overrides:
        raw = deep_merge(raw, overrides)
    return build_config(raw, source=source, base_dir=base_dir)
