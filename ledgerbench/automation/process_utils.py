#!/usr/bin/env python3
"""Helpers for launching, probing and stopping child processes and their groups.

Everything OS-specific about process control lives here: spawning a child in
its own process group, and delivering an escalating stop to that group.
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from ledgerbench.automation.errors import ProcessLaunchError

IS_WINDOWS = os.name == "nt"

UTF8_ENV = {
    "LANG": "C.UTF-8",
    "LC_ALL": "C.UTF-8",
    "PYTHONIOENCODING": "utf-8",
}
JAVA_ENCODING_FLAGS = "-Dfile.encoding=UTF-8 -Dsun.stdout.encoding=UTF-8 -Dsun.stderr.encoding=UTF-8"


def utf8_environment(extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Copy of os.environ that forces UTF-8 end to end for every child we spawn."""
    env = os.environ.copy()
    env.update(UTF8_ENV)
    env["JAVA_TOOL_OPTIONS"] = f"{JAVA_ENCODING_FLAGS} {env.get('JAVA_TOOL_OPTIONS', '')}".strip()
    env["MAVEN_OPTS"] = f"-Dfile.encoding=UTF-8 {env.get('MAVEN_OPTS', '')}".strip()
    if extra_env:
        env.update(extra_env)
    return env


def is_alive(target: Union[int, subprocess.Popen, None]) -> bool:
    """Non-destructive liveness probe for a PID or a Popen handle.

    Never raises; a reaped or unknown process is simply not alive.
    """
    if target is None:
        return False
    if isinstance(target, subprocess.Popen):
        try:
            return target.poll() is None
        except OSError:
            return False
    try:
        pid = int(target)
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    if IS_WINDOWS:
        return _windows_pid_exists(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def exit_status(code: int) -> int:
    """Map a Popen returncode to the shell convention: killed by signal N gives 128 + N."""
    return 128 - code if code < 0 else code


def _windows_pid_exists(pid: int) -> bool:
    # os.kill(pid, 0) terminates the process on Windows, so ask tasklist instead.
    try:
        cp = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
            check=False,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return f'"{pid}"' in (cp.stdout or "")


def spawn_process_group(
    argv: List[str],
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.Popen:
    """Start argv as the leader of a new process group so it can be stopped as a unit."""
    stdout = None
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stdout = open(log_path, "a", encoding="utf-8")
    kwargs: Dict[str, object] = {}
    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env if env is not None else utf8_environment(),
            stdout=stdout,
            stderr=subprocess.STDOUT if stdout else None,
            **kwargs,
        )
    except OSError as exc:
        raise ProcessLaunchError(f"failed to start {argv[0]}: {exc}") from exc
    finally:
        if stdout:
            # the child holds its own copy of the descriptor
            stdout.close()
    return proc


def _process_group_id(proc: subprocess.Popen) -> int:
    try:
        return os.getpgid(proc.pid)
    except (ProcessLookupError, PermissionError, OSError):
        return proc.pid


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _wait_quietly(proc: subprocess.Popen, timeout: float) -> bool:
    try:
        proc.wait(timeout=timeout)
        return True
    except subprocess.TimeoutExpired:
        return False


def stop_process_group(proc: subprocess.Popen, grace_s: float = 1.0) -> Optional[int]:
    """Escalate INT -> TERM -> KILL over the group led by proc.

    Stops as soon as the whole group is gone. Returns the leader's exit code
    when known.
    """
    if IS_WINDOWS:
        return _stop_windows_group(proc, grace_s)
    pgid = _process_group_id(proc)
    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGKILL):
        if not _group_alive(pgid) and proc.poll() is not None:
            break
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            break
        except PermissionError:
            proc.send_signal(sig)
        # one deadline per step covers the leader and the rest of the group
        deadline = time.monotonic() + grace_s
        while time.monotonic() < deadline:
            if proc.poll() is not None and not _group_alive(pgid):
                break
            time.sleep(0.05)
    _wait_quietly(proc, grace_s)
    return proc.poll()


def _stop_windows_group(proc: subprocess.Popen, grace_s: float) -> Optional[int]:
    if proc.poll() is not None:
        return proc.returncode
    try:
        proc.send_signal(signal.CTRL_BREAK_EVENT)
    except (OSError, ValueError):
        pass
    if _wait_quietly(proc, grace_s):
        return proc.returncode
    proc.terminate()
    if _wait_quietly(proc, grace_s):
        return proc.returncode
    subprocess.run(["taskkill", "/F", "/T", "/PID", str(proc.pid)], check=False, capture_output=True)
    _wait_quietly(proc, grace_s)
    return proc.poll()


def terminate_process(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    """Stop a single child that shares our process group."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


@contextmanager
def managed_process(
    name: str,
    argv: List[str],
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    ready_wait: float = 0.0,
    grace_s: float = 1.0,
) -> Iterator[subprocess.Popen]:
    """Spawn a process group and make sure it is cleaned up."""
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as header:
            header.write(f"[launcher] starting {name}: {' '.join(argv)}\n")
    proc = spawn_process_group(argv, log_path=log_path, cwd=cwd, env=env)
    try:
        if ready_wait:
            time.sleep(ready_wait)
            if proc.poll() is not None and proc.returncode != 0:
                raise ProcessLaunchError(f"{name} exited early with code {proc.returncode}")
        yield proc
    finally:
        if proc.poll() is None:
            stop_process_group(proc, grace_s=grace_s)
