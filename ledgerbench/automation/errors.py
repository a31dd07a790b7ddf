#!/usr/bin/env python3
"""Exception types and exit codes shared by the run pipeline."""

from __future__ import annotations

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 64
EXIT_INTERRUPTED = 130


class ConfigError(ValueError):
    pass


class ProcessLaunchError(RuntimeError):
    pass


class FatalRunError(RuntimeError):
    """A step failed in a way that invalidates the run; the load test must not start."""


class RunInterrupted(Exception):
    """Operator cancellation. Not a failure: the run exits with EXIT_INTERRUPTED."""
