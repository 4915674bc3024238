"""CLI utility functions and error handling.

This module provides shared utilities for the steiger CLI:
- Exit code constants
- Error formatting on stderr
- Output helpers for consistent stderr/stdout usage

Results meant for scripts (published references) go to stdout; progress,
warnings and diagnoses go to stderr.

Example:
    from steiger_core.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Configuration file not found", exit_code=ExitCode.CONFIGURATION_ERROR, path=str(path))
"""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import TYPE_CHECKING

import click

from steiger_core.errors import SteigerError, TargetBuildError

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes for CLI commands, aligned with SteigerError.exit_code."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage (bad arguments, missing required options)."""

    CONFIGURATION_ERROR = 4
    """Invalid project configuration or missing build tool."""

    BUILD_ERROR = 5
    """A build tool failed."""

    LOAD_ERROR = 6
    """A produced image layout could not be loaded."""

    PUBLISH_ERROR = 7
    """Publishing to the registry failed."""

    NETWORK_ERROR = 8
    """Registry unreachable."""


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map an exception to the exit code the CLI should use.

    A target failure reports the exit code of its cause, so a layout that
    fails to load exits with LOAD_ERROR rather than BUILD_ERROR.
    """
    if isinstance(exc, TargetBuildError) and isinstance(exc.cause, SteigerError):
        return exit_code_for(exc.cause)
    if isinstance(exc, SteigerError):
        try:
            return ExitCode(exc.exit_code)
        except ValueError:
            return ExitCode.GENERAL_ERROR
    return ExitCode.GENERAL_ERROR


def _with_context(prefix: str, message: str, context: dict[str, str | int | bool | None]) -> str:
    details = ", ".join(f"{key}={value}" for key, value in context.items() if value is not None)
    if details:
        return f"{prefix}: {message} ({details})"
    return f"{prefix}: {message}"


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Context values that are ``None`` are left out.

    Example:
        error("Build failed", target="web")
        # Output: Error: Build failed (target=web)
    """
    click.echo(_with_context("Error", message, context), err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with ``exit_code``."""
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    click.echo(_with_context("Warning", message, context), err=True)


def success(message: str) -> None:
    """Print a result line to stdout."""
    click.echo(message)


def info(message: str) -> None:
    click.echo(message, err=True)


__all__ = ["ExitCode", "error", "error_exit", "exit_code_for", "info", "success", "warn"]
