"""Command-line interface for steiger.

Commands:
    steiger build: Build every target and optionally publish the images

Example:
    $ steiger --help
    $ steiger --version
    $ steiger build --repo registry.example/org --tag v1

Exit Codes:
    0: Success
    1: General error
    2: Usage error (invalid arguments)
    4: Configuration error (invalid steiger.yml, build tool not found)
    5: Build error
    6: Image layout load error
    7: Publish error
    8: Network error (registry unreachable)
"""

from __future__ import annotations

from steiger_core.cli.main import cli, main
from steiger_core.cli.utils import ExitCode, error, error_exit, success, warn

__all__: list[str] = [
    # Entry points
    "main",
    "cli",
    # Utilities
    "ExitCode",
    "error",
    "error_exit",
    "warn",
    "success",
]
