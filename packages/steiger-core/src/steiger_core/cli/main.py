"""Main entry point for the steiger CLI.

Example:
    $ steiger --help
    $ steiger build --platform linux/amd64 --repo registry.example/org --tag v1
    $ steiger --dir services/ --json-logs build --output-file builds.json
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

import click

from steiger_core.cli.build import build_command
from steiger_core.schemas.config import DEFAULT_CONFIG_FILENAME
from steiger_core.telemetry.logging import LOG_LEVELS, configure_logging


def _get_version() -> str:
    """Return the installed steiger-core version, or 'unknown'."""
    try:
        return get_version("steiger-core")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="steiger",
    help="steiger - build container images with any tool and publish them.",
    epilog="Use 'steiger <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=_get_version(), prog_name="steiger", message="%(prog)s %(version)s")
@click.option(
    "--dir",
    "-d",
    "project_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project directory (default: current directory). Builds run from here.",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Project file (default: <dir>/{DEFAULT_CONFIG_FILENAME}).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="STEIGER_LOG_LEVEL",
    help="Minimum level of structured log output.",
)
@click.option(
    "--json-logs",
    is_flag=True,
    default=False,
    envvar="STEIGER_JSON_LOGS",
    help="Emit logs as JSON lines.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    project_dir: Path | None,
    config_path: Path | None,
    log_level: str,
    json_logs: bool,
) -> None:
    """Root command group for the steiger CLI."""
    configure_logging(log_level=log_level, json_output=json_logs)

    ctx.ensure_object(dict)
    directory = (project_dir or Path.cwd()).resolve()
    ctx.obj["project_dir"] = directory
    ctx.obj["config_path"] = (config_path or directory / DEFAULT_CONFIG_FILENAME).resolve()


cli.add_command(build_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the steiger CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
