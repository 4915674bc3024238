"""Build (and optionally publish) command.

Runs every build target of the project, then, when ``--repo`` is given,
pushes the image matching the requested platform for each artifact to
``<repo>/<artifact>:<tag>``.

Example:
    $ steiger build --repo registry.example/org --tag v1 --output-file builds.json
    registry.example/org/web:v1@sha256:...

Environment Variables:
    STEIGER_REGISTRY_USERNAME: Registry username for basic auth
    STEIGER_REGISTRY_PASSWORD: Registry password for basic auth
    DOCKER_CONFIG: Docker CLI config directory (credential fallback)

Partial failures are reported per target and per artifact. Artifacts that
built and published are still printed (and written to the output file)
before the command exits non-zero.
"""

from __future__ import annotations

import asyncio
import os
import platform as host_platform
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import click
import structlog

from steiger_core.cli.utils import error, error_exit, exit_code_for, info, success, warn
from steiger_core.dispatch import BuildDispatcher
from steiger_core.errors import BuildFailedError, PublishFailedError, SteigerError
from steiger_core.oci import RegistryClient, RegistryPublisher, create_auth_provider
from steiger_core.pipeline import publish_artifacts
from steiger_core.progress import ProgressTree
from steiger_core.schemas.config import SteigerConfig
from steiger_core.schemas.oci import Platform
from steiger_core.schemas.output import BuildsFile

if TYPE_CHECKING:
    from steiger_core.builders import BuildOutput
    from steiger_core.oci.publisher import PushResult

logger = structlog.get_logger(__name__)

DEFAULT_TAG = "latest"

_MACHINE_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def detect_platform() -> str:
    """Return the ``os/arch`` of the machine steiger runs on.

    Images always target linux; only the architecture is taken from the host.
    """
    machine = host_platform.machine().lower()
    return f"linux/{_MACHINE_ARCHITECTURES.get(machine, machine)}"


def _validate_platform(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:  # noqa: ARG001
    if value is None:
        return None
    try:
        Platform.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    return value


@dataclass
class RunReport:
    """Everything a build run produced, successful or not."""

    output: BuildOutput | None = None
    published: dict[str, PushResult] = field(default_factory=dict)
    errors: list[SteigerError] = field(default_factory=list)


async def run_build(
    config: SteigerConfig,
    *,
    platform: str,
    repo: str | None,
    tag: str,
    insecure_registries: list[str],
    dispatcher: BuildDispatcher | None = None,
    client: RegistryClient | None = None,
) -> RunReport:
    """Build every target and publish the results.

    Configuration errors (missing build tool) propagate; build and publish
    failures are collected in the returned report.
    """
    report = RunReport()
    progress = ProgressTree()
    dispatcher = dispatcher or BuildDispatcher(config)

    try:
        report.output = await dispatcher.build(progress, platform)
    except BuildFailedError as e:
        report.output = e.output
        report.errors.append(e)

    if repo is None or report.output is None or not report.output.artifacts:
        return report

    registries = [*config.registry.insecure_registries, *insecure_registries]
    client = client or RegistryClient(insecure_registries=registries)
    async with client:
        publisher = RegistryPublisher(client, create_auth_provider())
        try:
            report.published = await publish_artifacts(
                publisher,
                report.output,
                progress,
                repository=repo,
                tag=tag,
                platform=platform,
            )
        except PublishFailedError as e:
            report.published = dict(e.results or {})
            report.errors.append(e)

    return report


def _print_diagnosis(report: RunReport) -> None:
    for exc in report.errors:
        if isinstance(exc, BuildFailedError):
            for failure in exc.failures:
                error(
                    f"{failure.stage.value} failed for target '{failure.target}': {failure.cause}",
                    backend=failure.backend,
                )
        elif isinstance(exc, PublishFailedError):
            for artifact, cause in sorted(exc.failures.items()):
                error(f"push failed for artifact '{artifact}': {cause}")
        else:
            error(str(exc))


@click.command(
    name="build",
    help="""\b
Build every target in the project and optionally publish the images.

Without --repo the images are built and loaded but not pushed.

Examples:
    $ steiger build
    $ steiger build --platform linux/arm64 --repo registry.example/org --tag v1
    $ steiger build --repo localhost:5000/dev --output-file builds.json
""",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option(
    "--platform",
    type=str,
    default=None,
    callback=_validate_platform,
    help="Target platform as os/arch (default: linux/<host architecture>).",
)
@click.option(
    "--repo",
    type=str,
    default=None,
    envvar="STEIGER_REPO",
    help="Repository prefix to push to (e.g. registry.example/org).",
)
@click.option(
    "--tag",
    type=str,
    default=DEFAULT_TAG,
    show_default=True,
    help="Tag applied to every pushed image.",
)
@click.option(
    "--output-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write published references as skaffold-style build artifacts JSON.",
)
@click.option(
    "--insecure-registry",
    "insecure_registries",
    multiple=True,
    help="Registry reached over plain HTTP (repeatable; localhost always is).",
)
@click.pass_context
def build_command(
    ctx: click.Context,
    platform: str | None,
    repo: str | None,
    tag: str,
    output_file: Path | None,
    insecure_registries: tuple[str, ...],
) -> None:
    """Build (and publish) all targets."""
    project_dir: Path = ctx.obj["project_dir"]
    config_path: Path = ctx.obj["config_path"]

    try:
        config = SteigerConfig.from_file(config_path)
    except SteigerError as e:
        error_exit(str(e), exit_code=exit_code_for(e))

    target_platform = platform or detect_platform()
    os.chdir(project_dir)
    info(f"building {len(config.services)} target(s) for {target_platform}")

    try:
        report = asyncio.run(
            run_build(
                config,
                platform=target_platform,
                repo=repo,
                tag=tag,
                insecure_registries=list(insecure_registries),
            )
        )
    except SteigerError as e:
        error_exit(str(e), exit_code=exit_code_for(e))

    if report.output is not None:
        for name, images in sorted(report.output.artifacts.items()):
            platforms = ", ".join(str(image.platform or "any") for image in images)
            info(f"built {name}: {len(images)} image(s) [{platforms}]")

    if repo is None:
        info("no repo set, skipping push")
    elif report.published:
        info("pushed artifacts:")
        for name, result in sorted(report.published.items()):
            success(result.reference)
            logger.debug("artifact_reference", artifact=name, reference=result.reference)

    if output_file is not None:
        if repo is None:
            warn("--output-file requires --repo; nothing written", path=str(output_file))
        else:
            BuildsFile.from_references(
                {name: result.reference for name, result in report.published.items()}
            ).write(output_file)

    if report.errors:
        _print_diagnosis(report)
        first = report.errors[0]
        if isinstance(first, BuildFailedError) and first.failures:
            sys.exit(exit_code_for(first.failures[0]))
        sys.exit(exit_code_for(first))


__all__ = ["build_command", "detect_platform", "run_build"]
