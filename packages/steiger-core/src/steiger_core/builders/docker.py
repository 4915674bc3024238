"""Docker buildx backend.

Builds a single context with a dedicated ``docker-container`` buildx builder
named ``steiger`` (created on first use) and exports the result as an
uncompressed OCI layout directory.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from steiger_core.builders.base import BuildContext, Builder, BuildOutput, output_directory, run_tool
from steiger_core.errors import BuildError
from steiger_core.exec import run_with_output, which
from steiger_core.image import load_from_path
from steiger_core.schemas.config import BuilderKind, DockerBuildConfig

if TYPE_CHECKING:
    from steiger_core.progress import Progress

logger = structlog.get_logger(__name__)

BUILDKIT_BUILDER_NAME = "steiger"


class DockerBuilder(Builder):
    """Runs ``docker build`` through buildx."""

    kind = BuilderKind.DOCKER

    def __init__(self, binary: Path) -> None:
        self.binary = binary
        self._builder_lock = asyncio.Lock()
        self._builder_ready = False

    @classmethod
    def initialize(cls) -> DockerBuilder:
        return cls(which(cls.kind.value, "docker"))

    async def list_builders(self) -> list[str]:
        """Return the names of the configured buildx builders."""
        output = await run_with_output([self.binary, "buildx", "ls", "--format=json"])
        names = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                names.append(json.loads(line)["Name"])
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise BuildError(f"failed to parse buildx builder list: {e}") from e
        return names

    async def create_builder(self) -> None:
        await run_with_output(
            [
                self.binary,
                "buildx",
                "create",
                "--driver=docker-container",
                f"--name={BUILDKIT_BUILDER_NAME}",
            ]
        )

    async def ensure_builder(self, progress: Progress) -> None:
        """Make sure the dedicated buildx builder exists.

        Concurrent targets share one handle; the first one checks (and
        creates) the builder, the others wait for it and reuse the result.
        """
        async with self._builder_lock:
            if self._builder_ready:
                progress.info("using existing buildkit builder")
                return
            if BUILDKIT_BUILDER_NAME in await self.list_builders():
                progress.info("using existing buildkit builder")
            else:
                progress.info("creating buildkit builder")
                await self.create_builder()
                progress.done("buildkit builder created")
                logger.info("buildkit_builder_created", name=BUILDKIT_BUILDER_NAME)
            self._builder_ready = True

    def build_command(self, context: BuildContext, config: DockerBuildConfig, dest: Path) -> list[str]:
        """Return the ``docker build`` command line for one target."""
        dockerfile = config.dockerfile or f"{config.context}/Dockerfile"
        return [
            str(self.binary),
            "build",
            "--builder",
            BUILDKIT_BUILDER_NAME,
            "--platform",
            context.platform,
            "--output",
            f"type=oci,dest={dest},tar=false",
            "--file",
            dockerfile,
            config.context,
        ]

    async def build(self, context: BuildContext, config: DockerBuildConfig) -> BuildOutput:
        progress = context.progress
        progress.set_name(context.target_name)
        progress.info("starting builder")

        await self.ensure_builder(progress)

        async with output_directory(context.target_name) as dest:
            await run_tool(context, "docker", self.build_command(context, config, dest))
            images = await load_from_path(dest)

        return BuildOutput.single(context.target_name, images)


__all__ = ["BUILDKIT_BUILDER_NAME", "DockerBuilder"]
