"""ko backend: builds a Go import path into an OCI layout without pushing."""

from __future__ import annotations

from pathlib import Path

from steiger_core.builders.base import BuildContext, Builder, BuildOutput, output_directory, run_tool
from steiger_core.exec import which
from steiger_core.image import load_from_path
from steiger_core.schemas.config import BuilderKind, KoBuildConfig


class KoBuilder(Builder):
    kind = BuilderKind.KO

    def __init__(self, binary: Path) -> None:
        self.binary = binary

    @classmethod
    def initialize(cls) -> KoBuilder:
        return cls(which(cls.kind.value, "ko"))

    def build_command(self, context: BuildContext, config: KoBuildConfig, dest: Path) -> list[str]:
        return [
            str(self.binary),
            "build",
            "--push=false",
            "--platform",
            context.platform,
            "--oci-layout-path",
            str(dest),
            config.import_path or ".",
        ]

    async def build(self, context: BuildContext, config: KoBuildConfig) -> BuildOutput:
        context.progress.set_name(context.target_name)
        context.progress.info("starting builder")

        async with output_directory(context.target_name) as dest:
            await run_tool(context, "ko", self.build_command(context, config, dest))
            images = await load_from_path(dest)

        return BuildOutput.single(context.target_name, images)


__all__ = ["KoBuilder"]
