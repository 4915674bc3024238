"""Bazel backend.

Builds every configured label in one ``bazel build`` invocation, then asks
``bazel cquery`` for the first output file of each label: the OCI layout
directory written by the image rule (e.g. ``rules_oci``'s ``oci_image``).

Example steiger.yml:
    services:
      backend:
        build:
          type: bazel
          targets:
            api: //api:image
            worker: //worker:image
          platforms:
            linux/arm64: //platforms:linux_arm64
"""

from __future__ import annotations

import json
from pathlib import Path

import structlog

from steiger_core.builders.base import BuildContext, Builder, BuildOutput, run_tool
from steiger_core.errors import BuildError
from steiger_core.exec import run_with_output, which
from steiger_core.image import load_from_path
from steiger_core.schemas.config import BazelBuildConfig, BuilderKind

logger = structlog.get_logger(__name__)

# Emits one ["<label>", "<first output path>"] pair per configured target.
CQUERY_EXPRESSION = "json.encode([str(target.label), [f.path for f in target.files.to_list()][0]])"


def normalize_label(label: str) -> str:
    """Strip repository prefixes so ``@@//pkg:name`` and ``//pkg:name`` compare equal.

    Example:
        >>> normalize_label("@@//api:image")
        'api:image'
    """
    return label.lstrip("@").removeprefix("//")


class BazelBuilder(Builder):
    kind = BuilderKind.BAZEL

    def __init__(self, binary: Path) -> None:
        self.binary = binary

    @classmethod
    def initialize(cls) -> BazelBuilder:
        return cls(which(cls.kind.value, "bazel", "bazelisk"))

    def build_command(self, context: BuildContext, config: BazelBuildConfig) -> list[str]:
        command = [str(self.binary), "build"]
        platform = config.platforms.get(context.platform)
        if platform is not None:
            command.append(f"--platforms={platform}")
        command.extend(config.targets.values())
        return command

    async def output_files(self, labels: list[str]) -> dict[str, str]:
        """Return the first output file of each label, keyed by normalized label."""
        query = " union ".join(f'"{label}"' for label in labels)
        output = await run_with_output(
            [
                self.binary,
                "cquery",
                query,
                "--output=starlark",
                f"--starlark:expr={CQUERY_EXPRESSION}",
            ]
        )

        files: dict[str, str] = {}
        for line in output.strip().splitlines():
            if not line.strip():
                continue
            try:
                label, path = json.loads(line)
            except (json.JSONDecodeError, ValueError, TypeError) as e:
                raise BuildError(f"failed to parse cquery output {line!r}: {e}") from e
            files[normalize_label(label)] = path
        return files

    async def build(self, context: BuildContext, config: BazelBuildConfig) -> BuildOutput:
        progress = context.progress
        progress.set_name(context.target_name)
        progress.info("starting builder")

        platform = config.platforms.get(context.platform)
        if platform is not None:
            progress.info(f"using platform: {platform}")

        await run_tool(context, "bazel", self.build_command(context, config))

        progress.info("gathering output")
        files = await self.output_files(list(config.targets.values()))

        output = BuildOutput()
        for artifact, label in config.targets.items():
            path = files.get(normalize_label(label))
            if path is None:
                raise BuildError(f"unable to find output for bazel target: {label}")
            output.artifacts[artifact] = await load_from_path(path)

        logger.debug("bazel_outputs_loaded", target=context.target_name, artifacts=list(output.artifacts))
        return output


__all__ = ["CQUERY_EXPRESSION", "BazelBuilder", "normalize_label"]
