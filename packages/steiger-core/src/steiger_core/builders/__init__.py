"""Build backends and the builder contract.

``BUILDERS`` maps every backend kind accepted in ``steiger.yml`` to the
class implementing it; the dispatcher initializes each class lazily.
"""

from __future__ import annotations

from steiger_core.builders.base import (
    BuildContext,
    Builder,
    BuilderRegistry,
    BuildOutput,
    output_directory,
    run_tool,
)
from steiger_core.builders.bazel import BazelBuilder
from steiger_core.builders.docker import DockerBuilder
from steiger_core.builders.ko import KoBuilder
from steiger_core.builders.nix import NixBuilder
from steiger_core.schemas.config import BuilderKind

BUILDERS: BuilderRegistry = {
    BuilderKind.BAZEL: BazelBuilder,
    BuilderKind.DOCKER: DockerBuilder,
    BuilderKind.KO: KoBuilder,
    BuilderKind.NIX: NixBuilder,
}

__all__ = [
    "BUILDERS",
    "BazelBuilder",
    "BuildContext",
    "BuildOutput",
    "Builder",
    "BuilderRegistry",
    "DockerBuilder",
    "KoBuilder",
    "NixBuilder",
    "output_directory",
    "run_tool",
]
