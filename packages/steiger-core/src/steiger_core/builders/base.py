"""Builder contract shared by every build backend.

A backend wraps one external build tool. It is initialized once per
dispatcher (tool discovery), after which the handle is shared by every
target of that kind, so implementations must not keep per-build state on
the instance.

Example:
    >>> class EchoBuilder(Builder):
    ...     kind = BuilderKind.DOCKER
    ...
    ...     @classmethod
    ...     def initialize(cls) -> EchoBuilder:
    ...         return cls()
    ...
    ...     async def build(self, context, config) -> BuildOutput:
    ...         return BuildOutput()
"""

from __future__ import annotations

import tempfile
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from steiger_core.errors import ExitError
from steiger_core.exec import run_with_progress
from steiger_core.image import Image

if TYPE_CHECKING:
    from steiger_core.progress import Progress
    from steiger_core.schemas.config import BuilderKind


@dataclass(frozen=True)
class BuildContext:
    """Per-invocation parameters handed to a backend.

    Attributes:
        target_name: Name of the build target being built.
        platform: Requested platform, ``os/arch``.
        progress: Progress node owned by this target.
    """

    target_name: str
    platform: str
    progress: Progress


@dataclass
class BuildOutput:
    """Images produced by a build, keyed by artifact name.

    Attributes:
        artifacts: Artifact name to its images (one per platform variant).
        elapsed_seconds: Wall-clock duration of the run, set by the dispatcher.
    """

    artifacts: dict[str, list[Image]] = field(default_factory=dict)
    elapsed_seconds: float | None = None

    @classmethod
    def single(cls, artifact: str, images: list[Image]) -> BuildOutput:
        """Create an output holding one artifact."""
        return cls(artifacts={artifact: images})

    def merge(self, other: BuildOutput) -> None:
        """Merge ``other`` into this output.

        A later result for an artifact replaces the earlier list in full.
        """
        for name, images in other.artifacts.items():
            self.artifacts[name] = images

    def __len__(self) -> int:
        return len(self.artifacts)

    def __contains__(self, artifact: object) -> bool:
        return artifact in self.artifacts


class Builder(ABC):
    """Abstract base class for build backends.

    Attributes:
        kind: Backend kind this class implements.
    """

    kind: BuilderKind

    @classmethod
    @abstractmethod
    def initialize(cls) -> Builder:
        """Discover the external tool and return a ready handle.

        Raises:
            BackendNotFoundError: If the tool is not installed.
        """

    @abstractmethod
    async def build(self, context: BuildContext, config: Any) -> BuildOutput:
        """Build one target to completion.

        Args:
            context: Target name, platform and progress node.
            config: The target's backend configuration.

        Returns:
            The artifacts produced by this target.

        Raises:
            BuildError: If the external tool fails.
            ImageLoadError: If the produced layout cannot be loaded.
        """


@asynccontextmanager
async def output_directory(target_name: str) -> AsyncIterator[Path]:
    """Yield a scratch directory for a build tool to write its layout into.

    Images are fully loaded into memory before the directory is removed.
    """
    with tempfile.TemporaryDirectory(prefix=f"steiger-{target_name}-") as directory:
        yield Path(directory)


async def run_tool(
    context: BuildContext,
    tool: str,
    command: Sequence[str | Path],
    *,
    cwd: Path | None = None,
) -> None:
    """Run a build tool, streaming its output into a child node named after it.

    Raises:
        ExitError: If the tool exits non-zero.
    """
    progress = context.progress.add_child(tool)
    code = await run_with_progress(command, progress, cwd=cwd)
    if code != 0:
        context.progress.fail(f"build failed with exit code: {code}")
        raise ExitError([str(arg) for arg in command], code)
    context.progress.done("build finished")


BuilderRegistry = Mapping["BuilderKind", type[Builder]]
"""Mapping of backend kind to implementation class."""


__all__ = [
    "BuildContext",
    "BuildOutput",
    "Builder",
    "BuilderRegistry",
    "output_directory",
    "run_tool",
]
