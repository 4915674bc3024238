"""Build dispatcher.

Runs every configured build target concurrently and merges what they
produce into one ``BuildOutput``.

Backends are initialized lazily, at most once per kind and per dispatcher,
and the resulting handle is shared by every target of that kind. All
backends are resolved before the first task starts, so a missing tool
aborts the run before anything is built.

Targets never cancel each other: the dispatcher waits for every task and
only then decides the outcome, so one broken target does not hide the
results (or the failures) of the others.

Example:
    >>> dispatcher = BuildDispatcher(config)
    >>> output = await dispatcher.build(ProgressTree(), "linux/amd64")
    >>> sorted(output.artifacts)
    ['api', 'web']
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from steiger_core.builders import BUILDERS, BuildContext, Builder, BuilderRegistry, BuildOutput
from steiger_core.errors import BuildFailedError, ConfigurationError, TargetBuildError

if TYPE_CHECKING:
    from steiger_core.progress import ProgressTree
    from steiger_core.schemas.config import BuilderKind, BuildTarget, SteigerConfig

logger = structlog.get_logger(__name__)


class BuildDispatcher:
    """Runs the build targets of one project configuration.

    Args:
        config: Project configuration.
        builders: Backend classes by kind. Defaults to the built-in backends.
    """

    def __init__(self, config: SteigerConfig, builders: BuilderRegistry | None = None) -> None:
        self._config = config
        self._builders = dict(BUILDERS if builders is None else builders)
        self._handles: dict[BuilderKind, Builder] = {}

    def backend(self, kind: BuilderKind) -> Builder:
        """Return the backend for ``kind``, initializing it on first use.

        Raises:
            ConfigurationError: If the kind has no backend or its tool is missing.
        """
        handle = self._handles.get(kind)
        if handle is None:
            builder_cls = self._builders.get(kind)
            if builder_cls is None:
                raise ConfigurationError(f"no build backend registered for '{kind.value}'")
            handle = builder_cls.initialize()
            self._handles[kind] = handle
            logger.debug("backend_initialized", kind=kind.value)
        return handle

    async def _run_target(
        self,
        name: str,
        target: BuildTarget,
        backend: Builder,
        context: BuildContext,
    ) -> BuildOutput:
        log = logger.bind(target=name, backend=target.kind.value)
        log.debug("target_build_started")
        try:
            output = await backend.build(context, target.build)
        except Exception as e:
            context.progress.fail(str(e))
            log.warning("target_build_failed", error=str(e))
            raise TargetBuildError(name, target.kind.value, e) from e
        log.debug("target_build_completed", artifacts=sorted(output.artifacts))
        return output

    async def build(self, progress: ProgressTree, platform: str) -> BuildOutput:
        """Build every target for ``platform`` and merge their outputs.

        Args:
            progress: Progress tree; one child is created per target.
            platform: Requested platform, ``os/arch``.

        Returns:
            Merged output of all targets, with the elapsed wall-clock time.

        Raises:
            ConfigurationError: If a backend cannot be initialized (nothing runs).
            BuildFailedError: If one or more targets failed, after all finished.
        """
        started = time.monotonic()
        progress.add_child("meta").info(f"detected platform: {platform}")

        # Resolve every backend first so a missing tool aborts before any task starts.
        planned = [
            (name, target, self.backend(target.kind))
            for name, target in self._config.services.items()
        ]

        tasks = [
            asyncio.ensure_future(
                self._run_target(
                    name,
                    target,
                    backend,
                    BuildContext(target_name=name, platform=platform, progress=progress.add_child(name)),
                )
            )
            for name, target, backend in planned
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        output = BuildOutput()
        failures: list[TargetBuildError] = []
        for result in results:
            if isinstance(result, TargetBuildError):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                output.merge(result)

        output.elapsed_seconds = time.monotonic() - started

        if failures:
            logger.error(
                "build_failed",
                failed=[f.target for f in failures],
                succeeded=sorted(output.artifacts),
                elapsed_seconds=round(output.elapsed_seconds, 3),
            )
            raise BuildFailedError(failures, output)

        logger.info(
            "build_completed",
            targets=len(planned),
            artifacts=sorted(output.artifacts),
            elapsed_seconds=round(output.elapsed_seconds, 3),
        )
        return output


__all__ = ["BuildDispatcher"]
