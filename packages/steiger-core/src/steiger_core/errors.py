"""Exception hierarchy for steiger-core.

Every error raised by the build and publish pipeline inherits from
SteigerError and is tagged with the pipeline stage it belongs to, so a
caller can tell "nothing was produced" (build/load) from "something was
produced but not published" (push).

Exception Hierarchy:
    SteigerError (base)
    ├── ConfigurationError         # Bad project file, missing build tool
    │   └── BackendNotFoundError   # Build tool executable not found
    ├── BuildError                 # External build tool failed
    │   ├── ExitError              # Subprocess exited non-zero
    │   ├── TargetBuildError       # One target failed (wraps the cause)
    │   └── BuildFailedError       # One or more targets failed (aggregate)
    ├── ImageLoadError             # OCI layout unreadable or incomplete
    │   ├── InvalidLayoutError     # Missing index.json, malformed JSON
    │   ├── MissingBlobError       # Referenced blob absent from blobs/
    │   └── DigestMismatchError    # Blob bytes do not match descriptor
    └── PublishError               # Publishing to the registry failed
        ├── NoMatchingImageError   # No image for the requested platform
        └── PublishFailedError     # One or more artifacts failed (aggregate)

Registry protocol errors live in steiger_core.oci.errors and inherit from
PublishError.

Exit Codes:
    1 - General error (SteigerError)
    4 - Configuration error
    5 - Build error
    6 - Image load error
    7 - Publish error
    8 - Registry unreachable
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


class Stage(str, Enum):
    """Pipeline stage an error originates from."""

    GENERAL = "general"
    CONFIGURATION = "configuration"
    BUILD = "build"
    LOAD = "load"
    PUSH = "push"


class SteigerError(Exception):
    """Base exception for all steiger errors.

    Attributes:
        stage: Pipeline stage the error belongs to.
        exit_code: CLI exit code for this error type (default: 1).
    """

    stage: Stage = Stage.GENERAL
    exit_code: int = 1


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(SteigerError):
    """Raised when the project configuration or environment is unusable.

    Configuration errors are fatal for the whole run and never retried.
    """

    stage = Stage.CONFIGURATION
    exit_code = 4


class BackendNotFoundError(ConfigurationError):
    """Raised when a build backend cannot locate its external tool.

    Attributes:
        kind: Backend kind (e.g. "docker").
        tools: Executable names that were searched for.

    Example:
        >>> raise BackendNotFoundError("bazel", ["bazel", "bazelisk"])
        Traceback (most recent call last):
            ...
        BackendNotFoundError: failed to find bazel binary (searched: bazel, bazelisk)
    """

    def __init__(self, kind: str, tools: Sequence[str]) -> None:
        self.kind = kind
        self.tools = list(tools)
        super().__init__(f"failed to find {kind} binary (searched: {', '.join(self.tools)})")


# =============================================================================
# Build
# =============================================================================


class BuildError(SteigerError):
    """Base class for build execution failures."""

    stage = Stage.BUILD
    exit_code = 5


class ExitError(BuildError):
    """Raised when an external command exits with a non-zero status.

    Attributes:
        command: The command that was run.
        code: Process exit code.
        stderr: Captured standard error (may be empty when streamed).
    """

    def __init__(self, command: Sequence[str], code: int, stderr: str = "") -> None:
        self.command = list(command)
        self.code = code
        self.stderr = stderr

        msg = f"command '{self.command[0]}' failed with code {code}"
        if stderr.strip():
            msg += f": {stderr.strip()}"
        super().__init__(msg)


class TargetBuildError(BuildError):
    """Raised when a single build target fails.

    Attributes:
        target: Name of the failing build target.
        backend: Backend kind that ran the target.
        cause: The underlying exception.
    """

    def __init__(self, target: str, backend: str, cause: BaseException) -> None:
        self.target = target
        self.backend = backend
        self.cause = cause
        super().__init__(f"target '{target}' failed in {backend} backend: {cause}")

    @property
    def stage(self) -> Stage:  # type: ignore[override]
        """Report load failures as such even though they surfaced during a build."""
        if isinstance(self.cause, SteigerError):
            return self.cause.stage
        return Stage.BUILD


class BuildFailedError(BuildError):
    """Raised when one or more targets of a build run failed.

    Successful targets are still reported through ``output``.

    Attributes:
        failures: Every per-target failure, in configuration order.
        output: Merged output of the targets that succeeded.
    """

    def __init__(self, failures: Sequence[TargetBuildError], output: Any = None) -> None:
        self.failures = list(failures)
        self.output = output

        names = ", ".join(f"{f.target} ({f.backend})" for f in self.failures)
        super().__init__(f"{len(self.failures)} build target(s) failed: {names}")


# =============================================================================
# Image loading
# =============================================================================


class ImageLoadError(SteigerError):
    """Base class for OCI image layout loading failures.

    Attributes:
        path: Layout directory or blob path involved.
        reason: Description of the failure.
    """

    stage = Stage.LOAD
    exit_code = 6

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"failed to load image from {path}: {reason}")


class InvalidLayoutError(ImageLoadError):
    """Raised when index.json or a manifest is missing or malformed."""


class MissingBlobError(ImageLoadError):
    """Raised when a referenced blob is not present in the layout.

    Attributes:
        digest: Digest of the missing blob.
    """

    def __init__(self, path: str, digest: str, reason: str | None = None) -> None:
        self.digest = digest
        super().__init__(path, reason or f"blob {digest} not found")


class DigestMismatchError(ImageLoadError):
    """Raised when blob content does not match its descriptor.

    Attributes:
        expected: Digest declared by the descriptor.
        actual: Digest computed from the bytes on disk.
    """

    def __init__(self, path: str, expected: str, actual: str, reason: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(path, reason or f"digest mismatch: expected {expected}, got {actual}")


# =============================================================================
# Publish
# =============================================================================


class PublishError(SteigerError):
    """Base class for failures while publishing images."""

    stage = Stage.PUSH
    exit_code = 7


class NoMatchingImageError(PublishError):
    """Raised when an artifact has no image for the requested platform.

    Attributes:
        artifact: Artifact name.
        platform: Requested platform string.
        available: Platforms of the images that were produced.
    """

    def __init__(self, artifact: str, platform: str, available: Sequence[str]) -> None:
        self.artifact = artifact
        self.platform = platform
        self.available = list(available)

        msg = f"no image for platform {platform} in artifact '{artifact}'"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        super().__init__(msg)


class PublishFailedError(PublishError):
    """Raised when one or more artifacts failed to publish.

    Attributes:
        failures: Mapping of artifact name to the error that aborted it.
        results: Push results of the artifacts that succeeded.
    """

    def __init__(self, failures: Mapping[str, BaseException], results: Any = None) -> None:
        self.failures = dict(failures)
        self.results = results
        super().__init__(
            f"{len(self.failures)} artifact(s) failed to publish: {', '.join(sorted(self.failures))}"
        )


__all__ = [
    "BackendNotFoundError",
    "BuildError",
    "BuildFailedError",
    "ConfigurationError",
    "DigestMismatchError",
    "ExitError",
    "ImageLoadError",
    "InvalidLayoutError",
    "MissingBlobError",
    "NoMatchingImageError",
    "PublishError",
    "PublishFailedError",
    "Stage",
    "SteigerError",
    "TargetBuildError",
]
