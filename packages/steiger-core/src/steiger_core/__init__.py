"""steiger-core: build container images with any tool and publish them.

This package provides:
- SteigerConfig: Pydantic model of ``steiger.yml``
- BuildDispatcher: Concurrent execution of build targets across backends
- Builders: docker buildx, ko, bazel and nix adapters (steiger_core.builders)
- load_from_path: OCI image layout loading with digest verification
- RegistryPublisher: Idempotent push to OCI registries (steiger_core.oci)
- ProgressTree: Hierarchical progress reporting for concurrent tasks

Example:
    >>> from steiger_core import BuildDispatcher, ProgressTree, SteigerConfig
    >>> config = SteigerConfig.from_file(Path("steiger.yml"))
    >>> output = await BuildDispatcher(config).build(ProgressTree(), "linux/amd64")
    >>> sorted(output.artifacts)
    ['api', 'web']
"""

from __future__ import annotations

from steiger_core.dispatch import BuildDispatcher
from steiger_core.errors import (
    BuildError,
    BuildFailedError,
    ConfigurationError,
    ImageLoadError,
    PublishError,
    PublishFailedError,
    SteigerError,
    TargetBuildError,
)
from steiger_core.image import Image, load_from_path
from steiger_core.pipeline import publish_artifacts, select_image
from steiger_core.progress import Progress, ProgressTree
from steiger_core.schemas.config import SteigerConfig

__version__ = "0.1.0"

__all__: list[str] = [
    "__version__",
    # Configuration
    "SteigerConfig",
    # Build
    "BuildDispatcher",
    "Image",
    "load_from_path",
    # Publish
    "publish_artifacts",
    "select_image",
    # Progress
    "Progress",
    "ProgressTree",
    # Errors
    "BuildError",
    "BuildFailedError",
    "ConfigurationError",
    "ImageLoadError",
    "PublishError",
    "PublishFailedError",
    "SteigerError",
    "TargetBuildError",
]
