"""Project configuration schemas for steiger.

This module defines the Pydantic v2 schemas for ``steiger.yml``: the set of
named build targets, each bound to exactly one build backend, and the
registry settings used when publishing.

Example steiger.yml:
    services:
      web:
        build:
          type: docker
          context: ./web
      api:
        build:
          type: bazel
          targets:
            api: //api:image
          platforms:
            linux/arm64: //platforms:linux_arm64
    registry:
      insecureRegistries:
        - registry.internal:5000

Key Components:
    BuilderKind: Backend kinds known to the dispatcher
    BuilderConfig: Discriminated union of backend configurations
    BuildTarget: One named build target
    SteigerConfig: Top-level project configuration
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from steiger_core.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILENAME = "steiger.yml"
"""Project file looked up in the working directory when none is given."""


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class BuilderKind(str, Enum):
    """Build backend kinds."""

    BAZEL = "bazel"
    DOCKER = "docker"
    KO = "ko"
    NIX = "nix"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


# =============================================================================
# Backend configurations
# =============================================================================


class BazelBuildConfig(_ConfigModel):
    """Bazel targets that each produce an OCI image layout.

    Examples:
        >>> config = BazelBuildConfig(type="bazel", targets={"api": "//api:image"})
        >>> config.artifact_names("api-image")
        ['api']
    """

    type: Literal["bazel"] = "bazel"
    targets: dict[str, str] = Field(
        ...,
        min_length=1,
        description="Artifact name to bazel label",
    )
    platforms: dict[str, str] = Field(
        default_factory=dict,
        description="os/arch platform string to bazel platform label",
    )

    def artifact_names(self, target_name: str) -> list[str]:  # noqa: ARG002
        return list(self.targets)


class DockerBuildConfig(_ConfigModel):
    """Docker buildx build of a single context."""

    type: Literal["docker"] = "docker"
    context: str = Field(default=".", description="Build context directory")
    dockerfile: str | None = Field(
        default=None,
        description="Dockerfile path (defaults to <context>/Dockerfile)",
    )

    def artifact_names(self, target_name: str) -> list[str]:
        return [target_name]


class KoBuildConfig(_ConfigModel):
    """ko build of a Go import path."""

    type: Literal["ko"] = "ko"
    import_path: str | None = Field(
        default=None,
        alias="importPath",
        description="Go import path to build (defaults to '.')",
    )

    def artifact_names(self, target_name: str) -> list[str]:
        return [target_name]


class NixBuildConfig(_ConfigModel):
    """Nix flake packages that each produce an OCI image layout."""

    type: Literal["nix"] = "nix"
    flake: Path | None = Field(default=None, description="Flake directory (defaults to '.')")
    packages: dict[str, str] = Field(
        ...,
        min_length=1,
        description="Artifact name to flake package attribute",
    )

    def artifact_names(self, target_name: str) -> list[str]:  # noqa: ARG002
        return list(self.packages)


BuilderConfig = Annotated[
    Union[BazelBuildConfig, DockerBuildConfig, KoBuildConfig, NixBuildConfig],
    Field(discriminator="type"),
]
"""Tagged union of backend configurations, selected by ``type``."""


# =============================================================================
# Targets and project
# =============================================================================


class BuildTarget(_ConfigModel):
    """A named build target bound to one backend."""

    build: BuilderConfig

    @property
    def kind(self) -> BuilderKind:
        """Return the backend kind of this target."""
        return BuilderKind(self.build.type)


class RegistrySettings(_ConfigModel):
    """Registry settings used when publishing."""

    insecure_registries: list[str] = Field(
        default_factory=list,
        alias="insecureRegistries",
        description="Registries reached over plain HTTP (localhost always is)",
    )


class SteigerConfig(_ConfigModel):
    """Top-level project configuration.

    Target names and the artifact names they produce must be unique across
    the whole project; a collision is rejected at load time.
    """

    services: dict[str, BuildTarget] = Field(
        ...,
        min_length=1,
        description="Build targets keyed by name, in configuration order",
    )
    registry: RegistrySettings = Field(default_factory=RegistrySettings)

    @model_validator(mode="after")
    def validate_unique_artifacts(self) -> SteigerConfig:
        """Reject artifact names claimed by more than one target."""
        owners: dict[str, str] = {}
        for name, target in self.services.items():
            for artifact in target.build.artifact_names(name):
                if artifact in owners:
                    raise ValueError(
                        f"artifact '{artifact}' is produced by both "
                        f"'{owners[artifact]}' and '{name}'"
                    )
                owners[artifact] = name
        return self

    def artifact_owners(self) -> dict[str, str]:
        """Return a mapping of artifact name to the target that builds it."""
        return {
            artifact: name
            for name, target in self.services.items()
            for artifact in target.build.artifact_names(name)
        }

    @classmethod
    def from_dict(cls, data: Any, *, source: str = "<config>") -> SteigerConfig:
        """Validate a parsed configuration document.

        Raises:
            ConfigurationError: If the document does not match the schema.
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"invalid configuration in {source}: expected a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration in {source}: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> SteigerConfig:
        """Load and validate a steiger.yml file.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"configuration file not found: {path}")

        try:
            with path.open() as f:
                data = yaml.load(f, Loader=_UniqueKeyLoader)  # noqa: S506
        except yaml.YAMLError as e:
            raise ConfigurationError(f"failed to parse {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"failed to read {path}: {e}") from e

        config = cls.from_dict(data, source=str(path))
        logger.debug("config_loaded", path=str(path), targets=len(config.services))
        return config


__all__ = [
    "DEFAULT_CONFIG_FILENAME",
    "BazelBuildConfig",
    "BuildTarget",
    "BuilderConfig",
    "BuilderKind",
    "DockerBuildConfig",
    "KoBuildConfig",
    "NixBuildConfig",
    "RegistrySettings",
    "SteigerConfig",
]
