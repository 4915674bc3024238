"""Pydantic schemas for steiger configuration, OCI documents and outputs."""

from __future__ import annotations

from steiger_core.schemas.config import (
    BazelBuildConfig,
    BuilderConfig,
    BuilderKind,
    BuildTarget,
    DockerBuildConfig,
    KoBuildConfig,
    NixBuildConfig,
    RegistrySettings,
    SteigerConfig,
)
from steiger_core.schemas.oci import Descriptor, ImageIndex, ImageManifest, Platform
from steiger_core.schemas.output import BuildEntry, BuildsFile

__all__ = [
    "BazelBuildConfig",
    "BuildEntry",
    "BuildTarget",
    "BuilderConfig",
    "BuilderKind",
    "BuildsFile",
    "Descriptor",
    "DockerBuildConfig",
    "ImageIndex",
    "ImageManifest",
    "KoBuildConfig",
    "NixBuildConfig",
    "Platform",
    "RegistrySettings",
    "SteigerConfig",
]
