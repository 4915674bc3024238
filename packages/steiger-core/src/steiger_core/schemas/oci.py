"""OCI image-spec schemas.

Pydantic v2 models for the parts of the OCI image specification steiger
reads from disk and pushes to registries: descriptors, platforms, image
indexes and image manifests. Field names are snake_case in Python and
camelCase on the wire (``populate_by_name`` accepts both).

Key Components:
    Platform: os/architecture[/variant] tag of an index entry
    Descriptor: Content descriptor (media type, digest, size, annotations)
    ImageIndex: Top-level index.json of an image layout
    ImageManifest: Image manifest (config descriptor + ordered layers)

Canonical JSON:
    ``ImageManifest.canonical_json()`` serializes with sorted keys and no
    insignificant whitespace so that two structurally equal manifests always
    produce the same bytes, and therefore the same digest.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Constants
# =============================================================================

OCI_IMAGE_INDEX_TYPE = "application/vnd.oci.image.index.v1+json"
"""Media type for OCI image indexes."""

OCI_IMAGE_MANIFEST_TYPE = "application/vnd.oci.image.manifest.v1+json"
"""Media type for OCI image manifests."""

OCI_IMAGE_CONFIG_TYPE = "application/vnd.oci.image.config.v1+json"
"""Media type for OCI image config blobs."""

DOCKER_MANIFEST_TYPE = "application/vnd.docker.distribution.manifest.v2+json"
"""Media type for Docker v2 schema 2 manifests."""

DOCKER_MANIFEST_LIST_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"
"""Media type for Docker manifest lists."""

MANIFEST_ACCEPT_TYPES = (
    OCI_IMAGE_MANIFEST_TYPE,
    OCI_IMAGE_INDEX_TYPE,
    DOCKER_MANIFEST_TYPE,
    DOCKER_MANIFEST_LIST_TYPE,
)
"""Media types sent in the Accept header of manifest requests."""


def sha256_digest(content: bytes) -> str:
    """Calculate the SHA256 digest of content in OCI format.

    Example:
        >>> sha256_digest(b"")
        'sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


def canonical_json(value: Any) -> bytes:
    """Encode a JSON value with sorted keys and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


class _OCIModel(BaseModel):
    """Shared configuration for wire-format OCI models."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        """Return the camelCase wire representation without unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Platform
# =============================================================================


class Platform(_OCIModel):
    """Platform an image was built for.

    Examples:
        >>> Platform.parse("linux/arm64/v8")
        Platform(architecture='arm64', os='linux', ...)
        >>> str(Platform(os="linux", architecture="amd64"))
        'linux/amd64'
    """

    architecture: str = Field(..., description="CPU architecture (e.g. amd64, arm64)")
    os: str = Field(..., description="Operating system (e.g. linux)")
    os_version: str | None = Field(default=None, alias="os.version")
    os_features: list[str] | None = Field(default=None, alias="os.features")
    variant: str | None = Field(default=None, description="CPU variant (e.g. v8)")
    features: list[str] | None = Field(default=None)

    @classmethod
    def parse(cls, value: str) -> Platform:
        """Parse an ``os/arch[/variant]`` string.

        Raises:
            ValueError: If the string does not have two or three components.
        """
        parts = value.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"invalid platform: {value!r} (expected os/arch[/variant])")
        variant = parts[2] if len(parts) == 3 else None
        return cls(os=parts[0], architecture=parts[1], variant=variant)

    def matches(self, other: Platform) -> bool:
        """Check whether two platforms designate the same target.

        A missing variant on either side matches any variant.
        """
        if self.os != other.os or self.architecture != other.architecture:
            return False
        if self.variant is None or other.variant is None:
            return True
        return self.variant == other.variant

    def __str__(self) -> str:
        if self.variant:
            return f"{self.os}/{self.architecture}/{self.variant}"
        return f"{self.os}/{self.architecture}"


# =============================================================================
# Descriptors, index and manifest
# =============================================================================


class Descriptor(_OCIModel):
    """OCI content descriptor."""

    media_type: str = Field(..., alias="mediaType")
    digest: str = Field(..., pattern=r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
    size: int = Field(..., ge=0)
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    data: str | None = None
    artifact_type: str | None = Field(default=None, alias="artifactType")
    platform: Platform | None = None

    @property
    def algorithm(self) -> str:
        """Return the digest algorithm (e.g. "sha256")."""
        return self.digest.split(":", 1)[0]

    @property
    def encoded(self) -> str:
        """Return the encoded hash part of the digest."""
        return self.digest.split(":", 1)[1]


class ImageIndex(_OCIModel):
    """Top-level ``index.json`` of an OCI image layout."""

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    artifact_type: str | None = Field(default=None, alias="artifactType")
    manifests: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


class ImageManifest(_OCIModel):
    """OCI image manifest: one config descriptor and ordered layers.

    Layer order is the filesystem overlay order and is preserved exactly.
    """

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str | None = Field(default=None, alias="mediaType")
    artifact_type: str | None = Field(default=None, alias="artifactType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    def canonical_json(self) -> bytes:
        """Serialize to canonical JSON (sorted keys, no whitespace)."""
        return canonical_json(self.to_wire())

    def compute_digest(self) -> str:
        """Compute the sha256 digest of the canonical serialization."""
        return sha256_digest(self.canonical_json())


# =============================================================================
# Registry client configuration
# =============================================================================


class RetryConfig(BaseModel):
    """Retry policy configuration for transient registry failures.

    Uses exponential backoff with optional jitter to prevent thundering herd.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts, including the first one",
    )
    initial_delay_ms: int = Field(
        default=500,
        ge=0,
        description="Initial delay between retries in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=10000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=True,
        description="Add random jitter to delays",
    )


__all__ = [
    "DOCKER_MANIFEST_LIST_TYPE",
    "DOCKER_MANIFEST_TYPE",
    "MANIFEST_ACCEPT_TYPES",
    "OCI_IMAGE_CONFIG_TYPE",
    "OCI_IMAGE_INDEX_TYPE",
    "OCI_IMAGE_MANIFEST_TYPE",
    "Descriptor",
    "ImageIndex",
    "ImageManifest",
    "Platform",
    "RetryConfig",
    "canonical_json",
    "sha256_digest",
]
