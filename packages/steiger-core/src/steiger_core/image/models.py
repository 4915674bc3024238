"""In-memory image values produced by the loader and consumed by the publisher."""

from __future__ import annotations

from dataclasses import dataclass, field

from steiger_core.schemas.oci import OCI_IMAGE_MANIFEST_TYPE, Descriptor, ImageManifest, Platform


@dataclass(frozen=True)
class Blob:
    """Raw blob bytes with the descriptor they were read through.

    Media type and annotations come from the manifest unmodified.
    """

    descriptor: Descriptor
    data: bytes = field(repr=False)

    @property
    def digest(self) -> str:
        return self.descriptor.digest

    @property
    def media_type(self) -> str:
        return self.descriptor.media_type

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self.descriptor.annotations or {})

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Image:
    """A single-platform image loaded from an OCI layout.

    Attributes:
        digest: sha256 of ``manifest_bytes`` (computed, never read from disk).
        manifest: Parsed image manifest.
        manifest_bytes: Canonical JSON encoding of ``manifest``.
        config: Config blob.
        layers: Layer blobs in manifest order.
        platform: Index-level platform tag, ``None`` for platform-independent.
    """

    digest: str
    manifest: ImageManifest
    manifest_bytes: bytes = field(repr=False)
    config: Blob
    layers: tuple[Blob, ...]
    platform: Platform | None = None

    @property
    def media_type(self) -> str:
        """Return the manifest media type sent as Content-Type on push."""
        return self.manifest.media_type or OCI_IMAGE_MANIFEST_TYPE


__all__ = ["Blob", "Image"]
