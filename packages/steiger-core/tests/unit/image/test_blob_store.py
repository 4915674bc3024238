"""Unit tests for content-addressed blob access."""

from __future__ import annotations

from pathlib import Path

import pytest

from steiger_core.errors import DigestMismatchError, MissingBlobError
from steiger_core.image import BlobStore, split_digest
from steiger_core.schemas.oci import Descriptor, sha256_digest

MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar"


def _write_blob(root: Path, data: bytes) -> Descriptor:
    digest = sha256_digest(data)
    path = root / "blobs" / "sha256" / digest.split(":", 1)[1]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return Descriptor(media_type=MEDIA_TYPE, digest=digest, size=len(data))


class TestSplitDigest:
    def test_split(self) -> None:
        assert split_digest("sha256:abc123") == ("sha256", "abc123")

    @pytest.mark.parametrize("digest", ["", "sha256", ":abc", "SHA256:abc", "sha256:a/b"])
    def test_invalid(self, digest: str) -> None:
        with pytest.raises(ValueError, match="invalid digest"):
            split_digest(digest)


class TestBlobStore:
    """Tests for reading and verifying blobs."""

    def test_blob_path(self, tmp_path: Path) -> None:
        store = BlobStore(tmp_path)

        assert store.blob_path("sha256:abc") == tmp_path / "blobs" / "sha256" / "abc"

    def test_blob_path_rejects_traversal(self, tmp_path: Path) -> None:
        with pytest.raises(MissingBlobError):
            BlobStore(tmp_path).blob_path("sha256:../../etc/passwd")

    @pytest.mark.asyncio
    async def test_read_verified(self, tmp_path: Path) -> None:
        descriptor = _write_blob(tmp_path, b"layer contents")

        assert await BlobStore(tmp_path).read_verified(descriptor) == b"layer contents"

    @pytest.mark.asyncio
    async def test_missing_blob(self, tmp_path: Path) -> None:
        descriptor = Descriptor(media_type=MEDIA_TYPE, digest=sha256_digest(b"gone"), size=4)

        with pytest.raises(MissingBlobError) as exc_info:
            await BlobStore(tmp_path).read_verified(descriptor)

        assert exc_info.value.digest == descriptor.digest

    @pytest.mark.asyncio
    async def test_corrupted_blob(self, tmp_path: Path) -> None:
        """Test bytes that no longer hash to their digest are rejected."""
        descriptor = _write_blob(tmp_path, b"original")
        BlobStore(tmp_path).blob_path(descriptor.digest).write_bytes(b"tampered")

        with pytest.raises(DigestMismatchError) as exc_info:
            await BlobStore(tmp_path).read_verified(descriptor)

        assert exc_info.value.expected == descriptor.digest
        assert exc_info.value.actual == sha256_digest(b"tampered")

    @pytest.mark.asyncio
    async def test_size_mismatch(self, tmp_path: Path) -> None:
        descriptor = _write_blob(tmp_path, b"twelve bytes")
        wrong_size = descriptor.model_copy(update={"size": 3})

        with pytest.raises(DigestMismatchError, match="size mismatch"):
            await BlobStore(tmp_path).read_verified(wrong_size)

    @pytest.mark.asyncio
    async def test_unknown_algorithm_checks_size_only(self, tmp_path: Path) -> None:
        path = tmp_path / "blobs" / "vendorhash" / "abc"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"data")
        descriptor = Descriptor(media_type=MEDIA_TYPE, digest="vendorhash:abc", size=4)

        assert await BlobStore(tmp_path).read_verified(descriptor) == b"data"
