"""Content-addressed blob access for on-disk OCI image layouts.

An OCI image layout stores every manifest, config and layer under
``blobs/<algorithm>/<encoded>``. The BlobStore resolves a digest to that
path and reads the bytes off the event loop.

Example:
    >>> store = BlobStore(Path("/tmp/layout"))
    >>> data = await store.read_blob("sha256:e3b0c442...")
    >>> data = await store.read_verified(descriptor)
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from pathlib import Path

import structlog

from steiger_core.errors import DigestMismatchError, MissingBlobError
from steiger_core.schemas.oci import Descriptor

logger = structlog.get_logger(__name__)

_DIGEST_PATTERN = re.compile(r"^(?P<algorithm>[a-z0-9]+(?:[+._-][a-z0-9]+)*):(?P<encoded>[a-zA-Z0-9=_-]+)$")


def split_digest(digest: str) -> tuple[str, str]:
    """Split ``algorithm:encoded`` into its two parts.

    Raises:
        ValueError: If the digest is malformed.

    Example:
        >>> split_digest("sha256:abc")
        ('sha256', 'abc')
    """
    match = _DIGEST_PATTERN.match(digest)
    if match is None:
        raise ValueError(f"invalid digest: {digest!r}")
    return match.group("algorithm"), match.group("encoded")


class BlobStore:
    """Reads blobs from an OCI image layout directory.

    Attributes:
        root: Layout directory (the one holding ``index.json``).
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def blob_path(self, digest: str) -> Path:
        """Return the on-disk path of a blob.

        Raises:
            MissingBlobError: If the digest is malformed.
        """
        try:
            algorithm, encoded = split_digest(digest)
        except ValueError as e:
            raise MissingBlobError(str(self.root), digest, str(e)) from e
        return self.root / "blobs" / algorithm / encoded

    async def read_blob(self, digest: str) -> bytes:
        """Read a blob by digest.

        Raises:
            MissingBlobError: If the digest is malformed or the file is absent.
        """
        path = self.blob_path(digest)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise MissingBlobError(str(path), digest) from e
        except OSError as e:
            raise MissingBlobError(str(path), digest, f"failed to read blob {digest}: {e}") from e

    async def read_verified(self, descriptor: Descriptor) -> bytes:
        """Read a blob and check it against its descriptor.

        The descriptor is trusted as the source of truth; the bytes on disk
        must match its declared size and hash.

        Raises:
            MissingBlobError: If the blob is absent.
            DigestMismatchError: If size or hash differ from the descriptor.
        """
        data = await self.read_blob(descriptor.digest)
        path = str(self.blob_path(descriptor.digest))

        try:
            hasher = hashlib.new(descriptor.algorithm)
        except ValueError:
            hasher = None

        if hasher is None:
            # Unknown algorithm: only the size can be checked.
            logger.warning(
                "blob_digest_unverified",
                digest=descriptor.digest,
                algorithm=descriptor.algorithm,
            )
            actual = descriptor.digest
        else:
            hasher.update(data)
            actual = f"{descriptor.algorithm}:{hasher.hexdigest()}"

        if len(data) != descriptor.size:
            raise DigestMismatchError(
                path,
                descriptor.digest,
                actual,
                reason=f"size mismatch for {descriptor.digest}: expected {descriptor.size} bytes, "
                f"got {len(data)}",
            )
        if actual != descriptor.digest:
            raise DigestMismatchError(path, descriptor.digest, actual)
        return data


__all__ = ["BlobStore", "split_digest"]
