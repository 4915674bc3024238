"""OCI image layout loader.

Turns a directory written by a build tool into ``Image`` values:

    layout/
    ├── index.json              # image index (manifest descriptors)
    └── blobs/sha256/<hash>     # manifests, configs and layers

Every manifest listed in ``index.json`` becomes one ``Image``. Nested
indexes (as written for multi-platform builds) are followed, and entries
without their own platform inherit the platform of the index entry that
led to them. Layers are read in manifest order and checked against their
descriptors; the manifest digest is recomputed from the canonical JSON
encoding rather than taken from the index.

Any failure aborts the whole load: a layout either yields all of its
images or raises an ``ImageLoadError``.

Example:
    >>> images = await load_from_path(Path("bazel-bin/web/image"))
    >>> [str(image.platform) for image in images]
    ['linux/amd64']
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from steiger_core.errors import InvalidLayoutError
from steiger_core.image.blob_store import BlobStore
from steiger_core.image.models import Blob, Image
from steiger_core.schemas.oci import (
    DOCKER_MANIFEST_LIST_TYPE,
    OCI_IMAGE_INDEX_TYPE,
    Descriptor,
    ImageIndex,
    ImageManifest,
    Platform,
    sha256_digest,
)

logger = structlog.get_logger(__name__)

INDEX_FILENAME = "index.json"

_INDEX_MEDIA_TYPES = frozenset({OCI_IMAGE_INDEX_TYPE, DOCKER_MANIFEST_LIST_TYPE})

# Guards against an index that (directly or indirectly) lists itself.
_MAX_INDEX_DEPTH = 8


def _parse(model: type[BaseModel], raw: bytes, source: str) -> Any:
    try:
        return model.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidLayoutError(source, f"malformed JSON: {e}") from e
    except ValidationError as e:
        raise InvalidLayoutError(source, f"invalid {model.__name__}: {e}") from e


async def _load_image(
    store: BlobStore,
    entry: Descriptor,
    platform: Platform | None,
) -> Image:
    raw = await store.read_verified(entry)
    manifest: ImageManifest = _parse(ImageManifest, raw, str(store.blob_path(entry.digest)))

    layers = []
    for descriptor in manifest.layers:
        data = await store.read_verified(descriptor)
        layers.append(Blob(descriptor=descriptor, data=data))

    config = Blob(descriptor=manifest.config, data=await store.read_verified(manifest.config))

    manifest_bytes = manifest.canonical_json()
    return Image(
        digest=sha256_digest(manifest_bytes),
        manifest=manifest,
        manifest_bytes=manifest_bytes,
        config=config,
        layers=tuple(layers),
        platform=platform,
    )


async def _load_index(
    store: BlobStore,
    index: ImageIndex,
    inherited: Platform | None,
    depth: int,
) -> list[Image]:
    if depth > _MAX_INDEX_DEPTH:
        raise InvalidLayoutError(str(store.root), "image index nesting too deep")

    images: list[Image] = []
    for entry in index.manifests:
        platform = entry.platform or inherited
        if entry.media_type in _INDEX_MEDIA_TYPES:
            raw = await store.read_verified(entry)
            nested: ImageIndex = _parse(ImageIndex, raw, str(store.blob_path(entry.digest)))
            images.extend(await _load_index(store, nested, platform, depth + 1))
        else:
            images.append(await _load_image(store, entry, platform))
    return images


async def load_from_path(path: Path | str) -> list[Image]:
    """Load every image of an OCI image layout.

    Args:
        path: Layout directory containing ``index.json`` and ``blobs/``.

    Returns:
        One ``Image`` per manifest, in index order.

    Raises:
        InvalidLayoutError: If ``index.json`` or a manifest is missing or malformed.
        MissingBlobError: If a referenced blob is absent.
        DigestMismatchError: If a blob does not match its descriptor.
    """
    root = Path(path)
    store = BlobStore(root)
    index_path = root / INDEX_FILENAME

    try:
        raw = index_path.read_bytes()
    except FileNotFoundError as e:
        raise InvalidLayoutError(str(root), f"{INDEX_FILENAME} not found") from e
    except OSError as e:
        raise InvalidLayoutError(str(root), f"failed to read {INDEX_FILENAME}: {e}") from e

    index: ImageIndex = _parse(ImageIndex, raw, str(index_path))
    images = await _load_index(store, index, None, 0)

    logger.debug(
        "image_layout_loaded",
        path=str(root),
        images=len(images),
        digests=[image.digest for image in images],
    )
    return images


__all__ = ["INDEX_FILENAME", "load_from_path"]
