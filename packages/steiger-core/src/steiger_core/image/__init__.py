"""OCI image layouts: blob store, image values and loader."""

from __future__ import annotations

from steiger_core.image.blob_store import BlobStore, split_digest
from steiger_core.image.loader import load_from_path
from steiger_core.image.models import Blob, Image

__all__ = ["Blob", "BlobStore", "Image", "load_from_path", "split_digest"]
