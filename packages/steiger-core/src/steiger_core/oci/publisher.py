"""Registry publisher: idempotent, deduplicating image push.

Push algorithm for one image and one target reference:

    1. Resolve credentials for the registry host and hand them to the client
       (anonymous is a valid outcome).
    2. Look up the digest the reference currently points to. "Manifest
       unknown" means the tag does not exist yet.
    3. If the remote digest equals the image digest, stop: nothing is
       uploaded and the existing digest is returned.
    4. For every layer, probe the registry with a one-byte ranged GET and
       upload the blob only when it is missing. At most
       MAX_CONCURRENT_BLOB_OPERATIONS probes/uploads are in flight per
       image; the first failure cancels the rest of the batch.
    5. Upload the config blob (always; configs are small).
    6. Upload the manifest, strictly after all of its blobs.
    7. Return ``registry/repo:tag@digest``.

The concurrency limit is scoped to one ``push`` call: four artifacts
published at once may have up to 4 x 16 blob operations in flight.

Example:
    >>> async with RegistryClient() as client:
    ...     publisher = RegistryPublisher(client, create_auth_provider())
    ...     result = await publisher.publish(progress, "registry.example/org", "web", "v1", image)
    >>> result.reference
    'registry.example/org/web:v1@sha256:...'
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from steiger_core.oci.auth import AnonymousAuthProvider, AuthProvider
from steiger_core.oci.errors import BlobNotFoundError, ManifestNotFoundError
from steiger_core.oci.metrics import PublishMetrics
from steiger_core.oci.reference import Reference

if TYPE_CHECKING:
    from steiger_core.image import Blob, Image
    from steiger_core.oci.client import RegistryClient
    from steiger_core.progress import Progress

logger = structlog.get_logger(__name__)

MAX_CONCURRENT_BLOB_OPERATIONS = 16
"""Upper bound of concurrent layer probes/uploads for one image push."""


@dataclass(frozen=True)
class PushResult:
    """Outcome of publishing one image.

    Attributes:
        reference: ``registry/repo:tag@digest``, usable to pin a deployment.
        digest: Manifest digest the reference points to.
        skipped: True if the registry already held this exact manifest.
        config_location: Config blob location (pushed only).
        manifest_location: Manifest location (pushed only).
        uploaded_layers: Number of layer blobs actually uploaded.
    """

    reference: str
    digest: str
    skipped: bool
    config_location: str | None = None
    manifest_location: str | None = None
    uploaded_layers: int = 0


class RegistryPublisher:
    """Publishes loaded images to OCI registries.

    Args:
        client: Registry protocol client.
        auth_provider: Credential source. Defaults to anonymous.
        metrics: OpenTelemetry instrumentation.
        max_concurrent_blobs: Per-image limit of in-flight blob operations.
    """

    def __init__(
        self,
        client: RegistryClient,
        auth_provider: AuthProvider | None = None,
        *,
        metrics: PublishMetrics | None = None,
        max_concurrent_blobs: int = MAX_CONCURRENT_BLOB_OPERATIONS,
    ) -> None:
        self._client = client
        self._auth_provider = auth_provider or AnonymousAuthProvider()
        self._metrics = metrics or PublishMetrics()
        self._max_concurrent_blobs = max_concurrent_blobs

    async def try_resolve_digest(self, reference: Reference) -> str | None:
        """Return the remote manifest digest, or None if the reference does not exist."""
        try:
            return await self._client.fetch_manifest_digest(reference)
        except ManifestNotFoundError:
            return None

    async def publish(
        self,
        progress: Progress,
        repository: str,
        artifact: str,
        tag: str,
        image: Image,
    ) -> PushResult:
        """Push ``image`` to ``<repository>/<artifact>:<tag>``."""
        reference = Reference.parse(f"{repository.rstrip('/')}/{artifact}:{tag}")
        return await self.push(progress, reference, image)

    async def push(self, progress: Progress, reference: Reference | str, image: Image) -> PushResult:
        """Push ``image`` to ``reference`` unless it is already there.

        Raises:
            OCIError: If authentication, a blob or the manifest push fails.
        """
        if isinstance(reference, str):
            reference = Reference.parse(reference)

        registry = reference.registry
        log = logger.bind(reference=str(reference), digest=image.digest)
        started = time.monotonic()

        with self._metrics.create_span(
            PublishMetrics.SPAN_PUSH,
            {"registry": registry, "repository": reference.repository, "digest": image.digest},
        ) as span:
            try:
                result = await self._push(progress, reference, image)
            except Exception:
                self._metrics.record_push(registry, "failed", duration_seconds=time.monotonic() - started)
                raise
            span.set_attribute("skipped", result.skipped)

        outcome = "skipped" if result.skipped else "pushed"
        self._metrics.record_push(registry, outcome, duration_seconds=time.monotonic() - started)
        log.info("image_published", outcome=outcome, uploaded_layers=result.uploaded_layers)
        return result

    async def _push(self, progress: Progress, reference: Reference, image: Image) -> PushResult:
        credentials = await asyncio.to_thread(self._auth_provider.get_credentials, reference.registry)
        self._client.store_auth(reference.api_registry, credentials)

        remote = await self.try_resolve_digest(reference)
        if remote is not None and remote == image.digest:
            progress.done(f"{reference} is up to date")
            return PushResult(
                reference=str(reference.with_digest(remote)),
                digest=remote,
                skipped=True,
            )

        layers = _unique_layers(image.layers)
        progress.init(total=len(layers) + 2)
        progress.info(f"pushing {len(layers)} layer(s) to {reference}")

        uploaded = await self._push_layers(progress, reference, layers)

        config_location = await self._client.push_blob(reference, image.config.data, image.config.digest)
        self._metrics.record_blob(reference.registry, "upload", "uploaded", size_bytes=image.config.size)
        progress.inc()

        with self._metrics.create_span(PublishMetrics.SPAN_PUSH_MANIFEST, {"digest": image.digest}):
            manifest_location = await self._client.push_manifest(
                reference, image.manifest_bytes, image.media_type
            )
        progress.inc()
        progress.done(f"pushed {reference.with_digest(image.digest)}")

        return PushResult(
            reference=str(reference.with_digest(image.digest)),
            digest=image.digest,
            skipped=False,
            config_location=config_location,
            manifest_location=manifest_location,
            uploaded_layers=uploaded,
        )

    async def _push_layers(self, progress: Progress, reference: Reference, layers: list[Blob]) -> int:
        """Probe and upload layers with bounded concurrency, failing fast.

        Returns:
            Number of layers uploaded.
        """
        if not layers:
            return 0

        semaphore = asyncio.Semaphore(self._max_concurrent_blobs)
        tasks = [
            asyncio.ensure_future(self._push_layer(semaphore, progress, reference, layer))
            for layer in layers
        ]

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            error = task.exception()
            if error is not None:
                raise error
        return sum(1 for task in tasks if task.result())

    async def _push_layer(
        self,
        semaphore: asyncio.Semaphore,
        progress: Progress,
        reference: Reference,
        layer: Blob,
    ) -> bool:
        """Upload one layer if the registry lacks it; return True if uploaded."""
        async with semaphore:
            with self._metrics.create_span(
                PublishMetrics.SPAN_UPLOAD_BLOB, {"digest": layer.digest, "size": layer.size}
            ):
                try:
                    await self._client.probe_blob(reference, layer.digest)
                except BlobNotFoundError:
                    self._metrics.record_blob(reference.registry, "probe", "missing")
                else:
                    self._metrics.record_blob(reference.registry, "probe", "present")
                    progress.inc()
                    return False

                await self._client.push_blob(reference, layer.data, layer.digest)
                self._metrics.record_blob(reference.registry, "upload", "uploaded", size_bytes=layer.size)
                progress.inc()
                return True


def _unique_layers(layers: tuple[Blob, ...]) -> list[Blob]:
    seen: set[str] = set()
    unique = []
    for layer in layers:
        if layer.digest not in seen:
            seen.add(layer.digest)
            unique.append(layer)
    return unique


__all__ = ["MAX_CONCURRENT_BLOB_OPERATIONS", "PushResult", "RegistryPublisher"]
