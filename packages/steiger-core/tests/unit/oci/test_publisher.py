"""Unit tests for the registry publisher.

Tests cover:
- First push uploads every blob, then the manifest
- Re-pushing the same image to the same reference uploads nothing
- Blobs already present are not uploaded again
- Duplicate layers are uploaded once
- At most 16 blob operations are in flight for one image
- The first blob failure aborts the push before the manifest
"""

from __future__ import annotations

from unittest.mock import ANY, MagicMock

import pytest

from steiger_core.oci import (
    MAX_CONCURRENT_BLOB_OPERATIONS,
    BasicAuthProvider,
    PublishMetrics,
    Reference,
    RegistryPublisher,
    RegistryResponseError,
    RegistryUnavailableError,
)
from steiger_core.progress import ProgressTree
from steiger_core.schemas.oci import sha256_digest

REFERENCE = "registry.example/org/web:v1"


class TestPush:
    """Tests for a first push."""

    @pytest.mark.asyncio
    async def test_uploads_blobs_then_manifest(self, fake_registry, make_client, make_image) -> None:
        image = make_image([b"layer-1", b"layer-2"])

        async with make_client() as client:
            result = await RegistryPublisher(client).push(ProgressTree().add_child("web"), REFERENCE, image)

        assert not result.skipped
        assert result.uploaded_layers == 2
        assert result.digest == image.digest
        assert result.reference == f"{REFERENCE}@{image.digest}"
        assert fake_registry.blob_uploads == 3
        assert fake_registry.manifest_puts == 1

        methods = [r.method for r in fake_registry.requests]
        assert methods[-1] == "PUT"
        assert "/manifests/v1" in str(fake_registry.requests[-1].url)

    @pytest.mark.asyncio
    async def test_remote_digest_matches_image_digest(self, fake_registry, make_client, make_image) -> None:
        """Test the pushed manifest bytes hash to the digest reported for the image."""
        image = make_image([b"layer"])

        async with make_client() as client:
            await RegistryPublisher(client).push(ProgressTree().add_child("web"), REFERENCE, image)

        stored, media_type = fake_registry.manifests[("org/web", "v1")]
        assert sha256_digest(stored) == image.digest
        assert media_type == "application/vnd.oci.image.manifest.v1+json"

    @pytest.mark.asyncio
    async def test_publish_builds_reference(self, fake_registry, make_client, make_image) -> None:
        image = make_image([b"layer"])

        async with make_client() as client:
            result = await RegistryPublisher(client).publish(
                ProgressTree().add_child("web"), "registry.example/org/", "web", "v1", image
            )

        assert result.reference == f"registry.example/org/web:v1@{image.digest}"

    @pytest.mark.asyncio
    async def test_progress_counts_every_blob(self, make_client, make_image) -> None:
        image = make_image([b"a", b"b", b"c"])
        node = ProgressTree().add_child("web")

        async with make_client() as client:
            await RegistryPublisher(client).push(node, REFERENCE, image)

        assert node.total == 5
        assert node.step == 5


class TestIdempotence:
    """Tests for skipping work the registry already has."""

    @pytest.mark.asyncio
    async def test_second_push_is_skipped(self, fake_registry, make_client, make_image) -> None:
        image = make_image([b"layer-1", b"layer-2"])

        async with make_client() as client:
            publisher = RegistryPublisher(client)
            first = await publisher.push(ProgressTree().add_child("web"), REFERENCE, image)
            uploads = fake_registry.blob_uploads
            second = await publisher.push(ProgressTree().add_child("web"), REFERENCE, image)

        assert second.skipped
        assert second.uploaded_layers == 0
        assert second.digest == first.digest
        assert second.reference == first.reference
        assert fake_registry.blob_uploads == uploads
        assert fake_registry.manifest_puts == 1

    @pytest.mark.asyncio
    async def test_changed_image_is_pushed_again(self, fake_registry, make_client, make_image) -> None:
        async with make_client() as client:
            publisher = RegistryPublisher(client)
            await publisher.push(ProgressTree().add_child("web"), REFERENCE, make_image([b"base", b"v1"]))
            result = await publisher.push(
                ProgressTree().add_child("web"), REFERENCE, make_image([b"base", b"v2"])
            )

        assert not result.skipped
        assert result.uploaded_layers == 1
        assert fake_registry.manifest_puts == 2

    @pytest.mark.asyncio
    async def test_present_layers_not_uploaded(self, fake_registry, make_client, make_image) -> None:
        fake_registry.blobs[("org/web", sha256_digest(b"base"))] = b"base"
        image = make_image([b"base", b"app"])

        async with make_client() as client:
            result = await RegistryPublisher(client).push(ProgressTree().add_child("web"), REFERENCE, image)

        assert result.uploaded_layers == 1
        assert fake_registry.blob_uploads == 2  # app layer + config

    @pytest.mark.asyncio
    async def test_duplicate_layers_uploaded_once(self, fake_registry, make_client, make_image) -> None:
        image = make_image([b"same", b"same", b"other"])

        async with make_client() as client:
            result = await RegistryPublisher(client).push(ProgressTree().add_child("web"), REFERENCE, image)

        assert result.uploaded_layers == 2
        probes = [r for r in fake_registry.requests if r.method == "GET" and "/blobs/sha256:" in str(r.url)]
        assert len(probes) == 2


class TestConcurrency:
    """Tests for bounded, fail-fast blob operations."""

    @pytest.mark.asyncio
    async def test_in_flight_blob_operations_bounded(self, fake_registry, make_client, make_image) -> None:
        fake_registry.latency = 0.005
        image = make_image([f"layer-{i}".encode() for i in range(40)])

        async with make_client() as client:
            result = await RegistryPublisher(client).push(ProgressTree().add_child("web"), REFERENCE, image)

        assert result.uploaded_layers == 40
        assert 1 < fake_registry.max_in_flight <= MAX_CONCURRENT_BLOB_OPERATIONS

    @pytest.mark.asyncio
    async def test_custom_limit(self, fake_registry, make_client, make_image) -> None:
        fake_registry.latency = 0.005
        image = make_image([f"layer-{i}".encode() for i in range(10)])

        async with make_client() as client:
            await RegistryPublisher(client, max_concurrent_blobs=2).push(
                ProgressTree().add_child("web"), REFERENCE, image
            )

        assert fake_registry.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_blob_failure_aborts_before_manifest(self, fake_registry, make_client, make_image) -> None:
        image = make_image([b"good-1", b"bad", b"good-2"])
        fake_registry.fail_digests = {sha256_digest(b"bad")}

        async with make_client() as client:
            with pytest.raises(RegistryResponseError):
                await RegistryPublisher(client).push(ProgressTree().add_child("web"), REFERENCE, image)

        assert fake_registry.manifest_puts == 0
        assert ("org/web", "v1") not in fake_registry.manifests


class TestCredentialsAndMetrics:
    @pytest.mark.asyncio
    async def test_credentials_used_for_token(self, fake_registry, make_client, make_image) -> None:
        fake_registry.require_token = True

        async with make_client() as client:
            publisher = RegistryPublisher(client, BasicAuthProvider("ci", "s3cret"))
            await publisher.push(ProgressTree().add_child("web"), REFERENCE, make_image([b"layer"]))

        assert fake_registry.manifest_puts == 1
        assert all(r.headers["Authorization"].startswith("Basic ") for r in fake_registry.token_requests)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, make_client, make_image) -> None:
        metrics = MagicMock(spec=PublishMetrics)
        image = make_image([b"layer"])

        async with make_client() as client:
            publisher = RegistryPublisher(client, metrics=metrics)
            await publisher.push(ProgressTree().add_child("web"), REFERENCE, image)
            await publisher.push(ProgressTree().add_child("web"), REFERENCE, image)

        metrics.record_push.assert_any_call("registry.example", "pushed", duration_seconds=ANY)
        metrics.record_push.assert_any_call("registry.example", "skipped", duration_seconds=ANY)
        metrics.record_blob.assert_any_call("registry.example", "probe", "missing")

    @pytest.mark.asyncio
    async def test_failed_push_recorded(self, fake_registry, make_client, make_image) -> None:
        metrics = MagicMock(spec=PublishMetrics)
        fake_registry.status_override = 500

        async with make_client() as client:
            with pytest.raises(RegistryUnavailableError):
                await RegistryPublisher(client, metrics=metrics).push(
                    ProgressTree().add_child("web"), Reference.parse(REFERENCE), make_image([b"x"])
                )

        metrics.record_push.assert_called_once_with("registry.example", "failed", duration_seconds=ANY)
