"""Unit test fixtures for steiger-core.

This module provides fixtures shared by all unit tests, which:
- Run without external services (no docker, no registry, no nix)
- Write OCI image layouts into tmp_path
- Talk to an in-memory registry through httpx.MockTransport

Fixtures:
    layout: Factory writing OCI image layouts (index.json + blobs/)
    make_image: Factory building in-memory Image values
    fake_registry: In-memory OCI distribution registry
    make_client: Factory for RegistryClient instances bound to fake_registry
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
import structlog

from steiger_core.image import Blob, Image
from steiger_core.oci import RegistryClient, RetryPolicy
from steiger_core.schemas.oci import (
    OCI_IMAGE_CONFIG_TYPE,
    OCI_IMAGE_INDEX_TYPE,
    OCI_IMAGE_MANIFEST_TYPE,
    Descriptor,
    ImageManifest,
    Platform,
    RetryConfig,
    sha256_digest,
)

LAYER_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar"
DEFAULT_CONFIG = b'{"architecture":"amd64","os":"linux","rootfs":{"type":"layers","diff_ids":[]}}'


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo logging configuration made by CLI invocations."""
    yield
    structlog.reset_defaults()


# =============================================================================
# OCI image layouts
# =============================================================================


def _platform_dict(platform: str) -> dict[str, str]:
    parsed = Platform.parse(platform)
    return parsed.to_wire()


class LayoutBuilder:
    """Writes an OCI image layout directory blob by blob."""

    def __init__(self, root: Path) -> None:
        self.root = root
        (root / "blobs" / "sha256").mkdir(parents=True, exist_ok=True)

    def blob(self, data: bytes, media_type: str) -> dict[str, Any]:
        digest = sha256_digest(data)
        (self.root / "blobs" / "sha256" / digest.split(":", 1)[1]).write_bytes(data)
        return {"mediaType": media_type, "digest": digest, "size": len(data)}

    def image(
        self,
        layers: list[bytes],
        *,
        config: bytes = DEFAULT_CONFIG,
        platform: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Write config, layers and manifest; return the manifest descriptor."""
        layer_descriptors = []
        for data in layers:
            descriptor = self.blob(data, LAYER_MEDIA_TYPE)
            if annotations:
                descriptor["annotations"] = annotations
            layer_descriptors.append(descriptor)

        manifest = {
            "schemaVersion": 2,
            "mediaType": OCI_IMAGE_MANIFEST_TYPE,
            "config": self.blob(config, OCI_IMAGE_CONFIG_TYPE),
            "layers": layer_descriptors,
        }
        # Non-canonical on purpose: the loader re-encodes manifests.
        descriptor = self.blob(json.dumps(manifest, indent=2).encode(), OCI_IMAGE_MANIFEST_TYPE)
        if platform is not None:
            descriptor["platform"] = _platform_dict(platform)
        return descriptor

    def index(self, manifests: list[dict[str, Any]], *, platform: str | None = None) -> dict[str, Any]:
        """Write a nested image index blob; return its descriptor."""
        raw = json.dumps(
            {"schemaVersion": 2, "mediaType": OCI_IMAGE_INDEX_TYPE, "manifests": manifests}
        ).encode()
        descriptor = self.blob(raw, OCI_IMAGE_INDEX_TYPE)
        if platform is not None:
            descriptor["platform"] = _platform_dict(platform)
        return descriptor

    def write(self, *manifests: dict[str, Any]) -> Path:
        """Write index.json listing ``manifests`` and return the layout root."""
        index = {"schemaVersion": 2, "mediaType": OCI_IMAGE_INDEX_TYPE, "manifests": list(manifests)}
        (self.root / "index.json").write_text(json.dumps(index))
        (self.root / "oci-layout").write_text('{"imageLayoutVersion": "1.0.0"}')
        return self.root


@pytest.fixture
def layout(tmp_path: Path) -> Callable[..., LayoutBuilder]:
    """Factory fixture for OCI image layouts.

    Usage:
        def test_load(layout) -> None:
            builder = layout()
            root = builder.write(builder.image([b"layer"], platform="linux/amd64"))
    """

    def _create(name: str = "layout") -> LayoutBuilder:
        return LayoutBuilder(tmp_path / name)

    return _create


@pytest.fixture
def make_image() -> Callable[..., Image]:
    """Factory fixture for in-memory images.

    Usage:
        image = make_image([b"layer-1", b"layer-2"], platform="linux/amd64")
    """

    def _create(
        layers: list[bytes],
        *,
        config: bytes = DEFAULT_CONFIG,
        platform: str | None = None,
    ) -> Image:
        config_blob = Blob(
            descriptor=Descriptor(
                media_type=OCI_IMAGE_CONFIG_TYPE, digest=sha256_digest(config), size=len(config)
            ),
            data=config,
        )
        layer_blobs = tuple(
            Blob(
                descriptor=Descriptor(
                    media_type=LAYER_MEDIA_TYPE, digest=sha256_digest(data), size=len(data)
                ),
                data=data,
            )
            for data in layers
        )
        manifest = ImageManifest(
            media_type=OCI_IMAGE_MANIFEST_TYPE,
            config=config_blob.descriptor,
            layers=[blob.descriptor for blob in layer_blobs],
        )
        manifest_bytes = manifest.canonical_json()
        return Image(
            digest=sha256_digest(manifest_bytes),
            manifest=manifest,
            manifest_bytes=manifest_bytes,
            config=config_blob,
            layers=layer_blobs,
            platform=Platform.parse(platform) if platform else None,
        )

    return _create


# =============================================================================
# Fake registry
# =============================================================================

_MANIFEST_PATH = re.compile(r"^/v2/(?P<name>.+)/manifests/(?P<ref>[^/]+)$")
_UPLOAD_START_PATH = re.compile(r"^/v2/(?P<name>.+)/blobs/uploads/$")
_UPLOAD_PATH = re.compile(r"^/v2/(?P<name>.+)/blobs/uploads/(?P<session>[^/]+)$")
_BLOB_PATH = re.compile(r"^/v2/(?P<name>.+)/blobs/(?P<digest>[^/]+)$")

TOKEN_REALM = "https://auth.example/token"


def _error(status: int, code: str, message: str = "") -> httpx.Response:
    return httpx.Response(status, json={"errors": [{"code": code, "message": message or code.lower()}]})


class FakeRegistry:
    """In-memory OCI distribution registry served through httpx.MockTransport.

    Attributes:
        manifests: (repository, tag or digest) to (bytes, media type).
        blobs: (repository, digest) to bytes.
        blob_uploads: Number of completed blob uploads.
        manifest_puts: Number of manifest uploads.
        requests: Every request received, in order.
        require_token: Answer unauthenticated requests with a Bearer challenge.
        fail_digests: Blob digests whose upload is rejected with 400.
        status_override: When set, every registry request gets this status.
    """

    def __init__(self) -> None:
        self.manifests: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.sessions: dict[str, bytearray] = {}
        self.blob_uploads = 0
        self.manifest_puts = 0
        self.patch_requests = 0
        self.requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []
        self.require_token = False
        self.fail_digests: set[str] = set()
        self.status_override: int | None = None
        self.latency = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def seed_manifest(self, repository: str, tag: str, manifest: bytes, media_type: str) -> None:
        self.manifests[(repository, tag)] = (manifest, media_type)
        self.manifests[(repository, sha256_digest(manifest))] = (manifest, media_type)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.example":
            self.token_requests.append(request)
            return httpx.Response(200, json={"token": "test-token"})

        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override)
        if self.require_token and request.headers.get("Authorization") != "Bearer test-token":
            return httpx.Response(
                401,
                headers={
                    "WWW-Authenticate": f'Bearer realm="{TOKEN_REALM}",service="{request.url.host}"'
                },
            )

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            return self._route(request)
        finally:
            self.in_flight -= 1

    def _route(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method

        if match := _MANIFEST_PATH.match(path):
            return self._manifest(method, match["name"], match["ref"], request)
        if method == "POST" and (match := _UPLOAD_START_PATH.match(path)):
            session = uuid.uuid4().hex
            self.sessions[session] = bytearray()
            return httpx.Response(
                202, headers={"Location": f"/v2/{match['name']}/blobs/uploads/{session}"}
            )
        if match := _UPLOAD_PATH.match(path):
            return self._upload(method, match["name"], match["session"], request)
        if match := _BLOB_PATH.match(path):
            data = self.blobs.get((match["name"], match["digest"]))
            if data is None:
                return _error(404, "BLOB_UNKNOWN")
            if not data:
                return httpx.Response(416)
            return httpx.Response(206, content=data[:1])
        return _error(404, "NAME_UNKNOWN")

    def _manifest(self, method: str, name: str, ref: str, request: httpx.Request) -> httpx.Response:
        if method == "PUT":
            self.manifest_puts += 1
            self.seed_manifest(name, ref, request.content, request.headers["Content-Type"])
            digest = sha256_digest(request.content)
            return httpx.Response(
                201,
                headers={"Location": f"/v2/{name}/manifests/{digest}", "Docker-Content-Digest": digest},
            )

        stored = self.manifests.get((name, ref))
        if stored is None:
            if method == "HEAD":
                return httpx.Response(404)
            return _error(404, "MANIFEST_UNKNOWN")
        content, media_type = stored
        headers = {"Docker-Content-Digest": sha256_digest(content), "Content-Type": media_type}
        if method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=content)

    def _upload(self, method: str, name: str, session: str, request: httpx.Request) -> httpx.Response:
        buffer = self.sessions.get(session)
        if buffer is None:
            return _error(404, "BLOB_UPLOAD_UNKNOWN")

        if method == "PATCH":
            self.patch_requests += 1
            start = int(request.headers["Content-Range"].split("-", 1)[0])
            if start != len(buffer):
                return httpx.Response(416)
            buffer.extend(request.content)
            return httpx.Response(202, headers={"Location": f"/v2/{name}/blobs/uploads/{session}"})

        digest = request.url.params["digest"]
        buffer.extend(request.content)
        if digest in self.fail_digests or sha256_digest(bytes(buffer)) != digest:
            return _error(400, "DIGEST_INVALID")
        del self.sessions[session]
        self.blobs[(name, digest)] = bytes(buffer)
        self.blob_uploads += 1
        return httpx.Response(
            201, headers={"Location": f"/v2/{name}/blobs/{digest}", "Docker-Content-Digest": digest}
        )


@pytest.fixture
def fake_registry() -> FakeRegistry:
    """Provide an empty in-memory registry."""
    return FakeRegistry()


@pytest.fixture
def make_client(fake_registry: FakeRegistry) -> Callable[..., RegistryClient]:
    """Factory fixture for clients bound to ``fake_registry``.

    Retries are immediate so failure tests stay fast.
    """

    def _create(**kwargs: Any) -> RegistryClient:
        kwargs.setdefault(
            "retry_policy",
            RetryPolicy(RetryConfig(max_attempts=2, initial_delay_ms=0, jitter=False)),
        )
        return RegistryClient(transport=fake_registry.transport(), **kwargs)

    return _create
