"""Async OCI distribution API client.

RegistryClient speaks the subset of the OCI distribution HTTP API needed to
publish images, on top of ``httpx.AsyncClient``:

    HEAD/GET /v2/<name>/manifests/<reference>   manifest existence and digest
    GET      /v2/<name>/blobs/<digest>          ranged blob existence probe
    POST     /v2/<name>/blobs/uploads/          start a blob upload session
    PATCH    <location>                         upload a chunk
    PUT      <location>?digest=<digest>         complete a blob upload
    PUT      /v2/<name>/manifests/<reference>   push a manifest

Authentication:
    Credentials are stored per registry host with ``store_auth``. Requests
    are sent with a cached Authorization header for their (registry, scope)
    pair if one exists; a 401 answer triggers the challenge flow:
    ``Bearer`` challenges are exchanged for a token at the advertised realm
    (using Basic credentials when available), ``Basic`` challenges are
    answered with the stored credentials. The resulting header is cached.

Transport:
    Registries on the insecure allow-list, and ``localhost``/``127.0.0.1``,
    are reached over plain HTTP. Connection errors, timeouts, 5xx and 429
    answers are retried through RetryPolicy and surface as
    RegistryUnavailableError when retries are exhausted.

Example:
    >>> async with RegistryClient(insecure_registries=["registry.internal:5000"]) as client:
    ...     client.store_auth("registry.example", credentials)
    ...     digest = await client.fetch_manifest_digest(reference)
"""

from __future__ import annotations

import base64
import re
from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from steiger_core.oci.auth import Credentials
from steiger_core.oci.errors import (
    AuthenticationError,
    BlobNotFoundError,
    ManifestNotFoundError,
    RegistryResponseError,
    RegistryUnavailableError,
)
from steiger_core.oci.reference import Reference
from steiger_core.oci.resilience import RetryPolicy
from steiger_core.schemas.oci import MANIFEST_ACCEPT_TYPES, sha256_digest

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 16 * 1024 * 1024
"""Blobs larger than this are uploaded in PATCH chunks of this size."""

DEFAULT_TIMEOUT_SECONDS = 300.0

ALWAYS_INSECURE_HOSTS = frozenset({"localhost", "127.0.0.1"})

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

_PULL = "pull"
_PUSH = "pull,push"


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header into (scheme, params).

    Example:
        >>> parse_challenge('Bearer realm="https://auth.example/token",service="registry"')
        ('bearer', {'realm': 'https://auth.example/token', 'service': 'registry'})
    """
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


def error_codes(response: httpx.Response) -> tuple[list[str], str | None]:
    """Extract distribution error codes and the first message from a response body."""
    try:
        body = response.json()
    except ValueError:
        return [], None
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return [], None
    codes = [str(e.get("code")) for e in errors if isinstance(e, dict) and e.get("code")]
    messages = [str(e.get("message")) for e in errors if isinstance(e, dict) and e.get("message")]
    return codes, messages[0] if messages else None


def _basic_header(credentials: Credentials) -> str:
    token = base64.b64encode(f"{credentials.username}:{credentials.password}".encode()).decode("ascii")
    return f"Basic {token}"


class RegistryClient:
    """Async client for one or more OCI registries.

    Args:
        insecure_registries: Registry hosts reached over plain HTTP.
        retry_policy: Retry policy for transient failures.
        chunk_size: Upload chunk size in bytes.
        transport: httpx transport (tests pass ``httpx.MockTransport``).
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        *,
        insecure_registries: Iterable[str] = (),
        retry_policy: RetryPolicy | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._insecure = set(insecure_registries)
        self._retry = retry_policy or RetryPolicy()
        self._chunk_size = chunk_size
        self._http = httpx.AsyncClient(transport=transport, timeout=timeout, follow_redirects=True)
        self._credentials: dict[str, Credentials | None] = {}
        self._auth_headers: dict[tuple[str, str], str] = {}

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # Configuration
    # =========================================================================

    def store_auth(self, registry: str, credentials: Credentials | None) -> None:
        """Associate credentials (None for anonymous) with a registry host."""
        self._credentials[registry] = credentials
        logger.debug("registry_auth_stored", registry=registry, anonymous=credentials is None)

    def is_insecure(self, registry: str) -> bool:
        """Check whether a registry is reached over plain HTTP."""
        host = registry.rsplit(":", 1)[0] if registry.count(":") == 1 else registry
        return registry in self._insecure or host in self._insecure or host in ALWAYS_INSECURE_HOSTS

    def base_url(self, reference: Reference) -> str:
        """Return ``<scheme>://<registry>/v2/<repository>``."""
        scheme = "http" if self.is_insecure(reference.api_registry) else "https"
        return f"{scheme}://{reference.api_registry}/v2/{reference.api_repository}"

    # =========================================================================
    # Manifests
    # =========================================================================

    async def fetch_manifest_digest(self, reference: Reference) -> str:
        """Return the digest of the manifest a tag or digest points to.

        Raises:
            ManifestNotFoundError: If the registry has no such manifest.
            RegistryResponseError: On any other unexpected answer.
        """
        url = f"{self.base_url(reference)}/manifests/{reference.manifest_reference}"
        headers = {"Accept": ", ".join(MANIFEST_ACCEPT_TYPES)}

        response = await self._request("HEAD", url, reference, _PULL, headers=headers)
        if response.status_code == 200:
            digest = response.headers.get("Docker-Content-Digest")
            if digest:
                return digest
        elif response.status_code == 404:
            raise ManifestNotFoundError(str(reference))

        # No digest header, or an answer HEAD cannot explain: ask with GET.
        response = await self._request("GET", url, reference, _PULL, headers=headers)
        if response.status_code == 200:
            return response.headers.get("Docker-Content-Digest") or sha256_digest(response.content)

        codes, detail = error_codes(response)
        if response.status_code == 404 or "MANIFEST_UNKNOWN" in codes:
            raise ManifestNotFoundError(str(reference))
        raise RegistryResponseError(
            reference.registry, "GET manifest", response.status_code, codes, detail
        )

    async def push_manifest(self, reference: Reference, manifest: bytes, media_type: str) -> str:
        """Upload a manifest under the reference's tag (or digest).

        Returns:
            The manifest location reported by the registry.
        """
        url = f"{self.base_url(reference)}/manifests/{reference.manifest_reference}"
        response = await self._request(
            "PUT",
            url,
            reference,
            _PUSH,
            headers={"Content-Type": media_type},
            content=manifest,
        )
        if response.status_code not in (200, 201, 202):
            codes, detail = error_codes(response)
            raise RegistryResponseError(
                reference.registry, "PUT manifest", response.status_code, codes, detail
            )
        return self._location(response, url)

    # =========================================================================
    # Blobs
    # =========================================================================

    async def probe_blob(self, reference: Reference, digest: str) -> None:
        """Check that a blob exists by fetching its first byte.

        Raises:
            BlobNotFoundError: If the blob is absent.
            RegistryResponseError: On any other unexpected answer.
        """
        url = f"{self.base_url(reference)}/blobs/{digest}"
        response = await self._request("GET", url, reference, _PULL, headers={"Range": "bytes=0-0"})
        # 416: the blob exists but is empty.
        if response.status_code in (200, 206, 416):
            return
        if response.status_code == 404:
            raise BlobNotFoundError(reference.api_repository, digest)
        codes, detail = error_codes(response)
        if "BLOB_UNKNOWN" in codes:
            raise BlobNotFoundError(reference.api_repository, digest)
        raise RegistryResponseError(reference.registry, "GET blob", response.status_code, codes, detail)

    async def push_blob(self, reference: Reference, data: bytes, digest: str) -> str:
        """Upload a blob.

        Small blobs are sent in a single PUT; blobs above the chunk size are
        streamed with PATCH requests before the closing PUT.

        Returns:
            The blob location reported by the registry.
        """
        start_url = f"{self.base_url(reference)}/blobs/uploads/"
        response = await self._request("POST", start_url, reference, _PUSH)
        if response.status_code != 202:
            codes, detail = error_codes(response)
            raise RegistryResponseError(
                reference.registry, "POST blob upload", response.status_code, codes, detail
            )
        location = self._location(response, start_url)

        if len(data) > self._chunk_size:
            for offset in range(0, len(data), self._chunk_size):
                chunk = data[offset : offset + self._chunk_size]
                response = await self._request(
                    "PATCH",
                    location,
                    reference,
                    _PUSH,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Range": f"{offset}-{offset + len(chunk) - 1}",
                    },
                    content=chunk,
                )
                if response.status_code != 202:
                    codes, detail = error_codes(response)
                    raise RegistryResponseError(
                        reference.registry, "PATCH blob upload", response.status_code, codes, detail
                    )
                location = self._location(response, location)
            body = b""
        else:
            body = data

        put_url = str(httpx.URL(location).copy_merge_params({"digest": digest}))
        response = await self._request(
            "PUT",
            put_url,
            reference,
            _PUSH,
            headers={"Content-Type": "application/octet-stream"},
            content=body,
        )
        if response.status_code not in (201, 204):
            codes, detail = error_codes(response)
            raise RegistryResponseError(
                reference.registry, "PUT blob upload", response.status_code, codes, detail
            )
        logger.debug("blob_uploaded", registry=reference.registry, digest=digest, size=len(data))
        return self._location(response, put_url)

    # =========================================================================
    # Transport
    # =========================================================================

    @staticmethod
    def _location(response: httpx.Response, default: str) -> str:
        location = response.headers.get("Location")
        if not location:
            return default
        return str(response.url.join(location))

    async def _send(
        self,
        method: str,
        url: str,
        registry: str,
        headers: dict[str, str],
        content: bytes | None,
    ) -> httpx.Response:
        async def attempt() -> httpx.Response:
            try:
                response = await self._http.request(method, url, headers=headers, content=content)
            except httpx.TransportError as e:
                raise RegistryUnavailableError(registry, f"{method} {url}: {e}") from e
            if response.status_code >= 500 or response.status_code == 429:
                raise RegistryUnavailableError(
                    registry, f"{method} {httpx.URL(url).path}: HTTP {response.status_code}"
                )
            return response

        return await self._retry.call(attempt)

    async def _request(
        self,
        method: str,
        url: str,
        reference: Reference,
        actions: str,
        *,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        registry = reference.api_registry
        scope = f"repository:{reference.api_repository}:{actions}"
        request_headers = dict(headers or {})

        cached = self._auth_headers.get((registry, scope))
        if cached is not None:
            request_headers["Authorization"] = cached

        response = await self._send(method, url, registry, request_headers, content)
        if response.status_code != 401:
            return response

        authorization = await self._authorize(
            registry, scope, response.headers.get("WWW-Authenticate", "")
        )
        self._auth_headers[(registry, scope)] = authorization
        request_headers["Authorization"] = authorization

        response = await self._send(method, url, registry, request_headers, content)
        if response.status_code == 401:
            raise AuthenticationError(reference.registry, f"{method} {httpx.URL(url).path} was rejected")
        return response

    async def _authorize(self, registry: str, scope: str, challenge: str) -> str:
        """Answer an authentication challenge and return the Authorization header."""
        scheme, params = parse_challenge(challenge)
        credentials = self._credentials.get(registry)

        if scheme == "basic":
            if credentials is None:
                raise AuthenticationError(registry, "registry requires credentials")
            return _basic_header(credentials)

        if scheme != "bearer" or "realm" not in params:
            raise AuthenticationError(registry, f"unsupported authentication challenge: {challenge!r}")

        query = {"scope": params.get("scope", scope)}
        if "service" in params:
            query["service"] = params["service"]
        headers = {}
        if credentials is not None:
            headers["Authorization"] = _basic_header(credentials)

        response = await self._send("GET", str(httpx.URL(params["realm"], params=query)), registry, headers, None)
        if response.status_code in (401, 403):
            raise AuthenticationError(registry, "token request rejected")
        if response.status_code != 200:
            raise RegistryResponseError(registry, "GET token", response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise AuthenticationError(registry, "token response is not JSON") from e
        token = (body.get("token") or body.get("access_token")) if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError(registry, "token response has no token")

        logger.debug("registry_token_acquired", registry=registry, scope=query["scope"])
        return f"Bearer {token}"


__all__ = [
    "ALWAYS_INSECURE_HOSTS",
    "DEFAULT_CHUNK_SIZE",
    "RegistryClient",
    "error_codes",
    "parse_challenge",
]
