"""OCI registry publishing for steiger.

This package pushes loaded images to OCI-compliant registries:

- RegistryPublisher: Idempotent push with blob deduplication
- RegistryClient: Async OCI distribution API client (httpx)
- Reference: Image reference parsing
- AuthProvider: Credential resolution (anonymous, basic, Docker config)

Example:
    >>> from steiger_core.oci import RegistryClient, RegistryPublisher, create_auth_provider
    >>> async with RegistryClient() as client:
    ...     publisher = RegistryPublisher(client, create_auth_provider())
    ...     result = await publisher.push(progress, "registry.example/org/web:v1", image)
"""

from __future__ import annotations

from steiger_core.oci.auth import (
    AnonymousAuthProvider,
    AuthProvider,
    BasicAuthProvider,
    Credentials,
    DockerConfigAuthProvider,
    create_auth_provider,
)
from steiger_core.oci.client import RegistryClient
from steiger_core.oci.errors import (
    AuthenticationError,
    BlobNotFoundError,
    InvalidReferenceError,
    ManifestNotFoundError,
    OCIError,
    RegistryResponseError,
    RegistryUnavailableError,
)
from steiger_core.oci.metrics import PublishMetrics
from steiger_core.oci.publisher import MAX_CONCURRENT_BLOB_OPERATIONS, PushResult, RegistryPublisher
from steiger_core.oci.reference import Reference
from steiger_core.oci.resilience import RetryPolicy

__all__ = [
    "MAX_CONCURRENT_BLOB_OPERATIONS",
    "AnonymousAuthProvider",
    "AuthProvider",
    "AuthenticationError",
    "BasicAuthProvider",
    "BlobNotFoundError",
    "Credentials",
    "DockerConfigAuthProvider",
    "InvalidReferenceError",
    "ManifestNotFoundError",
    "OCIError",
    "PublishMetrics",
    "PushResult",
    "Reference",
    "RegistryClient",
    "RegistryPublisher",
    "RegistryResponseError",
    "RegistryUnavailableError",
    "RetryPolicy",
    "create_auth_provider",
]
