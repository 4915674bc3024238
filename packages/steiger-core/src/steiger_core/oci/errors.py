"""Registry client exception hierarchy for steiger-core.

All registry protocol errors inherit from OCIError, which is itself a
PublishError: anything that goes wrong while talking to a registry is a
push-stage failure for the artifact being published.

Exception Hierarchy:
    OCIError (base, PublishError)
    ├── AuthenticationError        # Credentials rejected or unusable
    ├── InvalidReferenceError      # Image reference cannot be parsed
    ├── RegistryResponseError      # Unexpected HTTP status from the registry
    ├── RegistryUnavailableError   # Registry not reachable (after retries)
    ├── ManifestNotFoundError      # Tag/digest absent (consumed internally)
    └── BlobNotFoundError          # Blob absent (consumed internally)

ManifestNotFoundError and BlobNotFoundError are control-flow signals: the
publisher turns them into "push needed" decisions and never lets them
escape.

Exit Codes:
    7 - Publish error (OCIError and subclasses)
    8 - Network/connectivity error (RegistryUnavailableError)

Example:
    >>> from steiger_core.oci.errors import RegistryResponseError
    >>> raise RegistryResponseError("registry.example", "PUT manifest", 400, ["MANIFEST_INVALID"])
    Traceback (most recent call last):
        ...
    RegistryResponseError: PUT manifest failed on registry.example: HTTP 400 (MANIFEST_INVALID)
"""

from __future__ import annotations

from steiger_core.errors import PublishError


class OCIError(PublishError):
    """Base exception for all registry client errors.

    Example:
        >>> try:
        ...     await publisher.push(progress, reference, image)
        ... except OCIError as e:
        ...     print(f"push failed: {e}")
        ...     sys.exit(e.exit_code)
    """


class AuthenticationError(OCIError):
    """Raised when registry authentication fails.

    Attributes:
        registry: Registry host where authentication failed.
        reason: Description of why authentication failed.

    Example:
        >>> raise AuthenticationError("registry.example", "invalid username or password")
        Traceback (most recent call last):
            ...
        AuthenticationError: authentication failed for registry.example: invalid username...
    """

    def __init__(self, registry: str, reason: str) -> None:
        """Initialize AuthenticationError.

        Args:
            registry: Registry host where authentication failed.
            reason: Description of why authentication failed.
        """
        self.registry = registry
        self.reason = reason
        super().__init__(f"authentication failed for {registry}: {reason}")


class InvalidReferenceError(OCIError):
    """Raised when an image reference cannot be parsed.

    Attributes:
        reference: The offending reference string.
        reason: What is wrong with it.
    """

    def __init__(self, reference: str, reason: str) -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"invalid image reference '{reference}': {reason}")


class RegistryResponseError(OCIError):
    """Raised when the registry answers with an unexpected status.

    Attributes:
        registry: Registry host.
        operation: Operation that failed (e.g. "PUT manifest").
        status_code: HTTP status code.
        codes: Error codes from the distribution error envelope, if any.
    """

    def __init__(
        self,
        registry: str,
        operation: str,
        status_code: int,
        codes: list[str] | None = None,
        detail: str | None = None,
    ) -> None:
        """Initialize RegistryResponseError.

        Args:
            registry: Registry host.
            operation: Operation that failed.
            status_code: HTTP status code.
            codes: Error codes from the response body.
            detail: First error message from the response body.
        """
        self.registry = registry
        self.operation = operation
        self.status_code = status_code
        self.codes = codes or []
        self.detail = detail

        msg = f"{operation} failed on {registry}: HTTP {status_code}"
        if self.codes:
            msg += f" ({', '.join(self.codes)})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class RegistryUnavailableError(OCIError):
    """Raised when the registry cannot be reached.

    Raised after retries are exhausted for connection errors, timeouts,
    5xx responses and rate limiting.

    Attributes:
        registry: Registry host.
        reason: Description of the failure.
        exit_code: CLI exit code (8).
    """

    exit_code = 8

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"registry unavailable: {registry}: {reason}")


class ManifestNotFoundError(OCIError):
    """Raised when a manifest does not exist for a tag or digest.

    Attributes:
        reference: The reference that was looked up.
    """

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"manifest unknown: {reference}")


class BlobNotFoundError(OCIError):
    """Raised when a blob does not exist in a repository.

    Attributes:
        repository: Repository that was probed.
        digest: Digest of the missing blob.
    """

    def __init__(self, repository: str, digest: str) -> None:
        self.repository = repository
        self.digest = digest
        super().__init__(f"blob unknown: {repository}@{digest}")


__all__ = [
    "AuthenticationError",
    "BlobNotFoundError",
    "InvalidReferenceError",
    "ManifestNotFoundError",
    "OCIError",
    "RegistryResponseError",
    "RegistryUnavailableError",
]
