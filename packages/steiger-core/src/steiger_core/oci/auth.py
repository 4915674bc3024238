"""Credential resolution for registry operations.

Credentials are resolved per registry host right before a push, through one
of these providers:

- AnonymousAuthProvider: No credentials (public or local registries)
- BasicAuthProvider: Explicit username/password (CI secrets)
- DockerConfigAuthProvider: Docker CLI configuration, the same lookup
  ``docker push`` performs

Docker config lookup order (for ``$DOCKER_CONFIG/config.json`` or
``~/.docker/config.json``):
    1. ``credHelpers.<host>``: run ``docker-credential-<helper> get``
    2. ``credsStore``: run ``docker-credential-<store> get``
    3. ``auths.<host>``: inline base64 ``auth`` or ``username``/``password``

Anonymous access is a valid outcome, not an error: a missing config file,
a host without an entry or a failing credential helper all resolve to no
credentials. Identity tokens (OAuth2 refresh tokens) are not supported and
raise AuthenticationError.

Example:
    >>> provider = create_auth_provider()
    >>> credentials = provider.get_credentials("registry.example")
    >>> credentials is None  # anonymous
    True
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from steiger_core.oci.errors import AuthenticationError

logger = structlog.get_logger(__name__)

USERNAME_ENV = "STEIGER_REGISTRY_USERNAME"
PASSWORD_ENV = "STEIGER_REGISTRY_PASSWORD"
DOCKER_CONFIG_ENV = "DOCKER_CONFIG"

# Username returned by credential helpers when the secret is an identity token.
_IDENTITY_TOKEN_USERNAME = "<token>"

_DOCKER_HUB_HOSTS = ("docker.io", "index.docker.io", "registry-1.docker.io")
_DOCKER_HUB_CONFIG_KEY = "https://index.docker.io/v1/"

CREDENTIAL_HELPER_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class Credentials:
    """Username/password pair for Basic authentication.

    Attributes:
        username: Registry username.
        password: Password or access token.
    """

    username: str
    password: str = field(repr=False)


class AuthProvider(ABC):
    """Abstract base class for registry credential providers.

    Example:
        >>> class StaticAuthProvider(AuthProvider):
        ...     def get_credentials(self, registry: str) -> Credentials | None:
        ...         return Credentials("ci", "secret")
    """

    @abstractmethod
    def get_credentials(self, registry: str) -> Credentials | None:
        """Resolve credentials for a registry host.

        Args:
            registry: Registry host (e.g. "registry.example", "localhost:5000").

        Returns:
            Credentials, or None for anonymous access.

        Raises:
            AuthenticationError: If configured credentials cannot be used.
        """
        ...


class AnonymousAuthProvider(AuthProvider):
    """Provider that never sends credentials."""

    def get_credentials(self, registry: str) -> Credentials | None:  # noqa: ARG002
        return None


class BasicAuthProvider(AuthProvider):
    """Provider returning the same username/password for every registry.

    Example:
        >>> provider = BasicAuthProvider("ci-bot", "s3cret")
        >>> provider.get_credentials("registry.example").username
        'ci-bot'
    """

    def __init__(self, username: str, password: str) -> None:
        if not username:
            raise AuthenticationError("<any>", "empty username")
        self._credentials = Credentials(username=username, password=password)

    def get_credentials(self, registry: str) -> Credentials | None:  # noqa: ARG002
        return self._credentials


class DockerConfigAuthProvider(AuthProvider):
    """Provider reading the Docker CLI configuration.

    Args:
        config_path: Path to config.json. Defaults to ``$DOCKER_CONFIG/config.json``
            or ``~/.docker/config.json``.
    """

    def __init__(self, config_path: Path | None = None) -> None:
        self._config_path = config_path or default_docker_config_path()

    @property
    def config_path(self) -> Path:
        return self._config_path

    def _load_config(self) -> dict[str, Any]:
        try:
            data = json.loads(self._config_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.debug("docker_config_missing", path=str(self._config_path))
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("docker_config_unreadable", path=str(self._config_path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def get_credentials(self, registry: str) -> Credentials | None:
        config = self._load_config()
        keys = _config_keys(registry)
        log = logger.bind(registry=registry)

        helpers = config.get("credHelpers") or {}
        for key in keys:
            if key in helpers:
                return _run_credential_helper(helpers[key], key, registry)

        store = config.get("credsStore")
        if store:
            credentials = _run_credential_helper(store, keys[0], registry)
            if credentials is not None:
                return credentials

        auths = config.get("auths") or {}
        entry = _find_entry(auths, keys)
        if entry is not None:
            return _parse_auth_entry(entry, registry)

        log.debug("registry_credentials_not_configured")
        return None


def default_docker_config_path() -> Path:
    """Return the Docker CLI config.json location."""
    directory = os.environ.get(DOCKER_CONFIG_ENV)
    if directory:
        return Path(directory) / "config.json"
    return Path.home() / ".docker" / "config.json"


def create_auth_provider(environ: Mapping[str, str] | None = None) -> AuthProvider:
    """Create the credential provider for this environment.

    Explicit credentials from ``STEIGER_REGISTRY_USERNAME`` and
    ``STEIGER_REGISTRY_PASSWORD`` take precedence over the Docker config.
    """
    env = os.environ if environ is None else environ
    username = env.get(USERNAME_ENV)
    password = env.get(PASSWORD_ENV)
    if username and password is not None:
        logger.debug("auth_provider_selected", provider="basic")
        return BasicAuthProvider(username, password)
    logger.debug("auth_provider_selected", provider="docker_config")
    return DockerConfigAuthProvider()


# =============================================================================
# Docker config helpers
# =============================================================================


def _config_keys(registry: str) -> list[str]:
    """Return the config.json keys a registry host may be stored under."""
    if registry in _DOCKER_HUB_HOSTS:
        return [_DOCKER_HUB_CONFIG_KEY, *_DOCKER_HUB_HOSTS]
    return [registry, f"https://{registry}", f"http://{registry}"]


def _normalize_key(key: str) -> str:
    host = key.split("://", 1)[-1]
    return host.split("/", 1)[0]


def _find_entry(auths: Mapping[str, Any], keys: list[str]) -> Mapping[str, Any] | None:
    for key in keys:
        entry = auths.get(key)
        if isinstance(entry, Mapping):
            return entry
    # Fall back to matching on the bare host (e.g. "https://host/v2/").
    hosts = {_normalize_key(key) for key in keys}
    for key, entry in auths.items():
        if _normalize_key(key) in hosts and isinstance(entry, Mapping):
            return entry
    return None


def _parse_auth_entry(entry: Mapping[str, Any], registry: str) -> Credentials | None:
    if entry.get("identitytoken"):
        raise AuthenticationError(registry, "identity tokens are not supported")

    encoded = entry.get("auth")
    if encoded:
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise AuthenticationError(registry, f"malformed auth entry in docker config: {e}") from e
        username, sep, password = decoded.partition(":")
        if not sep:
            raise AuthenticationError(registry, "malformed auth entry in docker config")
        return Credentials(username=username, password=password)

    username = entry.get("username")
    if username:
        return Credentials(username=username, password=entry.get("password", ""))
    return None


def _run_credential_helper(helper: str, server: str, registry: str) -> Credentials | None:
    """Query ``docker-credential-<helper>``; any failure means anonymous."""
    binary = f"docker-credential-{helper}"
    log = logger.bind(registry=registry, helper=binary)
    try:
        result = subprocess.run(  # noqa: S603
            [binary, "get"],
            input=server,
            capture_output=True,
            text=True,
            timeout=CREDENTIAL_HELPER_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("credential_helper_failed", error=str(e))
        return None

    if result.returncode != 0:
        log.debug("credential_helper_no_credentials", stderr=result.stderr.strip())
        return None

    try:
        payload = json.loads(result.stdout)
        username = payload["Username"]
        secret = payload["Secret"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        log.warning("credential_helper_invalid_output", error=str(e))
        return None

    if username == _IDENTITY_TOKEN_USERNAME:
        raise AuthenticationError(registry, "identity tokens are not supported")
    return Credentials(username=username, password=secret)


__all__ = [
    "PASSWORD_ENV",
    "USERNAME_ENV",
    "AnonymousAuthProvider",
    "AuthProvider",
    "BasicAuthProvider",
    "Credentials",
    "DockerConfigAuthProvider",
    "create_auth_provider",
    "default_docker_config_path",
]
