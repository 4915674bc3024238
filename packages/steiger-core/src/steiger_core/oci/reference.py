"""Image reference parsing.

A reference names a manifest in a registry:

    [registry[:port]/]repository[:tag][@algorithm:hex]

The first path component is treated as a registry host when it contains a
dot or a colon or is ``localhost``; otherwise the reference points at
Docker Hub. Docker Hub is reached through ``registry-1.docker.io`` and
single-component repositories live under ``library/``.

Example:
    >>> ref = Reference.parse("registry.example/org/web:v1")
    >>> ref.registry, ref.repository, ref.tag
    ('registry.example', 'org/web', 'v1')
    >>> str(ref.with_digest("sha256:abc"))
    'registry.example/org/web:v1@sha256:abc'
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

from steiger_core.oci.errors import InvalidReferenceError

DOCKER_HUB_REGISTRY = "docker.io"
DOCKER_HUB_API_REGISTRY = "registry-1.docker.io"
DEFAULT_TAG = "latest"

_DOCKER_HUB_ALIASES = frozenset({DOCKER_HUB_REGISTRY, "index.docker.io", DOCKER_HUB_API_REGISTRY})

_REPOSITORY_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")


def _is_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class Reference:
    """Parsed image reference.

    Attributes:
        registry: Registry host as written (e.g. "docker.io", "localhost:5000").
        repository: Repository path (e.g. "org/web").
        tag: Tag, if any.
        digest: Manifest digest, if any.
    """

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, value: str) -> Reference:
        """Parse a reference string.

        A reference without tag or digest gets the ``latest`` tag.

        Raises:
            InvalidReferenceError: If the string is not a valid reference.
        """
        if not value or value != value.strip():
            raise InvalidReferenceError(value, "empty or surrounded by whitespace")

        remainder, _, digest = value.partition("@")
        if digest and not _DIGEST_PATTERN.match(digest):
            raise InvalidReferenceError(value, f"invalid digest '{digest}'")

        tag: str | None = None
        last_slash = remainder.rfind("/")
        colon = remainder.rfind(":")
        if colon > last_slash:
            remainder, tag = remainder[:colon], remainder[colon + 1 :]
            if not _TAG_PATTERN.match(tag):
                raise InvalidReferenceError(value, f"invalid tag '{tag}'")

        components = remainder.split("/")
        if len(components) > 1 and _is_registry(components[0]):
            registry, path = components[0], components[1:]
        else:
            registry, path = DOCKER_HUB_REGISTRY, components

        for component in path:
            if not _REPOSITORY_COMPONENT.match(component):
                raise InvalidReferenceError(value, f"invalid repository component '{component}'")

        if tag is None and not digest:
            tag = DEFAULT_TAG

        return cls(registry=registry, repository="/".join(path), tag=tag, digest=digest or None)

    @property
    def is_docker_hub(self) -> bool:
        return self.registry in _DOCKER_HUB_ALIASES

    @property
    def api_registry(self) -> str:
        """Return the host the distribution API is served from."""
        return DOCKER_HUB_API_REGISTRY if self.is_docker_hub else self.registry

    @property
    def api_repository(self) -> str:
        """Return the repository path used in API URLs."""
        if self.is_docker_hub and "/" not in self.repository:
            return f"library/{self.repository}"
        return self.repository

    @property
    def manifest_reference(self) -> str:
        """Return the digest if pinned, otherwise the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    def with_digest(self, digest: str) -> Reference:
        """Return a copy pinned to ``digest``, keeping the tag."""
        return replace(self, digest=digest)

    def __str__(self) -> str:
        value = f"{self.registry}/{self.repository}"
        if self.tag:
            value += f":{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value


__all__ = ["DEFAULT_TAG", "DOCKER_HUB_API_REGISTRY", "DOCKER_HUB_REGISTRY", "Reference"]
