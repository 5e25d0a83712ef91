"""Image reference parsing and registry addressing helpers.

Container image strings are free-form: ``nginx``, ``nginx:1.25``,
``myorg/app``, ``gcr.io/project/image:tag``, ``localhost:5000/app:latest``
and ``image@sha256:...`` are all valid. This module turns them into a
normalized ``ImageReference`` and provides the pure helpers the registry
client needs to address a registry's HTTP API.

Nothing here performs I/O and nothing here raises on malformed input:
unparseable strings degrade to a best-effort interpretation.

Example:
    >>> ref = parse_image_reference("localhost:5000/app:latest")
    >>> (ref.registry, ref.repository, ref.tag)
    ('localhost:5000', 'app', 'latest')
    >>> parse_image_reference("nginx").repository
    'library/nginx'
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Constants
# =============================================================================

DEFAULT_REGISTRY = "docker.io"
"""Registry assumed when an image string names none."""

DOCKER_HUB_HOST = "registry-1.docker.io"
"""Canonical API host that all Docker Hub aliases normalize to."""

DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", DOCKER_HUB_HOST})

DEFAULT_NAMESPACE = "library"
"""Namespace Docker Hub uses for single-segment (official) image names."""

DEFAULT_TAG = "latest"

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_BEARER_SCHEME = re.compile(r"^\s*Bearer\s+(.+)$", re.IGNORECASE | re.DOTALL)


# =============================================================================
# Models
# =============================================================================


class ImageReference(BaseModel):
    """A parsed, normalized container image reference.

    Exactly one of ``tag`` or ``digest`` addresses the manifest: the digest
    wins when present and the tag is then empty.

    Examples:
        >>> ref = parse_image_reference("redis@sha256:abc")
        >>> ref.reference
        'sha256:abc'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    registry: str = Field(..., description="Registry host, optionally with port")
    repository: str = Field(..., description="Repository path within the registry")
    tag: str = Field(default="", description="Tag, empty when a digest is present")
    digest: str = Field(default="", description="Content digest, e.g. sha256:...")
    original: str = Field(default="", description="Image string as written")

    @property
    def reference(self) -> str:
        """Return the manifest reference used for addressing (digest or tag)."""
        return self.digest or self.tag or DEFAULT_TAG

    def retarget(self, registry: str) -> ImageReference:
        """Return the same repository and tag/digest under another registry.

        Args:
            registry: Target registry host (scheme and trailing slash allowed).

        Returns:
            A freshly parsed reference rooted at ``registry``.
        """
        host = registry.rstrip("/")
        host = re.sub(r"^https?://", "", host)
        if self.digest:
            return parse_image_reference(f"{host}/{self.repository}@{self.digest}")
        return parse_image_reference(f"{host}/{self.repository}:{self.tag or DEFAULT_TAG}")

    def __str__(self) -> str:
        separator = "@" if self.digest else ":"
        return f"{self.registry}/{self.repository}{separator}{self.reference}"


class BearerChallenge(BaseModel):
    """Parameters of a ``WWW-Authenticate: Bearer`` challenge."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    realm: str
    service: str | None = None
    scope: str | None = None


# =============================================================================
# Parsing
# =============================================================================


def _is_registry_host(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


def normalize_registry_host(registry: str) -> str:
    """Normalize a registry host for credential and cache lookups.

    Strips any scheme and path and folds Docker Hub aliases into
    the canonical API host.

    Args:
        registry: Registry host or URL.

    Returns:
        Normalized host string.

    Examples:
        >>> normalize_registry_host("https://index.docker.io/")
        'registry-1.docker.io'
        >>> normalize_registry_host("ghcr.io")
        'ghcr.io'
    """
    host = re.sub(r"^https?://", "", registry.strip())
    host = host.split("/", 1)[0]
    if host in DOCKER_HUB_ALIASES:
        return DOCKER_HUB_HOST
    return host


def parse_image_reference(image: str) -> ImageReference:
    """Parse a container image string into an ImageReference.

    Args:
        image: Image string as written in a workload spec.

    Returns:
        Normalized ImageReference. Never raises.

    Examples:
        >>> parse_image_reference("nginx:1.25").tag
        '1.25'
        >>> parse_image_reference("gcr.io/proj/app").registry
        'gcr.io'
    """
    registry = DEFAULT_REGISTRY
    repository = image.strip()
    tag = DEFAULT_TAG
    digest = ""

    if "@" in repository:
        repository, digest = repository.split("@", 1)
        tag = ""

    # A colon after the last slash is a tag; one before it is a registry port.
    colon = repository.rfind(":")
    if colon != -1 and "/" not in repository[colon + 1 :]:
        if not digest:
            tag = repository[colon + 1 :] or DEFAULT_TAG
        repository = repository[:colon]

    slash = repository.find("/")
    if slash != -1 and _is_registry_host(repository[:slash]):
        registry = repository[:slash]
        repository = repository[slash + 1 :]

    registry = normalize_registry_host(registry)
    if registry == DOCKER_HUB_HOST and "/" not in repository:
        repository = f"{DEFAULT_NAMESPACE}/{repository}"

    return ImageReference(
        registry=registry,
        repository=repository,
        tag=tag,
        digest=digest,
        original=image,
    )


def registry_api_url(registry: str, insecure_registries: Iterable[str] = ()) -> str:
    """Return the base URL of a registry's HTTP API.

    Args:
        registry: Registry host (or URL with explicit scheme).
        insecure_registries: Hosts to contact over plain HTTP.

    Returns:
        Base URL without trailing slash.

    Examples:
        >>> registry_api_url("docker.io")
        'https://registry-1.docker.io'
        >>> registry_api_url("localhost:5000", ["localhost"])
        'http://localhost:5000'
    """
    if registry in DOCKER_HUB_ALIASES:
        return f"https://{DOCKER_HUB_HOST}"
    if registry == "gcr.io" or registry.endswith(".gcr.io"):
        return f"https://{registry}"
    if registry == "ghcr.io" or registry.endswith(".pkg.github.com"):
        return "https://ghcr.io"
    if registry.startswith(("http://", "https://")):
        return registry.rstrip("/")

    host = registry.lower()
    for insecure in insecure_registries:
        candidate = insecure.strip().lower()
        if candidate and (host == candidate or host.startswith(candidate + ":")):
            return f"http://{registry}"
    return f"https://{registry}"


def parse_www_authenticate(header: str) -> BearerChallenge | None:
    """Parse a Bearer ``WWW-Authenticate`` header.

    Args:
        header: Raw header value, e.g.
            ``Bearer realm="https://auth.docker.io/token",service="registry.docker.io"``.

    Returns:
        BearerChallenge, or None when the scheme is not Bearer or no realm
        is present.
    """
    match = _BEARER_SCHEME.match(header or "")
    if not match:
        return None
    params = dict(_CHALLENGE_PARAM.findall(match.group(1)))
    if not params.get("realm"):
        return None
    return BearerChallenge(
        realm=params["realm"],
        service=params.get("service") or None,
        scope=params.get("scope") or None,
    )


__all__ = [
    "DEFAULT_REGISTRY",
    "DOCKER_HUB_HOST",
    "BearerChallenge",
    "ImageReference",
    "normalize_registry_host",
    "parse_image_reference",
    "parse_www_authenticate",
    "registry_api_url",
]
