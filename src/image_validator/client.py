"""Registry protocol client for image existence checks and manifest cloning.

This module speaks the OCI Distribution / Docker Registry v2 HTTP API:

- ``HEAD /v2/<repository>/manifests/<reference>`` to check existence
- ``GET`` on the same path to fetch a manifest for cloning
- ``PUT`` on the same path to push a manifest to the target registry
- ``GET /v2/`` to probe reachability

Authentication follows the registry token protocol: a ``401`` carrying
``WWW-Authenticate: Bearer realm=...,service=...`` is answered by requesting a
repository-scoped token from the realm (with HTTP Basic credentials when they
are configured, anonymously otherwise) and retrying the original request once.
Tokens are cached per ``(registry, repository)`` in a ``TokenCache`` owned by
the client instance.

Every public coroutine returns a result model; registry and transport
failures are classified (timeout, network, auth, protocol) and reported in
the model instead of being raised.

Example:
    >>> async with RegistryClient(load_credentials()) as client:
    ...     results = await client.check_images(["nginx:1.25", "ghcr.io/org/app:v1"])
    ...     missing = [r.image for r in results if not r.exists]
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Iterable, Sequence
from typing import Any

import httpx
import structlog

from image_validator.credentials import RegistryAuthConfig, get_credentials_for_registry
from image_validator.errors import (
    AuthenticationError,
    CloneError,
    ManifestNotFoundError,
    RegistryError,
    RegistryNetworkError,
    RegistryProtocolError,
    RegistryTimeoutError,
    RegistryUnavailableError,
)
from image_validator.metrics import WebhookMetrics
from image_validator.reference import (
    ImageReference,
    parse_image_reference,
    parse_www_authenticate,
    registry_api_url,
)
from image_validator.schemas import CloneOutcome, ConnectivityResult, ImageValidationResult
from image_validator.tokens import TokenCache

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_V1 = "application/vnd.oci.image.index.v1+json"

MANIFEST_MEDIA_TYPES = (
    DOCKER_MANIFEST_V2,
    DOCKER_MANIFEST_LIST_V2,
    OCI_MANIFEST_V1,
    OCI_INDEX_V1,
)
"""Single-arch and multi-arch manifest types, Docker and OCI forms."""

MANIFEST_ACCEPT = ", ".join(MANIFEST_MEDIA_TYPES)

DEFAULT_TIMEOUT_SECONDS = 240.0
"""Default deadline for manifest requests."""

TOKEN_TIMEOUT_SECONDS = 10.0
"""Upper bound for token requests."""

CONNECTIVITY_TIMEOUT_SECONDS = 10.0
"""Upper bound for connectivity probes."""

PULL_ACTIONS = frozenset({"pull"})
PUSH_ACTIONS = frozenset({"pull", "push"})

USER_AGENT = "image-validator/0.1"


def _display(ref: ImageReference) -> str:
    separator = "@" if ref.digest else ":"
    return f"{ref.repository}{separator}{ref.reference}"


def _is_header_token(value: Any) -> bool:
    return isinstance(value, str) and value.isascii() and value.isprintable() and bool(value)


def index_results(results: Iterable[ImageValidationResult]) -> dict[str, ImageValidationResult]:
    """Map image strings to their results, for resolving duplicate occurrences."""
    return {result.image: result for result in results}


class RegistryClient:
    """Async client for registry manifest operations.

    Attributes:
        target_registry: Registry images are replicated into, if configured.
            When set, existence checks probe the target rather than the
            source, answering "has this image already been replicated?".

    Example:
        >>> client = RegistryClient(auth_config, target_registry="mirror.example.com")
        >>> result = await client.check_image_exists("nginx:1.25")
        >>> if not result.exists:
        ...     outcome = await client.clone_image("nginx:1.25", "mirror.example.com")
        >>> await client.aclose()
    """

    def __init__(
        self,
        auth_config: RegistryAuthConfig | None = None,
        target_registry: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        insecure_registries: Sequence[str] = (),
        *,
        http_client: httpx.AsyncClient | None = None,
        metrics: WebhookMetrics | None = None,
        token_cache: TokenCache | None = None,
    ) -> None:
        """Initialize RegistryClient.

        Args:
            auth_config: Resolved registry credentials (anonymous if None).
            target_registry: Optional replication target registry host.
            timeout: Default deadline for manifest requests, in seconds.
            insecure_registries: Registries to contact over plain HTTP.
            http_client: Optional pre-configured httpx client. The client is
                not closed by ``aclose()`` when injected.
            metrics: Optional metrics collector.
            token_cache: Optional token cache (a fresh one by default).
        """
        self._auth_config = auth_config or RegistryAuthConfig()
        self._target_registry = target_registry or None
        self._timeout = timeout
        self._insecure_registries = tuple(insecure_registries)
        self._metrics = metrics or WebhookMetrics()
        self._tokens = token_cache or TokenCache()

        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    @property
    def target_registry(self) -> str | None:
        """Return the configured replication target registry."""
        return self._target_registry

    @property
    def timeout(self) -> float:
        """Return the default request deadline in seconds."""
        return self._timeout

    @property
    def token_cache(self) -> TokenCache:
        """Return the bearer token cache owned by this client."""
        return self._tokens

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http.aclose()

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def clear_token_cache(self) -> None:
        """Drop all cached bearer tokens (e.g. after credential rotation)."""
        self._tokens.clear()
        logger.info("token_cache_cleared")

    # -------------------------------------------------------------------------
    # Existence checks
    # -------------------------------------------------------------------------

    async def check_image_exists(self, image: str) -> ImageValidationResult:
        """Check whether an image's manifest exists.

        Args:
            image: Image string as written in the workload.

        Returns:
            ImageValidationResult. Failures to complete the check are
            reported as ``exists=False`` with ``error`` set.
        """
        ref = parse_image_reference(image)
        if self._target_registry:
            ref = ref.retarget(self._target_registry)

        logger.debug(
            "image_check_started",
            image=image,
            registry=ref.registry,
            repository=ref.repository,
        )

        with self._metrics.tracer.start_as_current_span(WebhookMetrics.SPAN_CHECK) as span:
            span.set_attribute("image_validator.image", image)
            span.set_attribute("image_validator.registry", ref.registry)
            try:
                exists = await self._verify_manifest(ref)
            except RegistryError as e:
                span.set_attribute("image_validator.error_kind", e.kind.value)
                logger.warning(
                    "image_check_failed",
                    image=image,
                    registry=ref.registry,
                    error_kind=e.kind.value,
                    error=str(e),
                )
                return ImageValidationResult(
                    image=image, exists=False, registry=ref.registry, error=str(e)
                )
            span.set_attribute("image_validator.exists", exists)

        return ImageValidationResult(image=image, exists=exists, registry=ref.registry)

    async def check_images(self, images: Iterable[str]) -> list[ImageValidationResult]:
        """Check many images concurrently.

        Duplicates (by exact string) are probed once. Results are returned
        one per unique image in first-seen order; use ``index_results`` to
        resolve duplicate occurrences.
        """
        unique = list(dict.fromkeys(images))
        results = await asyncio.gather(*(self.check_image_exists(image) for image in unique))
        return list(results)

    async def _verify_manifest(self, ref: ImageReference) -> bool:
        """Probe the manifest endpoint without transferring a body.

        Returns:
            True for a 2xx response, False for 404.

        Raises:
            AuthenticationError: The registry still refused access.
            RegistryProtocolError: Any other status code.
            RegistryTimeoutError: The deadline expired.
            RegistryNetworkError: Transport failure.
        """
        url = self._manifest_url(ref)
        start = time.monotonic()
        try:
            response = await self._send(
                "HEAD", url, ref, headers={"Accept": MANIFEST_ACCEPT}
            )
        except RegistryError:
            self._metrics.record_registry_request(
                ref.registry, "error", time.monotonic() - start
            )
            raise

        status = response.status_code
        self._metrics.record_registry_request(ref.registry, str(status), time.monotonic() - start)

        if response.is_success:
            return True
        if status == 404:
            return False
        message = (
            f"Registry {ref.registry} returned status {status} for "
            f"{_display(ref)}: {response.reason_phrase}"
        )
        if status in (401, 403):
            raise AuthenticationError(ref.registry, status, message)
        raise RegistryProtocolError(ref.registry, message, status)

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    async def test_connectivity(self, registry: str) -> ConnectivityResult:
        """Probe whether a registry answers its API root.

        A ``200`` or an authentication challenge (``401``) both mean the
        registry is reachable.
        """
        url = f"{registry_api_url(registry, self._insecure_registries)}/v2/"
        timeout = min(CONNECTIVITY_TIMEOUT_SECONDS, self._timeout)
        logger.debug("connectivity_check_started", registry=registry, url=url)

        try:
            response = await self._http.get(url, timeout=timeout)
        except httpx.TimeoutException:
            error = f"Connection timeout after {timeout:g}s"
        except (httpx.RequestError, httpx.InvalidURL) as e:
            error = f"Network error: {e or type(e).__name__}"
        else:
            if response.status_code in (200, 401):
                logger.debug(
                    "connectivity_check_succeeded",
                    registry=registry,
                    status=response.status_code,
                )
                return ConnectivityResult(success=True)
            error = f"Registry returned status {response.status_code}: {response.reason_phrase}"

        logger.warning("connectivity_check_failed", registry=registry, error=error)
        return ConnectivityResult(success=False, error=error)

    # -------------------------------------------------------------------------
    # Clone
    # -------------------------------------------------------------------------

    async def clone_image(
        self, source_image: str, target_registry: str | None = None
    ) -> CloneOutcome:
        """Copy an image's manifest document into the target registry.

        Both registries are probed for reachability first. The manifest is
        then fetched from the source and pushed unchanged to the same
        repository and tag/digest in the target. Layer blobs are not
        transferred.

        Args:
            source_image: Image string as written in the workload.
            target_registry: Target registry host (defaults to the
                configured target registry).

        Returns:
            CloneOutcome with ``success`` and, on failure, the error message.
        """
        target = target_registry or self._target_registry
        if not target:
            return CloneOutcome(success=False, error="No target registry configured")

        source_ref = parse_image_reference(source_image)
        target_ref = source_ref.retarget(target)
        start = time.monotonic()

        logger.info(
            "image_clone_started",
            source_image=source_image,
            target_image=str(target_ref),
        )

        with self._metrics.tracer.start_as_current_span(WebhookMetrics.SPAN_CLONE) as span:
            span.set_attribute("image_validator.source", str(source_ref))
            span.set_attribute("image_validator.target", str(target_ref))
            try:
                await self._preflight(source_ref.registry, "source")
                await self._preflight(target_ref.registry, "target")
                try:
                    body, media_type = await self._get_manifest(source_ref)
                except RegistryError as e:
                    raise CloneError(source_ref.registry, "fetch", e) from e
                try:
                    await self._push_manifest(target_ref, body, media_type)
                except RegistryError as e:
                    raise CloneError(target_ref.registry, "push", e) from e
            except RegistryError as e:
                duration = time.monotonic() - start
                span.set_attribute("image_validator.error_kind", e.kind.value)
                self._metrics.record_clone(
                    source_ref.registry, target_ref.registry, success=False, seconds=duration
                )
                logger.error(
                    "image_clone_failed",
                    source_image=source_image,
                    target_image=str(target_ref),
                    error_kind=e.kind.value,
                    error=str(e),
                    duration=duration,
                )
                return CloneOutcome(success=False, error=str(e))

        duration = time.monotonic() - start
        self._metrics.record_clone(
            source_ref.registry, target_ref.registry, success=True, seconds=duration
        )
        logger.info(
            "image_clone_succeeded",
            source_image=source_image,
            target_image=str(target_ref),
            media_type=media_type,
            duration=duration,
        )
        return CloneOutcome(success=True)

    async def _preflight(self, registry: str, role: str) -> None:
        connectivity = await self.test_connectivity(registry)
        if not connectivity.success:
            raise RegistryUnavailableError(registry, role, connectivity.error)

    async def _get_manifest(self, ref: ImageReference) -> tuple[bytes, str]:
        """Fetch a manifest body and its declared media type."""
        response = await self._send(
            "GET", self._manifest_url(ref), ref, headers={"Accept": MANIFEST_ACCEPT}
        )
        status = response.status_code
        if status == 404:
            raise ManifestNotFoundError(ref.registry, ref.repository, ref.reference)
        if not response.is_success:
            message = (
                f"Failed to get manifest {_display(ref)} from {ref.registry}: "
                f"{status} {response.reason_phrase}"
            )
            if status in (401, 403):
                raise AuthenticationError(ref.registry, status, message)
            raise RegistryProtocolError(ref.registry, message, status)

        body = response.content
        try:
            document: Any = json.loads(body)
        except ValueError as e:
            raise RegistryProtocolError(
                ref.registry, f"Manifest {_display(ref)} from {ref.registry} is not valid JSON"
            ) from e

        media_type = document.get("mediaType") if isinstance(document, dict) else None
        if media_type in (None, ""):
            header = response.headers.get("Content-Type", "")
            media_type = header.split(";", 1)[0].strip() or DOCKER_MANIFEST_V2
        # The value becomes a request header on push.
        if not _is_header_token(media_type):
            raise RegistryProtocolError(
                ref.registry,
                f"Manifest {_display(ref)} from {ref.registry} has an invalid "
                f"media type {media_type!r}",
            )
        return body, media_type

    async def _push_manifest(self, ref: ImageReference, body: bytes, media_type: str) -> None:
        """Push a manifest body to the target reference."""
        response = await self._send(
            "PUT",
            self._manifest_url(ref),
            ref,
            headers={"Content-Type": media_type},
            content=body,
            actions=PUSH_ACTIONS,
        )
        if not response.is_success:
            status = response.status_code
            message = (
                f"Failed to push manifest {_display(ref)} to {ref.registry}: "
                f"{status} {response.reason_phrase}"
            )
            if status in (401, 403):
                raise AuthenticationError(ref.registry, status, message)
            raise RegistryProtocolError(ref.registry, message, status)

    # -------------------------------------------------------------------------
    # Transport and authentication
    # -------------------------------------------------------------------------

    def _manifest_url(self, ref: ImageReference) -> str:
        base = registry_api_url(ref.registry, self._insecure_registries)
        return f"{base}/v2/{ref.repository}/manifests/{ref.reference}"

    async def _send(
        self,
        method: str,
        url: str,
        ref: ImageReference,
        *,
        headers: dict[str, str],
        content: bytes | None = None,
        actions: frozenset[str] = PULL_ACTIONS,
    ) -> httpx.Response:
        """Send a request, answering one Bearer challenge if the registry issues it.

        Raises:
            RegistryTimeoutError: The deadline expired.
            RegistryNetworkError: Transport failure.
            RegistryProtocolError: The URL could not be built.
        """
        try:
            response = await self._http.request(
                method, url, headers=headers, content=content, timeout=self._timeout
            )
            if response.status_code == 401:
                challenge = response.headers.get("WWW-Authenticate")
                token = await self._get_token(ref, challenge, actions) if challenge else None
                if token:
                    response = await self._http.request(
                        method,
                        url,
                        headers={**headers, "Authorization": f"Bearer {token}"},
                        content=content,
                        timeout=self._timeout,
                    )
                    if response.status_code == 401:
                        self._tokens.discard(ref.registry, ref.repository)
                        logger.warning(
                            "token_rejected",
                            registry=ref.registry,
                            repository=ref.repository,
                        )
        except httpx.TimeoutException as e:
            raise RegistryTimeoutError(ref.registry, self._timeout) from e
        except httpx.RequestError as e:
            raise RegistryNetworkError(ref.registry, str(e) or type(e).__name__) from e
        except httpx.InvalidURL as e:
            raise RegistryProtocolError(ref.registry, f"Invalid registry URL {url}: {e}") from e
        return response

    async def _get_token(
        self, ref: ImageReference, challenge_header: str, actions: frozenset[str]
    ) -> str | None:
        """Obtain a repository-scoped bearer token, from cache or the realm.

        Any failure degrades to None so the caller reports the original
        unauthenticated response.
        """
        challenge = parse_www_authenticate(challenge_header)
        if challenge is None:
            logger.warning(
                "auth_challenge_unparseable",
                registry=ref.registry,
                header=challenge_header,
            )
            return None

        cached = self._tokens.get(ref.registry, ref.repository, actions)
        if cached:
            self._metrics.record_token_cache(ref.registry, hit=True)
            return cached
        self._metrics.record_token_cache(ref.registry, hit=False)

        params: dict[str, str] = {}
        if challenge.service:
            params["service"] = challenge.service
        params["scope"] = f"repository:{ref.repository}:{','.join(sorted(actions))}"

        creds = get_credentials_for_registry(self._auth_config, ref.registry)
        auth = httpx.BasicAuth(creds.username, creds.password) if creds else None
        timeout = min(TOKEN_TIMEOUT_SECONDS, self._timeout)

        try:
            response = await self._http.get(
                challenge.realm, params=params, auth=auth, timeout=timeout
            )
        except (httpx.RequestError, httpx.InvalidURL) as e:
            logger.error(
                "token_request_failed",
                registry=ref.registry,
                realm=challenge.realm,
                error=str(e) or type(e).__name__,
            )
            return None

        if not response.is_success:
            logger.error(
                "token_request_rejected",
                registry=ref.registry,
                realm=challenge.realm,
                status=response.status_code,
                authenticated=creds is not None,
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.error("token_response_invalid", registry=ref.registry, realm=challenge.realm)
            return None

        token = (data.get("token") or data.get("access_token")) if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            logger.error("token_response_empty", registry=ref.registry, realm=challenge.realm)
            return None

        expires_in = data.get("expires_in")
        lifetime = expires_in if isinstance(expires_in, (int, float)) else None
        self._tokens.put(ref.registry, ref.repository, token, lifetime, actions)
        logger.debug(
            "token_acquired",
            registry=ref.registry,
            repository=ref.repository,
            scope=params["scope"],
        )
        return token


__all__ = [
    "CONNECTIVITY_TIMEOUT_SECONDS",
    "DEFAULT_TIMEOUT_SECONDS",
    "MANIFEST_MEDIA_TYPES",
    "TOKEN_TIMEOUT_SECONDS",
    "RegistryClient",
    "index_results",
]
