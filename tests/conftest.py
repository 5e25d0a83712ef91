"""Shared test configuration for image-validator.

Tests never touch the network: registries are simulated by ``FakeRegistry``
behind ``httpx.MockTransport``.

Key Fixtures:
- anyio_backend: Run async tests on asyncio only
- fake_registry: In-memory registry speaking the manifest and token protocol
- make_client: Factory for RegistryClient instances wired to fake_registry
- telemetry: WebhookMetrics backed by in-memory OpenTelemetry SDK exporters
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import anyio
import httpx
import pytest
import structlog
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from image_validator.client import DOCKER_MANIFEST_V2, RegistryClient
from image_validator.credentials import RegistryAuthConfig
from image_validator.metrics import WebhookMetrics

TOKEN_HOST = "auth.example.com"
TOKEN_REALM = f"https://{TOKEN_HOST}/token"

_MANIFEST_PATH = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")


def manifest_document(media_type: str = DOCKER_MANIFEST_V2) -> dict[str, Any]:
    """Return a minimal image manifest document."""
    return {
        "schemaVersion": 2,
        "mediaType": media_type,
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "size": 1469,
            "digest": "sha256:" + "a" * 64,
        },
        "layers": [],
    }


class FakeRegistry:
    """In-memory registries addressed by host.

    Attributes:
        manifests: (host, repository, reference) -> (body, media type).
        protected: Hosts that require a bearer token from ``TOKEN_REALM``.
        unreachable: Hosts that raise a connection error.
        slow: Hosts that raise a read timeout.
        token_expires_in: ``expires_in`` returned by the token endpoint
            (omitted when None).
        token_status: Status code returned by the token endpoint.
        push_status: Forced status for manifest PUTs (None stores the body).
        reject_tokens: Refuse every issued token, as after a revocation.
        status_override: Forced status for manifest HEAD/GET by host.
        requests: Every request seen, in order.
    """

    def __init__(self) -> None:
        self.manifests: dict[tuple[str, str, str], tuple[bytes, str]] = {}
        self.protected: set[str] = set()
        self.unreachable: set[str] = set()
        self.slow: set[str] = set()
        self.token_expires_in: int | None = 300
        self.token_status = 200
        self.push_status: int | None = None
        self.reject_tokens = False
        self.status_override: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self._issued: set[str] = set()

    def add_manifest(
        self,
        host: str,
        repository: str,
        reference: str,
        media_type: str = DOCKER_MANIFEST_V2,
    ) -> bytes:
        body = json.dumps(manifest_document(media_type)).encode()
        self.manifests[(host, repository, reference)] = (body, media_type)
        return body

    def requests_to(self, host: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if _host(r) == host and (method is None or r.method == method)
        ]

    @property
    def token_requests(self) -> list[httpx.Request]:
        return self.requests_to(TOKEN_HOST)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = _host(request)

        if host in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if host in self.slow:
            raise httpx.ReadTimeout("timed out", request=request)
        if host == TOKEN_HOST:
            return self._issue_token()
        if host in self.protected and not self._authorized(request):
            return httpx.Response(
                401,
                headers={
                    "WWW-Authenticate": f'Bearer realm="{TOKEN_REALM}",service="{host}"'
                },
            )

        if request.url.path == "/v2/":
            return httpx.Response(200, json={})

        match = _MANIFEST_PATH.match(request.url.path)
        if match is None:
            return httpx.Response(404)
        key = (host, match["repo"], match["ref"])

        if request.method == "PUT":
            if self.push_status is not None:
                return httpx.Response(self.push_status)
            self.manifests[key] = (request.content, request.headers.get("Content-Type", ""))
            return httpx.Response(201)

        if host in self.status_override:
            return httpx.Response(self.status_override[host])
        if key not in self.manifests:
            return httpx.Response(404)
        body, media_type = self.manifests[key]
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Type": media_type})
        return httpx.Response(200, headers={"Content-Type": media_type}, content=body)

    def _issue_token(self) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status)
        token = f"token-{len(self._issued) + 1}"
        self._issued.add(token)
        payload: dict[str, Any] = {"token": token}
        if self.token_expires_in is not None:
            payload["expires_in"] = self.token_expires_in
        return httpx.Response(200, json=payload)

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization", "")
        if self.reject_tokens or not header.startswith("Bearer "):
            return False
        return header[len("Bearer ") :] in self._issued


def _host(request: httpx.Request) -> str:
    if request.url.port:
        return f"{request.url.host}:{request.url.port}"
    return request.url.host


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo any configure_logging call made by a test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def anyio_backend() -> str:
    """Run async tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def fake_registry() -> FakeRegistry:
    """Return an empty fake registry."""
    return FakeRegistry()


@pytest.fixture
def make_client(fake_registry: FakeRegistry) -> Iterator[Callable[..., RegistryClient]]:
    """Return a factory building RegistryClient instances on fake_registry.

    The injected HTTP clients are closed at teardown, since RegistryClient
    leaves injected clients open.

    Usage:
        def test_x(make_client) -> None:
            client = make_client(target_registry="mirror.example.com")
    """
    http_clients: list[httpx.AsyncClient] = []

    def _make(
        auth_config: RegistryAuthConfig | None = None, **kwargs: Any
    ) -> RegistryClient:
        http_client = httpx.AsyncClient(transport=fake_registry.transport())
        http_clients.append(http_client)
        return RegistryClient(auth_config, http_client=http_client, **kwargs)

    yield _make

    for http_client in http_clients:
        anyio.run(http_client.aclose)


@dataclass
class Telemetry:
    """Metrics collector wired to in-memory OpenTelemetry SDK exporters."""

    metrics: WebhookMetrics
    reader: InMemoryMetricReader
    spans: InMemorySpanExporter

    def span_names(self) -> list[str]:
        return [span.name for span in self.spans.get_finished_spans()]

    def points(self, name: str) -> list[Any]:
        """Return the data points recorded for one metric."""
        data = self.reader.get_metrics_data()
        if data is None:
            return []
        return [
            point
            for resource_metrics in data.resource_metrics
            for scope_metrics in resource_metrics.scope_metrics
            for metric in scope_metrics.metrics
            if metric.name == name
            for point in metric.data.data_points
        ]


@pytest.fixture
def telemetry() -> Iterator[Telemetry]:
    """Provide a WebhookMetrics that records into the OpenTelemetry SDK."""
    reader = InMemoryMetricReader()
    meter_provider = MeterProvider(metric_readers=[reader])
    exporter = InMemorySpanExporter()
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))

    yield Telemetry(
        metrics=WebhookMetrics(meter_provider=meter_provider, tracer_provider=tracer_provider),
        reader=reader,
        spans=exporter,
    )

    tracer_provider.shutdown()
    meter_provider.shutdown()
