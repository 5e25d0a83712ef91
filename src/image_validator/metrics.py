"""OpenTelemetry metrics for admission reviews and registry operations.

Metrics Emitted:
    Counters:
        - webhook_admission_requests_total: Admission decisions by operation,
          kind, result and reason
        - webhook_image_validation_total: Image checks by registry and status
        - webhook_token_cache_hits_total / webhook_token_cache_misses_total
        - webhook_image_clone_total: Clone attempts by source, target, status

    Histograms:
        - webhook_admission_request_duration_seconds
        - webhook_registry_request_duration_seconds
        - webhook_image_clone_duration_seconds

    UpDownCounters:
        - webhook_requests_in_flight

Trace Spans:
    - image_validator.admission.review
    - image_validator.registry.check
    - image_validator.registry.clone

Without an OpenTelemetry SDK installed and configured every instrument is a
no-op; exporting is left to the deployment.

Example:
    >>> metrics = WebhookMetrics()
    >>> metrics.record_token_cache("ghcr.io", hit=True)
    >>> with metrics.in_flight():
    ...     pass
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING

from opentelemetry import metrics, trace

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.metrics import Counter, Histogram, MeterProvider, UpDownCounter
    from opentelemetry.trace import Tracer, TracerProvider


class WebhookMetrics:
    """OpenTelemetry metrics collector for the image validator.

    Instruments are created lazily on first use so that constructing the
    collector never touches the meter provider.
    """

    ADMISSION_REQUESTS_TOTAL = "webhook_admission_requests_total"
    ADMISSION_REQUEST_DURATION = "webhook_admission_request_duration_seconds"
    IMAGE_VALIDATION_TOTAL = "webhook_image_validation_total"
    REGISTRY_REQUEST_DURATION = "webhook_registry_request_duration_seconds"
    TOKEN_CACHE_HITS = "webhook_token_cache_hits_total"
    TOKEN_CACHE_MISSES = "webhook_token_cache_misses_total"
    REQUESTS_IN_FLIGHT = "webhook_requests_in_flight"
    IMAGE_CLONE_TOTAL = "webhook_image_clone_total"
    IMAGE_CLONE_DURATION = "webhook_image_clone_duration_seconds"

    SPAN_REVIEW = "image_validator.admission.review"
    SPAN_CHECK = "image_validator.registry.check"
    SPAN_CLONE = "image_validator.registry.clone"

    def __init__(
        self,
        meter_name: str = "image_validator",
        meter_version: str = "1.0.0",
        tracer_name: str = "image_validator",
        *,
        meter_provider: MeterProvider | None = None,
        tracer_provider: TracerProvider | None = None,
    ) -> None:
        """Initialize the collector.

        Args:
            meter_name: Name for the OpenTelemetry meter.
            meter_version: Version for the meter.
            tracer_name: Name for the OpenTelemetry tracer.
            meter_provider: Meter provider (the global one by default).
            tracer_provider: Tracer provider (the global one by default).
        """
        self._meter = metrics.get_meter(meter_name, meter_version, meter_provider=meter_provider)
        self._tracer: Tracer = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._in_flight: UpDownCounter | None = None

    @property
    def tracer(self) -> Tracer:
        """Tracer used for review, check and clone spans."""
        return self._tracer

    def _counter(self, name: str, description: str) -> Counter:
        if name not in self._counters:
            self._counters[name] = self._meter.create_counter(
                name, unit="1", description=description
            )
        return self._counters[name]

    def _histogram(self, name: str, description: str) -> Histogram:
        if name not in self._histograms:
            self._histograms[name] = self._meter.create_histogram(
                name, unit="s", description=description
            )
        return self._histograms[name]

    @property
    def in_flight_counter(self) -> UpDownCounter:
        """Get or create the in-flight requests up/down counter."""
        if self._in_flight is None:
            self._in_flight = self._meter.create_up_down_counter(
                self.REQUESTS_IN_FLIGHT,
                unit="1",
                description="Admission requests currently being processed",
            )
        return self._in_flight

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def record_admission(self, operation: str, kind: str, result: str, reason: str) -> None:
        """Count one admission decision."""
        self._counter(
            self.ADMISSION_REQUESTS_TOTAL, "Admission requests by outcome"
        ).add(1, {"operation": operation, "kind": kind, "result": result, "reason": reason})

    def record_admission_duration(self, operation: str, kind: str, seconds: float) -> None:
        """Observe how long one admission review took."""
        self._histogram(
            self.ADMISSION_REQUEST_DURATION, "Admission review duration in seconds"
        ).record(seconds, {"operation": operation, "kind": kind})

    @contextmanager
    def in_flight(self) -> Generator[None, None, None]:
        """Track a request as in flight for the duration of the block."""
        self.in_flight_counter.add(1)
        try:
            yield
        finally:
            self.in_flight_counter.add(-1)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def record_image_validation(self, registry: str, status: str) -> None:
        """Count one image check by outcome (exists, not_found, error)."""
        self._counter(
            self.IMAGE_VALIDATION_TOTAL, "Image existence checks by outcome"
        ).add(1, {"registry": registry, "status": status})

    def record_registry_request(self, registry: str, status: str, seconds: float) -> None:
        """Observe the duration of a manifest probe."""
        self._histogram(
            self.REGISTRY_REQUEST_DURATION, "Registry manifest request duration"
        ).record(seconds, {"registry": registry, "status": status})

    def record_token_cache(self, registry: str, *, hit: bool) -> None:
        """Count a token cache hit or miss."""
        if hit:
            name, description = self.TOKEN_CACHE_HITS, "Bearer token cache hits"
        else:
            name, description = self.TOKEN_CACHE_MISSES, "Bearer token cache misses"
        self._counter(name, description).add(1, {"registry": registry})

    def record_clone(
        self,
        source_registry: str,
        target_registry: str,
        *,
        success: bool,
        seconds: float,
    ) -> None:
        """Count and time one clone attempt."""
        attributes = {
            "source_registry": source_registry,
            "target_registry": target_registry,
            "status": "success" if success else "error",
        }
        self._counter(self.IMAGE_CLONE_TOTAL, "Image clone attempts").add(1, attributes)
        self._histogram(
            self.IMAGE_CLONE_DURATION, "Image clone duration in seconds"
        ).record(seconds, attributes)


__all__ = ["WebhookMetrics"]
