"""Admission decision engine for workload image validation.

The engine turns one AdmissionReview request into an allow/deny verdict:

1. Requests for subresources, and operations other than CREATE and UPDATE,
   are skipped without touching any registry.
2. Image references are extracted from the workload's pod template.
3. Every unique image is checked concurrently; a check that could not
   complete counts as missing.
4. With a target registry configured, missing images are cloned into it and
   the request is admitted only when every clone succeeds. Without one, any
   missing image denies the request.

``AdmissionController`` is the boundary in front of the engine: it parses the
raw review document and converts any unexpected exception into an allowing
response with a warning, so a webhook bug never blocks cluster operations.

Example:
    >>> engine = AdmissionDecisionEngine(client)
    >>> verdict = await engine.decide(request)
    >>> verdict.allowed
    True
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from image_validator.client import RegistryClient, index_results
from image_validator.errors import InvalidAdmissionReviewError
from image_validator.metrics import WebhookMetrics
from image_validator.schemas import (
    AdmissionRequest,
    AdmissionReview,
    AdmissionVerdict,
    CloneResult,
    DecisionState,
    ImageValidationResult,
)

logger = structlog.get_logger(__name__)

VALIDATED_OPERATIONS = frozenset({"CREATE", "UPDATE"})

_CONTAINER_FIELDS = ("containers", "initContainers", "ephemeralContainers")


# =============================================================================
# Image extraction
# =============================================================================


def _pod_spec_images(pod_spec: Any) -> list[str]:
    if not isinstance(pod_spec, Mapping):
        return []
    images: list[str] = []
    for field in _CONTAINER_FIELDS:
        containers = pod_spec.get(field)
        if not isinstance(containers, list):
            continue
        for container in containers:
            if isinstance(container, Mapping):
                image = container.get("image")
                if isinstance(image, str) and image:
                    images.append(image)
    return images


def _dig(value: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _template_images(spec: Any) -> list[str]:
    return _pod_spec_images(_dig(spec, "template", "spec"))


def _cronjob_images(spec: Any) -> list[str]:
    return _pod_spec_images(_dig(spec, "jobTemplate", "spec", "template", "spec"))


def _fallback_images(spec: Any) -> list[str]:
    # Unknown kinds: any pod template plus a top-level containers list.
    return _template_images(spec) + _pod_spec_images(
        {"containers": _dig(spec, "containers")}
    )


_EXTRACTORS: dict[str, Callable[[Any], list[str]]] = {
    "Pod": _pod_spec_images,
    "Deployment": _template_images,
    "ReplicaSet": _template_images,
    "StatefulSet": _template_images,
    "DaemonSet": _template_images,
    "Job": _template_images,
    "CronJob": _cronjob_images,
}


def extract_images(kind: str, spec: Any) -> list[str]:
    """Extract unique image references from a workload spec.

    Args:
        kind: Object kind, e.g. "Pod" or "Deployment".
        spec: The object's ``spec`` member.

    Returns:
        Image strings in first-seen order. Missing or malformed fields yield
        nothing rather than raising.

    Examples:
        >>> extract_images("Pod", {"containers": [{"image": "nginx"}]})
        ['nginx']
        >>> extract_images("Deployment", {"template": {"spec": {}}})
        []
    """
    extractor = _EXTRACTORS.get(kind, _fallback_images)
    return list(dict.fromkeys(extractor(spec)))


# =============================================================================
# Messages
# =============================================================================


def format_missing_message(missing: list[ImageValidationResult]) -> str:
    """Build the denial message listing every missing image."""
    lines = [
        "Image validation failed. The following images do not exist or are not accessible:"
    ]
    for result in missing:
        line = f"  - {result.image} in {result.registry}"
        if result.error:
            line += f" ({result.error})"
        lines.append(line)
    return "\n".join(lines)


def format_clone_failure_message(failures: list[CloneResult]) -> str:
    """Build the denial message listing every failed clone."""
    lines = [f"Failed to clone {len(failures)} image(s):"]
    lines.extend(f"  - {failure.image}: {failure.error}" for failure in failures)
    return "\n".join(lines)


# =============================================================================
# Engine
# =============================================================================


class AdmissionDecisionEngine:
    """Decides whether a workload may be admitted based on image existence.

    Attributes:
        client: Registry client used for checks and clones.
    """

    def __init__(self, client: RegistryClient, metrics: WebhookMetrics | None = None) -> None:
        self.client = client
        self._metrics = metrics or WebhookMetrics()

    async def decide(self, request: AdmissionRequest) -> AdmissionVerdict:
        """Produce the verdict for one admission request."""
        uid = request.uid
        kind = request.kind.kind
        log = logger.bind(
            uid=uid,
            kind=kind,
            namespace=request.namespace,
            name=request.object_name,
            operation=request.operation,
        )

        if request.sub_resource:
            log.debug("admission_skipped", reason="subresource", sub_resource=request.sub_resource)
            return AdmissionVerdict.allow(uid, state=DecisionState.SKIPPED)
        if request.operation not in VALIDATED_OPERATIONS:
            log.debug("admission_skipped", reason="operation")
            return AdmissionVerdict.allow(uid, state=DecisionState.SKIPPED)

        images = extract_images(kind, (request.object or {}).get("spec"))
        if not images:
            log.debug("admission_no_images")
            return AdmissionVerdict.allow(uid, state=DecisionState.NO_IMAGES)

        log.info("admission_validating", images=images)
        results = await self.client.check_images(images)
        for result in results:
            self._record_result(result)

        by_image = index_results(results)
        missing = [by_image[image] for image in images if not by_image[image].exists]
        warnings = [
            f"Image {result.image} exists but had validation issues: {result.error}"
            for result in results
            if result.exists and result.error
        ]

        if not missing:
            log.info("admission_allowed", images=images)
            return AdmissionVerdict.allow(uid, warnings, state=DecisionState.ALL_EXIST)

        if self.client.target_registry:
            return await self._clone_missing(uid, missing, warnings, log)

        message = format_missing_message(missing)
        log.warning(
            "admission_denied",
            reason="images_missing",
            missing=[result.image for result in missing],
        )
        return AdmissionVerdict.deny(uid, message, state=DecisionState.MISSING_NO_TARGET)

    async def _clone_missing(
        self,
        uid: str,
        missing: list[ImageValidationResult],
        warnings: list[str],
        log: Any,
    ) -> AdmissionVerdict:
        target = self.client.target_registry
        log.info(
            "admission_cloning",
            target_registry=target,
            images=[result.image for result in missing],
        )
        outcomes = await asyncio.gather(
            *(self.client.clone_image(result.image, target) for result in missing)
        )
        failures = [
            CloneResult(image=result.image, success=False, error=outcome.error)
            for result, outcome in zip(missing, outcomes, strict=True)
            if not outcome.success
        ]

        if failures:
            log.warning(
                "admission_denied",
                reason="clone_failed",
                failed=[failure.image for failure in failures],
            )
            return AdmissionVerdict.deny(
                uid,
                format_clone_failure_message(failures),
                state=DecisionState.CLONE_FAILED,
            )

        log.info("admission_allowed", cloned=[result.image for result in missing])
        return AdmissionVerdict.allow(uid, warnings, state=DecisionState.CLONE_SUCCEEDED)

    def _record_result(self, result: ImageValidationResult) -> None:
        if result.error:
            status = "error"
        elif result.exists:
            status = "exists"
        else:
            status = "not_found"
        self._metrics.record_image_validation(result.registry, status)


# =============================================================================
# Boundary
# =============================================================================


def parse_admission_review(document: bytes | str | Mapping[str, Any]) -> AdmissionReview:
    """Parse a raw AdmissionReview document.

    Raises:
        InvalidAdmissionReviewError: Body is not JSON or lacks ``request.uid``.
    """
    if isinstance(document, (bytes, str)):
        try:
            document = json.loads(document)
        except ValueError as e:
            raise InvalidAdmissionReviewError(f"AdmissionReview is not valid JSON: {e}") from e
    if not isinstance(document, Mapping):
        raise InvalidAdmissionReviewError("AdmissionReview must be a JSON object")
    try:
        return AdmissionReview.model_validate(document)
    except ValidationError as e:
        raise InvalidAdmissionReviewError(f"Invalid AdmissionReview: {e}") from e


class AdmissionController:
    """Fail-open boundary that turns AdmissionReview documents into responses."""

    def __init__(
        self, engine: AdmissionDecisionEngine, metrics: WebhookMetrics | None = None
    ) -> None:
        self.engine = engine
        self._metrics = metrics or WebhookMetrics()

    @property
    def client(self) -> RegistryClient:
        """Registry client behind the engine."""
        return self.engine.client

    async def review(self, document: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
        """Answer one AdmissionReview.

        Args:
            document: Raw request body or an already decoded mapping.

        Returns:
            AdmissionReview response document.

        Raises:
            InvalidAdmissionReviewError: The document cannot be interpreted,
                so there is no uid to answer.
        """
        request = parse_admission_review(document).request
        operation = request.operation or "unknown"
        kind = request.kind.kind or "unknown"
        start = time.monotonic()

        with (
            self._metrics.in_flight(),
            self._metrics.tracer.start_as_current_span(WebhookMetrics.SPAN_REVIEW) as span,
        ):
            span.set_attribute("image_validator.uid", request.uid)
            span.set_attribute("image_validator.kind", kind)
            try:
                verdict = await self.engine.decide(request)
            except Exception as e:
                span.record_exception(e)
                logger.exception("admission_failed_open", uid=request.uid, error=str(e))
                verdict = AdmissionVerdict.allow(
                    request.uid, [f"Webhook error: {e}"], state=DecisionState.ERROR
                )
            span.set_attribute("image_validator.allowed", verdict.allowed)

        self._metrics.record_admission(
            operation,
            kind,
            "allowed" if verdict.allowed else "denied",
            verdict.state.value,
        )
        self._metrics.record_admission_duration(operation, kind, time.monotonic() - start)
        return verdict.to_review()


__all__ = [
    "VALIDATED_OPERATIONS",
    "AdmissionController",
    "AdmissionDecisionEngine",
    "DecisionState",
    "extract_images",
    "format_clone_failure_message",
    "format_missing_message",
    "parse_admission_review",
]
