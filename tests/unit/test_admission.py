"""Unit tests for the admission decision engine and controller.

These tests validate:
- Image extraction per workload kind
- Skip rules for subresources and non-mutating operations
- Allow/deny verdicts and aggregated denial messages
- Clone-on-miss with a target registry
- The fail-open controller boundary
"""

from __future__ import annotations

import json
from typing import Any

import pytest

from image_validator.admission import (
    AdmissionController,
    AdmissionDecisionEngine,
    extract_images,
    parse_admission_review,
)
from image_validator.errors import InvalidAdmissionReviewError
from image_validator.schemas import AdmissionRequest, DecisionState, ImageValidationResult

SOURCE = "registry.example.com"
TARGET = "mirror.example.com"


def pod(*images: str, init: tuple[str, ...] = ()) -> dict[str, Any]:
    return {
        "metadata": {"name": "web"},
        "spec": {
            "containers": [{"name": f"c{i}", "image": image} for i, image in enumerate(images)],
            "initContainers": [{"name": f"i{i}", "image": image} for i, image in enumerate(init)],
        },
    }


def admission_request(
    obj: dict[str, Any] | None,
    kind: str = "Pod",
    operation: str = "CREATE",
    **extra: Any,
) -> AdmissionRequest:
    payload: dict[str, Any] = {
        "uid": "705ab4f5-6393-11e8-b7cc-42010a800002",
        "kind": {"group": "", "version": "v1", "kind": kind},
        "resource": {"group": "", "version": "v1", "resource": "pods"},
        "namespace": "default",
        "operation": operation,
        "object": obj,
        **extra,
    }
    return AdmissionRequest.model_validate(payload)


def review_document(request: AdmissionRequest) -> dict[str, Any]:
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": request.model_dump(by_alias=True),
    }


class TestExtractImages:
    """Tests for extract_images."""

    def test_pod_all_container_lists(self) -> None:
        spec = {
            "containers": [{"image": "app:v1"}, {"image": "sidecar:v1"}],
            "initContainers": [{"image": "init:v1"}],
            "ephemeralContainers": [{"image": "debug:v1"}],
        }
        assert extract_images("Pod", spec) == ["app:v1", "sidecar:v1", "init:v1", "debug:v1"]

    @pytest.mark.parametrize(
        "kind", ["Deployment", "ReplicaSet", "StatefulSet", "DaemonSet", "Job"]
    )
    def test_template_kinds(self, kind: str) -> None:
        spec = {"template": {"spec": {"containers": [{"image": "app:v1"}]}}}
        assert extract_images(kind, spec) == ["app:v1"]

    def test_cronjob(self) -> None:
        spec = {
            "jobTemplate": {
                "spec": {"template": {"spec": {"containers": [{"image": "batch:v1"}]}}}
            }
        }
        assert extract_images("CronJob", spec) == ["batch:v1"]

    def test_unknown_kind_falls_back_to_structure(self) -> None:
        spec = {
            "template": {"spec": {"containers": [{"image": "a:v1"}]}},
            "containers": [{"image": "b:v1"}],
        }
        assert extract_images("Rollout", spec) == ["a:v1", "b:v1"]

    def test_duplicates_removed_in_first_seen_order(self) -> None:
        spec = {"containers": [{"image": "b"}, {"image": "a"}, {"image": "b"}]}
        assert extract_images("Pod", spec) == ["b", "a"]

    @pytest.mark.parametrize(
        "spec",
        [
            None,
            "not a mapping",
            {},
            {"containers": "nope"},
            {"containers": [None, {"name": "no-image"}, {"image": ""}]},
        ],
    )
    def test_malformed_specs_yield_nothing(self, spec: Any) -> None:
        assert extract_images("Pod", spec) == []

    def test_deployment_without_template(self) -> None:
        assert extract_images("Deployment", {"replicas": 3}) == []


class TestDecide:
    """Tests for AdmissionDecisionEngine.decide against a fake registry."""

    @pytest.mark.anyio
    async def test_simple_allow(self, fake_registry, make_client) -> None:
        fake_registry.add_manifest(SOURCE, "team/app", "v1")
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(admission_request(pod(f"{SOURCE}/team/app:v1")))

        assert verdict.allowed is True
        assert verdict.state is DecisionState.ALL_EXIST
        assert verdict.uid == "705ab4f5-6393-11e8-b7cc-42010a800002"

    @pytest.mark.anyio
    async def test_simple_deny(self, make_client) -> None:
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(admission_request(pod(f"{SOURCE}/team/app:v9")))

        assert verdict.allowed is False
        assert verdict.state is DecisionState.MISSING_NO_TARGET
        assert verdict.denial_message is not None
        assert f"{SOURCE}/team/app:v9" in verdict.denial_message

    @pytest.mark.anyio
    async def test_denial_lists_every_missing_image(self, fake_registry, make_client) -> None:
        """Test the denial names each missing image with its registry and error."""
        fake_registry.add_manifest(SOURCE, "team/app", "v1")
        fake_registry.unreachable.add("down.example.com")
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(
            admission_request(
                pod(
                    f"{SOURCE}/team/app:v1",
                    f"{SOURCE}/team/db:v1",
                    "down.example.com/team/cache:v1",
                )
            )
        )

        assert verdict.denial_message is not None
        lines = verdict.denial_message.splitlines()
        assert lines[0] == (
            "Image validation failed. The following images do not exist or are not accessible:"
        )
        assert lines[1] == f"  - {SOURCE}/team/db:v1 in {SOURCE}"
        assert lines[2].startswith(
            "  - down.example.com/team/cache:v1 in down.example.com (Network error"
        )
        assert len(lines) == 3

    @pytest.mark.anyio
    async def test_check_errors_fail_closed(self, fake_registry, make_client) -> None:
        fake_registry.slow.add(SOURCE)
        engine = AdmissionDecisionEngine(make_client(timeout=3.0))

        verdict = await engine.decide(admission_request(pod(f"{SOURCE}/team/app:v1")))

        assert verdict.allowed is False
        assert verdict.denial_message is not None
        assert "timed out after 3s" in verdict.denial_message

    @pytest.mark.anyio
    async def test_subresource_is_skipped_without_probes(self, fake_registry, make_client) -> None:
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(
            admission_request(pod(f"{SOURCE}/team/app:v9"), subResource="scale")
        )

        assert verdict.allowed is True
        assert verdict.state is DecisionState.SKIPPED
        assert fake_registry.requests == []

    @pytest.mark.anyio
    @pytest.mark.parametrize("operation", ["DELETE", "CONNECT"])
    async def test_other_operations_are_skipped(
        self, fake_registry, make_client, operation: str
    ) -> None:
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(
            admission_request(pod(f"{SOURCE}/team/app:v9"), operation=operation)
        )

        assert verdict.allowed is True
        assert fake_registry.requests == []

    @pytest.mark.anyio
    async def test_update_is_validated(self, make_client) -> None:
        engine = AdmissionDecisionEngine(make_client())
        verdict = await engine.decide(
            admission_request(pod(f"{SOURCE}/team/app:v9"), operation="UPDATE")
        )
        assert verdict.allowed is False

    @pytest.mark.anyio
    @pytest.mark.parametrize("obj", [None, {"metadata": {}}, pod()])
    async def test_no_images_allows(self, fake_registry, make_client, obj: Any) -> None:
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(admission_request(obj))

        assert verdict.allowed is True
        assert verdict.state is DecisionState.NO_IMAGES
        assert fake_registry.requests == []

    @pytest.mark.anyio
    async def test_deployment_images_are_checked(self, fake_registry, make_client) -> None:
        fake_registry.add_manifest(SOURCE, "team/app", "v1")
        deployment = {
            "metadata": {"name": "web"},
            "spec": {"template": {"spec": {"containers": [{"image": f"{SOURCE}/team/app:v1"}]}}},
        }
        engine = AdmissionDecisionEngine(make_client())

        verdict = await engine.decide(admission_request(deployment, kind="Deployment"))

        assert verdict.allowed is True
        assert len(fake_registry.requests_to(SOURCE, "HEAD")) == 1


class TestCloneOnMiss:
    """Tests for replication into a target registry."""

    @pytest.mark.anyio
    async def test_clone_success_allows(self, fake_registry, make_client) -> None:
        fake_registry.add_manifest(SOURCE, "team/app", "v1")
        engine = AdmissionDecisionEngine(make_client(target_registry=TARGET))

        verdict = await engine.decide(admission_request(pod(f"{SOURCE}/team/app:v1")))

        assert verdict.allowed is True
        assert verdict.state is DecisionState.CLONE_SUCCEEDED
        assert (TARGET, "team/app", "v1") in fake_registry.manifests

    @pytest.mark.anyio
    async def test_already_replicated_image_is_not_cloned(
        self, fake_registry, make_client
    ) -> None:
        fake_registry.add_manifest(TARGET, "team/app", "v1")
        engine = AdmissionDecisionEngine(make_client(target_registry=TARGET))

        verdict = await engine.decide(admission_request(pod(f"{SOURCE}/team/app:v1")))

        assert verdict.allowed is True
        assert verdict.state is DecisionState.ALL_EXIST
        assert fake_registry.requests_to(TARGET, "PUT") == []

    @pytest.mark.anyio
    async def test_push_failure_denies_with_push_error(self, fake_registry, make_client) -> None:
        fake_registry.add_manifest(SOURCE, "team/app", "v1")
        fake_registry.add_manifest(SOURCE, "team/db", "v1")
        fake_registry.push_status = 403
        engine = AdmissionDecisionEngine(make_client(target_registry=TARGET))

        verdict = await engine.decide(
            admission_request(pod(f"{SOURCE}/team/app:v1", f"{SOURCE}/team/db:v1"))
        )

        assert verdict.allowed is False
        assert verdict.state is DecisionState.CLONE_FAILED
        assert verdict.denial_message is not None
        lines = verdict.denial_message.splitlines()
        assert lines[0] == "Failed to clone 2 image(s):"
        assert lines[1].startswith(f"  - {SOURCE}/team/app:v1: Failed to push manifest")
        assert lines[2].startswith(f"  - {SOURCE}/team/db:v1: Failed to push manifest")
        assert "403" in lines[1]

    @pytest.mark.anyio
    async def test_unusable_manifest_media_type_denies(self, fake_registry, make_client) -> None:
        body = json.dumps({"schemaVersion": 2, "mediaType": 2}).encode()
        fake_registry.manifests[(SOURCE, "team/app", "v1")] = (body, "")
        engine = AdmissionDecisionEngine(make_client(target_registry=TARGET))

        verdict = await engine.decide(admission_request(pod(f"{SOURCE}/team/app:v1")))

        assert verdict.allowed is False
        assert verdict.state is DecisionState.CLONE_FAILED
        assert verdict.denial_message is not None
        assert "invalid media type" in verdict.denial_message


class StubClient:
    """Registry client stand-in returning preset results."""

    target_registry = None

    def __init__(self, results: list[ImageValidationResult]) -> None:
        self.results = results

    async def check_images(self, images: list[str]) -> list[ImageValidationResult]:
        return self.results


class ExplodingEngine:
    """Engine stand-in that fails unexpectedly."""

    client = StubClient([])

    async def decide(self, request: AdmissionRequest) -> Any:
        raise RuntimeError("boom")


@pytest.mark.anyio
async def test_soft_errors_on_existing_images_become_warnings() -> None:
    result = ImageValidationResult(
        image="app:v1", exists=True, registry="registry-1.docker.io", error="slow mirror"
    )
    engine = AdmissionDecisionEngine(StubClient([result]))  # type: ignore[arg-type]

    verdict = await engine.decide(admission_request(pod("app:v1")))

    assert verdict.allowed is True
    assert verdict.warnings == ("Image app:v1 exists but had validation issues: slow mirror",)


class TestAdmissionController:
    """Tests for the AdmissionReview boundary."""

    @pytest.mark.anyio
    async def test_response_echoes_uid(self, fake_registry, make_client) -> None:
        fake_registry.add_manifest(SOURCE, "team/app", "v1")
        controller = AdmissionController(AdmissionDecisionEngine(make_client()))
        request = admission_request(pod(f"{SOURCE}/team/app:v1"))

        response = await controller.review(json.dumps(review_document(request)).encode())

        assert response["apiVersion"] == "admission.k8s.io/v1"
        assert response["kind"] == "AdmissionReview"
        assert response["response"] == {"uid": request.uid, "allowed": True}

    @pytest.mark.anyio
    async def test_denied_response_has_403_status(self, make_client) -> None:
        controller = AdmissionController(AdmissionDecisionEngine(make_client()))
        request = admission_request(pod(f"{SOURCE}/team/app:v9"))

        response = await controller.review(review_document(request))

        assert response["response"]["allowed"] is False
        assert response["response"]["uid"] == request.uid
        assert response["response"]["status"]["code"] == 403
        assert f"{SOURCE}/team/app:v9" in response["response"]["status"]["message"]

    @pytest.mark.anyio
    async def test_unexpected_error_fails_open(self) -> None:
        controller = AdmissionController(ExplodingEngine())  # type: ignore[arg-type]
        request = admission_request(pod("app:v1"))

        response = await controller.review(review_document(request))

        assert response["response"]["uid"] == request.uid
        assert response["response"]["allowed"] is True
        assert response["response"]["warnings"] == ["Webhook error: boom"]

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "document",
        [
            b"not json",
            b"[]",
            {"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview"},
            {"request": {"uid": ""}},
        ],
    )
    async def test_invalid_review_raises(self, make_client, document: Any) -> None:
        controller = AdmissionController(AdmissionDecisionEngine(make_client()))
        with pytest.raises(InvalidAdmissionReviewError):
            await controller.review(document)


def test_parse_admission_review_accepts_aliases() -> None:
    review = parse_admission_review(
        {"request": {"uid": "abc", "subResource": "status", "operation": "UPDATE"}}
    )
    assert review.request.sub_resource == "status"
    assert review.request.object_name == "unknown"
