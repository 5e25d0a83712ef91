"""Result and wire models for image validation and admission review.

Registry results (``ImageValidationResult``, ``CloneOutcome``,
``ConnectivityResult``) are produced once per operation and never mutated.
The AdmissionReview models follow ``admission.k8s.io/v1``; only the fields
the decision engine reads are modelled, everything else the API server sends
is ignored.

Example:
    >>> verdict = AdmissionVerdict.deny("abc", "image missing")
    >>> verdict.to_review()["response"]["status"]["code"]
    403
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ADMISSION_API_VERSION = "admission.k8s.io/v1"
ADMISSION_KIND = "AdmissionReview"
DENIED_STATUS_CODE = 403


# =============================================================================
# Registry Results
# =============================================================================


class ImageValidationResult(BaseModel):
    """Outcome of one image existence check.

    Attributes:
        image: Image string as written in the workload.
        exists: Whether the manifest was confirmed to exist.
        registry: Registry that was actually probed.
        error: Failure description when the check could not complete.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str
    exists: bool
    registry: str
    error: str | None = None


class CloneOutcome(BaseModel):
    """Outcome of one manifest clone attempt."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    error: str | None = None


class CloneResult(CloneOutcome):
    """CloneOutcome paired with the image it was attempted for."""

    image: str


class ConnectivityResult(BaseModel):
    """Outcome of a registry reachability probe."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    error: str | None = None


# =============================================================================
# AdmissionReview (admission.k8s.io/v1)
# =============================================================================


class GroupVersionKind(BaseModel):
    """Kind of the object under review."""

    model_config = ConfigDict(extra="ignore")

    group: str = ""
    version: str = ""
    kind: str = ""


class GroupVersionResource(BaseModel):
    """Resource of the object under review."""

    model_config = ConfigDict(extra="ignore")

    group: str = ""
    version: str = ""
    resource: str = ""


class AdmissionRequest(BaseModel):
    """The ``request`` member of an AdmissionReview."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uid: str = Field(..., min_length=1)
    kind: GroupVersionKind = Field(default_factory=GroupVersionKind)
    resource: GroupVersionResource = Field(default_factory=GroupVersionResource)
    sub_resource: str | None = Field(default=None, alias="subResource")
    name: str | None = None
    namespace: str | None = None
    operation: str = ""
    object: dict[str, Any] | None = None

    @property
    def object_name(self) -> str:
        """Name of the object under review, for logging."""
        metadata = (self.object or {}).get("metadata")
        if isinstance(metadata, dict) and metadata.get("name"):
            return str(metadata["name"])
        return self.name or "unknown"


class AdmissionReview(BaseModel):
    """An incoming AdmissionReview document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(default=ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = ADMISSION_KIND
    request: AdmissionRequest


class DecisionState(str, Enum):
    """Terminal state of the admission decision, used for logs and metrics."""

    SKIPPED = "skipped"
    NO_IMAGES = "no_images"
    ALL_EXIST = "all_exist"
    MISSING_NO_TARGET = "missing_no_target"
    CLONE_SUCCEEDED = "clone_succeeded"
    CLONE_FAILED = "clone_failed"
    ERROR = "error"


class AdmissionVerdict(BaseModel):
    """The allow/deny decision for one admission request.

    Attributes:
        uid: Echo of the request uid.
        allowed: Whether the object may be admitted.
        state: Terminal decision state, for logs and metrics only.
        denial_message: Message returned with the 403 status when denied.
        warnings: Warnings surfaced to the client on allow.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: str
    allowed: bool
    state: DecisionState = DecisionState.ALL_EXIST
    denial_message: str | None = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def allow(
        cls,
        uid: str,
        warnings: list[str] | None = None,
        state: DecisionState = DecisionState.ALL_EXIST,
    ) -> AdmissionVerdict:
        """Build an allowing verdict."""
        return cls(uid=uid, allowed=True, state=state, warnings=tuple(warnings or ()))

    @classmethod
    def deny(
        cls,
        uid: str,
        message: str,
        state: DecisionState = DecisionState.MISSING_NO_TARGET,
    ) -> AdmissionVerdict:
        """Build a denying verdict carrying a 403 status message."""
        return cls(uid=uid, allowed=False, state=state, denial_message=message)

    def to_review(self) -> dict[str, Any]:
        """Render as an AdmissionReview response document."""
        response: dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if not self.allowed:
            response["status"] = {
                "code": DENIED_STATUS_CODE,
                "message": self.denial_message or "",
            }
        if self.warnings:
            response["warnings"] = list(self.warnings)
        return {
            "apiVersion": ADMISSION_API_VERSION,
            "kind": ADMISSION_KIND,
            "response": response,
        }


__all__ = [
    "ADMISSION_API_VERSION",
    "ADMISSION_KIND",
    "AdmissionRequest",
    "AdmissionReview",
    "AdmissionVerdict",
    "CloneOutcome",
    "CloneResult",
    "ConnectivityResult",
    "DecisionState",
    "GroupVersionKind",
    "GroupVersionResource",
    "ImageValidationResult",
]
