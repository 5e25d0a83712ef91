"""Kubernetes admission webhook that validates container images exist.

Before a workload is admitted every image it references is checked against
its registry over the Docker Registry v2 / OCI Distribution API. When a
target registry is configured, missing images are replicated into it and the
workload is admitted only if every copy succeeds.

Example:
    >>> from image_validator import RegistryClient, parse_image_reference
    >>> parse_image_reference("nginx").repository
    'library/nginx'
"""

from __future__ import annotations

__version__ = "0.1.0"

from image_validator.admission import (  # noqa: E402
    AdmissionController,
    AdmissionDecisionEngine,
    extract_images,
)
from image_validator.client import RegistryClient, index_results  # noqa: E402
from image_validator.credentials import RegistryAuthConfig, load_credentials  # noqa: E402
from image_validator.errors import (  # noqa: E402
    ImageValidatorError,
    InvalidAdmissionReviewError,
    RegistryError,
)
from image_validator.reference import ImageReference, parse_image_reference  # noqa: E402
from image_validator.schemas import (  # noqa: E402
    AdmissionVerdict,
    CloneOutcome,
    DecisionState,
    ImageValidationResult,
)
from image_validator.tokens import TokenCache  # noqa: E402

__all__ = [
    "AdmissionController",
    "AdmissionDecisionEngine",
    "AdmissionVerdict",
    "CloneOutcome",
    "DecisionState",
    "ImageReference",
    "ImageValidationResult",
    "ImageValidatorError",
    "InvalidAdmissionReviewError",
    "RegistryAuthConfig",
    "RegistryClient",
    "RegistryError",
    "TokenCache",
    "__version__",
    "extract_images",
    "index_results",
    "load_credentials",
    "parse_image_reference",
]
