"""Exception hierarchy for the image validator.

Registry failures are raised internally by the protocol client and classified
into an ``ErrorKind`` so that logs, metrics and denial messages can tell a
timeout apart from a DNS failure or an unexpected status code. None of these
exceptions escape ``RegistryClient``'s public methods; they are converted into
result models at that boundary.

Exception Hierarchy:
    ImageValidatorError (base)
    ├── RegistryError                 # Any registry interaction failure
    │   ├── ManifestNotFoundError     # Registry answered 404 for a manifest
    │   ├── AuthenticationError       # Challenge could not be satisfied
    │   ├── RegistryTimeoutError      # Deadline expired
    │   ├── RegistryNetworkError      # DNS/connect/transport failure
    │   ├── RegistryUnavailableError  # Connectivity pre-flight failed
    │   ├── RegistryProtocolError     # Unexpected status code or body
    │   └── CloneError                # Fetch or push step of a clone failed
    ├── InvalidAdmissionReviewError   # Malformed AdmissionReview payload
    └── StartupError                  # Fatal configuration problem

Example:
    >>> from image_validator.errors import RegistryTimeoutError
    >>> raise RegistryTimeoutError("ghcr.io", 240.0)
    Traceback (most recent call last):
        ...
    RegistryTimeoutError: Request to ghcr.io timed out after 240s
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification buckets for registry failures."""

    NOT_FOUND = "not_found"
    AUTH = "auth"
    TIMEOUT = "timeout"
    NETWORK = "network"
    PROTOCOL = "protocol"
    CLONE = "clone"


class ImageValidatorError(Exception):
    """Base exception for all image validator errors."""

    pass


class RegistryError(ImageValidatorError):
    """Base class for failures talking to a container registry.

    Attributes:
        registry: Registry host the failure relates to.
        kind: Classification bucket for logs and metrics.
    """

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, registry: str, message: str) -> None:
        """Initialize RegistryError.

        Args:
            registry: Registry host the failure relates to.
            message: Human-readable description.
        """
        self.registry = registry
        super().__init__(message)


class ManifestNotFoundError(RegistryError):
    """Raised when a registry definitively reports a manifest as absent.

    A 404 during an existence check is a valid outcome, not an error; this
    exception exists for operations that require the manifest, such as
    fetching it for a clone.
    """

    kind = ErrorKind.NOT_FOUND

    def __init__(self, registry: str, repository: str, reference: str) -> None:
        self.repository = repository
        self.reference = reference
        super().__init__(
            registry,
            f"Manifest {repository}:{reference} not found in {registry}",
        )


class AuthenticationError(RegistryError):
    """Raised when a registry rejects the request after the auth challenge.

    Attributes:
        status_code: Final HTTP status returned by the registry.
    """

    kind = ErrorKind.AUTH

    def __init__(self, registry: str, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(registry, message)


class RegistryTimeoutError(RegistryError):
    """Raised when a registry call exceeds its deadline.

    Attributes:
        timeout: The deadline that expired, in seconds.
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, registry: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            registry,
            f"Request to {registry} timed out after {timeout:g}s",
        )


class RegistryNetworkError(RegistryError):
    """Raised on DNS resolution, connection or transport failures."""

    kind = ErrorKind.NETWORK

    def __init__(self, registry: str, reason: str) -> None:
        self.reason = reason
        super().__init__(registry, f"Network error connecting to {registry}: {reason}")


class RegistryUnavailableError(RegistryError):
    """Raised when a connectivity pre-flight finds a registry unreachable.

    Attributes:
        role: Which side of a clone the registry plays ("source" or "target").
    """

    kind = ErrorKind.NETWORK

    def __init__(self, registry: str, role: str, reason: str | None) -> None:
        self.role = role
        super().__init__(
            registry,
            f"Cannot connect to {role} registry {registry}: {reason}. "
            "Please check network connectivity, DNS resolution, and firewall rules.",
        )


class RegistryProtocolError(RegistryError):
    """Raised when a registry answers with an unexpected status or body.

    Attributes:
        status_code: HTTP status code, or None when the body was the problem.
    """

    kind = ErrorKind.PROTOCOL

    def __init__(self, registry: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(registry, message)


class CloneError(RegistryError):
    """Raised when the fetch or push step of a manifest clone fails.

    Attributes:
        step: Which step failed ("fetch" or "push").
        cause: The underlying registry error.
    """

    kind = ErrorKind.CLONE

    def __init__(self, registry: str, step: str, cause: RegistryError) -> None:
        self.step = step
        self.cause = cause
        super().__init__(registry, str(cause))


class InvalidAdmissionReviewError(ImageValidatorError):
    """Raised when an AdmissionReview payload cannot be interpreted.

    The webhook answers these with HTTP 400 instead of allowing the request.
    """

    pass


class StartupError(ImageValidatorError):
    """Raised for configuration problems that must stop the webhook."""

    pass


__all__ = [
    "AuthenticationError",
    "CloneError",
    "ErrorKind",
    "ImageValidatorError",
    "InvalidAdmissionReviewError",
    "ManifestNotFoundError",
    "RegistryError",
    "RegistryNetworkError",
    "RegistryProtocolError",
    "RegistryTimeoutError",
    "RegistryUnavailableError",
    "StartupError",
]
