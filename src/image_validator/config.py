"""Runtime configuration for the image validator webhook.

Settings are read from environment variables (no prefix) and an optional
``.env`` file. Registry credentials are deliberately not part of these
settings; see ``image_validator.credentials``.

Example:
    >>> settings = get_settings()
    >>> settings.registry_timeout
    240.0
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

MAX_REGISTRY_TIMEOUT_SECONDS = 3600
"""Upper bound for REGISTRY_TIMEOUT, in seconds."""


class WebhookSettings(BaseSettings):
    """Configuration for the admission webhook.

    Environment Variables:
        PORT: HTTPS port for the webhook server
        HEALTH_PORT: Plain-HTTP port for liveness and readiness probes
        TLS_CERT_PATH / TLS_KEY_PATH: Serving certificate and key
        SKIP_TLS: Serve plain HTTP (local development only)
        TARGET_REGISTRY: Replicate missing images into this registry
        REGISTRY_TIMEOUT: Per-request registry deadline in seconds (at most 3600)
        INSECURE_REGISTRIES: Comma-separated hosts reached over plain HTTP
        DEBUG / LOG_LEVEL / JSON_LOGS: Logging behaviour
        REQUIRE_CREDENTIALS: Refuse to start without target credentials
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    # Server
    port: int = Field(default=8443, ge=1, le=65535, description="Webhook HTTPS port")
    health_port: int = Field(default=8080, ge=1, le=65535, description="Health probe port")
    tls_cert_path: Path = Field(
        default=Path("/certs/tls.crt"),
        description="Path to the TLS certificate",
    )
    tls_key_path: Path = Field(
        default=Path("/certs/tls.key"),
        description="Path to the TLS private key",
    )
    skip_tls: bool = Field(default=False, description="Serve without TLS")

    # Registry
    target_registry: str | None = Field(
        default=None,
        description="Registry that missing images are cloned into",
    )
    registry_timeout: float = Field(
        default=240.0,
        gt=0,
        description="Registry request deadline in seconds",
    )
    insecure_registries: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Registries contacted over plain HTTP",
    )
    require_credentials: bool = Field(
        default=False,
        description="Fail startup when the target registry has no credentials",
    )

    # Logging
    debug: bool = Field(default=False, description="Enable debug logging")
    log_level: LogLevel = Field(default="INFO", description="Minimum log level")
    json_logs: bool = Field(default=True, description="Render logs as JSON")

    @field_validator("insecure_registries", mode="before")
    @classmethod
    def split_registries(cls, value: Any) -> Any:
        """Accept a comma-separated string as well as a list."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("registry_timeout")
    @classmethod
    def timeout_in_seconds(cls, value: float) -> float:
        """Reject values that look like milliseconds."""
        if value > MAX_REGISTRY_TIMEOUT_SECONDS:
            raise ValueError(
                f"REGISTRY_TIMEOUT is in seconds and must be at most "
                f"{MAX_REGISTRY_TIMEOUT_SECONDS}; {value:g} looks like milliseconds"
            )
        return value

    @field_validator("target_registry", mode="before")
    @classmethod
    def empty_target_is_none(cls, value: Any) -> Any:
        """Treat an empty TARGET_REGISTRY as unset."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @property
    def normalized_target_registry(self) -> str | None:
        """Target registry host without scheme or trailing slash."""
        if not self.target_registry:
            return None
        return re.sub(r"^https?://", "", self.target_registry.strip()).rstrip("/")

    @property
    def effective_log_level(self) -> str:
        """Log level after applying DEBUG."""
        return "DEBUG" if self.debug else self.log_level


def get_settings(**overrides: Any) -> WebhookSettings:
    """Load settings from the environment.

    Args:
        **overrides: Explicit values taking precedence over the environment.

    Raises:
        pydantic.ValidationError: If a value is invalid.
    """
    return WebhookSettings(**overrides)


__all__ = ["MAX_REGISTRY_TIMEOUT_SECONDS", "LogLevel", "WebhookSettings", "get_settings"]
