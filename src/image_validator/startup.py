"""Startup checks and component wiring for the webhook process."""

from __future__ import annotations

import structlog

from image_validator.admission import AdmissionController, AdmissionDecisionEngine
from image_validator.client import RegistryClient
from image_validator.config import WebhookSettings
from image_validator.credentials import RegistryAuthConfig, has_credentials_for, load_credentials
from image_validator.errors import StartupError
from image_validator.metrics import WebhookMetrics

logger = structlog.get_logger(__name__)


def describe_credentials(settings: WebhookSettings, auth_config: RegistryAuthConfig) -> None:
    """Log which registries have credentials and check replication readiness.

    Args:
        settings: Loaded webhook settings.
        auth_config: Resolved registry credentials.

    Raises:
        StartupError: Replication is enabled, the target registry has no
            credentials and ``require_credentials`` is set.
    """
    registries = sorted(auth_config.credentials)
    if registries or auth_config.default_credentials:
        logger.info(
            "registry_credentials_loaded",
            registries=registries,
            default=auth_config.default_credentials is not None,
        )
    else:
        logger.warning("registry_credentials_missing", detail="anonymous access only")

    target = settings.normalized_target_registry
    if not target:
        logger.info("replication_disabled")
        return

    if has_credentials_for(auth_config, target):
        logger.info("replication_enabled", target_registry=target)
        return

    if settings.require_credentials:
        msg = (
            f"No credentials configured for target registry {target} "
            "and REQUIRE_CREDENTIALS is set"
        )
        raise StartupError(msg)
    logger.warning(
        "replication_target_without_credentials",
        target_registry=target,
        detail="pushes will fail unless the registry allows anonymous writes",
    )


def build_controller(
    settings: WebhookSettings,
    auth_config: RegistryAuthConfig | None = None,
    metrics: WebhookMetrics | None = None,
) -> AdmissionController:
    """Wire the registry client, engine and controller from settings.

    Raises:
        StartupError: See ``describe_credentials``.
    """
    if auth_config is None:
        auth_config = load_credentials()
    describe_credentials(settings, auth_config)

    metrics = metrics or WebhookMetrics()
    client = RegistryClient(
        auth_config,
        target_registry=settings.normalized_target_registry,
        timeout=settings.registry_timeout,
        insecure_registries=settings.insecure_registries,
        metrics=metrics,
    )
    engine = AdmissionDecisionEngine(client, metrics)
    return AdmissionController(engine, metrics)


__all__ = ["build_controller", "describe_credentials"]
