"""Registry credential loading and lookup.

Credentials come from the process environment, in the forms a Kubernetes
deployment can provide them:

- ``DOCKER_CONFIG_JSON``: the contents of a ``.dockerconfigjson`` pull secret
- ``REGISTRY_<NAME>_URL`` / ``_USERNAME`` / ``_PASSWORD`` (or ``_TOKEN``)
- ``DEFAULT_REGISTRY_USERNAME`` / ``DEFAULT_REGISTRY_PASSWORD`` (or ``_TOKEN``)
  with an optional ``DEFAULT_REGISTRY_URL``

The registry client only reads the resulting ``RegistryAuthConfig``; it never
mutates it.

Example:
    >>> config = load_credentials({"REGISTRY_GHCR_URL": "ghcr.io",
    ...                            "REGISTRY_GHCR_USERNAME": "bot",
    ...                            "REGISTRY_GHCR_TOKEN": "t0ken"})
    >>> get_credentials_for_registry(config, "ghcr.io").username
    'bot'
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from image_validator.reference import DEFAULT_REGISTRY, normalize_registry_host

logger = structlog.get_logger(__name__)

_REGISTRY_ENV = re.compile(r"^REGISTRY_(.+)_(URL|USERNAME|PASSWORD|TOKEN)$")


class RegistryCredentials(BaseModel):
    """Username and password (or token) for one registry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    registry: str = Field(..., description="Registry host as configured")
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False, description="Password or token")


class RegistryAuthConfig(BaseModel):
    """Resolved credential map keyed by normalized registry host."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    credentials: dict[str, RegistryCredentials] = Field(default_factory=dict)
    default_credentials: RegistryCredentials | None = None


# =============================================================================
# Loading
# =============================================================================


def parse_docker_auth(registry: str, entry: Mapping[str, Any]) -> RegistryCredentials | None:
    """Build credentials from one ``auths`` entry of a Docker config.

    Explicit ``username``/``password`` fields win; otherwise the base64
    ``auth`` field is decoded and split on its first colon.

    Args:
        registry: Registry key of the entry.
        entry: The entry mapping.

    Returns:
        RegistryCredentials, or None when the entry is incomplete.
    """
    username = entry.get("username")
    password = entry.get("password")

    auth = entry.get("auth")
    if auth and not username and not password:
        try:
            decoded = base64.b64decode(auth, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        username, _, password = decoded.partition(":")

    if not username or not password:
        return None
    return RegistryCredentials(registry=registry, username=username, password=password)


def parse_kubernetes_docker_secret(secret_data: str) -> dict[str, Any] | None:
    """Decode the base64 ``.dockerconfigjson`` value of a pull secret.

    Returns:
        The decoded Docker config mapping, or None if it cannot be decoded.
    """
    try:
        decoded = base64.b64decode(secret_data, validate=True).decode("utf-8")
        data = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _load_docker_config(raw: str, credentials: dict[str, RegistryCredentials]) -> None:
    raw = raw.strip()
    if raw.startswith("{"):
        try:
            config = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("docker_config_json_invalid", error=str(e))
            return
    else:
        # Pull secret value copied verbatim (base64 .dockerconfigjson).
        config = parse_kubernetes_docker_secret(raw)
        if config is None:
            logger.error("docker_config_json_invalid", error="neither JSON nor base64 JSON")
            return

    auths = config.get("auths") if isinstance(config, dict) else None
    if not isinstance(auths, dict):
        logger.warning("docker_config_json_without_auths")
        return

    for registry, entry in auths.items():
        if not isinstance(entry, dict):
            continue
        creds = parse_docker_auth(registry, entry)
        if creds is not None:
            credentials[normalize_registry_host(registry)] = creds


def load_credentials(environ: Mapping[str, str] | None = None) -> RegistryAuthConfig:
    """Load registry credentials from environment variables.

    Args:
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        RegistryAuthConfig with per-registry and default credentials.
    """
    env = os.environ if environ is None else environ
    credentials: dict[str, RegistryCredentials] = {}

    docker_config = env.get("DOCKER_CONFIG_JSON")
    if docker_config:
        _load_docker_config(docker_config, credentials)

    names = {m.group(1) for key in env if (m := _REGISTRY_ENV.match(key))}
    for name in sorted(names):
        url = env.get(f"REGISTRY_{name}_URL")
        username = env.get(f"REGISTRY_{name}_USERNAME")
        password = env.get(f"REGISTRY_{name}_PASSWORD") or env.get(f"REGISTRY_{name}_TOKEN")
        if url and username and password:
            credentials[normalize_registry_host(url)] = RegistryCredentials(
                registry=url, username=username, password=password
            )
        else:
            logger.warning("registry_credentials_incomplete", name=name)

    default_credentials = None
    default_username = env.get("DEFAULT_REGISTRY_USERNAME")
    default_password = env.get("DEFAULT_REGISTRY_PASSWORD") or env.get("DEFAULT_REGISTRY_TOKEN")
    if default_username and default_password:
        default_credentials = RegistryCredentials(
            registry=env.get("DEFAULT_REGISTRY_URL") or DEFAULT_REGISTRY,
            username=default_username,
            password=default_password,
        )

    logger.debug(
        "credentials_loaded",
        registries=sorted(credentials),
        has_default=default_credentials is not None,
    )
    return RegistryAuthConfig(credentials=credentials, default_credentials=default_credentials)


# =============================================================================
# Lookup
# =============================================================================


def get_credentials_for_registry(
    config: RegistryAuthConfig, registry: str
) -> RegistryCredentials | None:
    """Resolve credentials for a registry host.

    Lookup order: exact normalized host, a configured parent domain
    (``us.gcr.io`` matches ``gcr.io``, ``evilgcr.io`` does not), then the
    default credentials.
    """
    host = normalize_registry_host(registry)
    if host in config.credentials:
        return config.credentials[host]

    for key, creds in config.credentials.items():
        if host.endswith("." + key):
            return creds

    return config.default_credentials


def has_credentials_for(config: RegistryAuthConfig, registry: str) -> bool:
    """Check whether credentials are configured specifically for a registry."""
    host = normalize_registry_host(registry)
    if host in config.credentials:
        return True
    default = config.default_credentials
    return default is not None and normalize_registry_host(default.registry) == host


__all__ = [
    "RegistryAuthConfig",
    "RegistryCredentials",
    "get_credentials_for_registry",
    "has_credentials_for",
    "load_credentials",
    "parse_docker_auth",
    "parse_kubernetes_docker_secret",
]
