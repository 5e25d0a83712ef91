"""Serve command: run the admission webhook.

Example:
    $ TARGET_REGISTRY=mirror.example.com image-validator serve
    $ SKIP_TLS=true image-validator serve --port 8080 --health-port 8081
"""

from __future__ import annotations

import asyncio

import click
import structlog

from image_validator.cli.utils import ExitCode, error_exit
from image_validator.config import get_settings
from image_validator.errors import StartupError
from image_validator.logging import configure_logging
from image_validator.server import build_servers, run_servers
from image_validator.startup import build_controller

logger = structlog.get_logger(__name__)


@click.command(
    name="serve",
    help="Run the admission webhook server and its plain-HTTP health server.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--host", type=str, default="0.0.0.0", help="Interface to bind.")  # noqa: S104
@click.option("--port", type=int, default=None, help="Webhook port (defaults to PORT).")
@click.option(
    "--health-port",
    type=int,
    default=None,
    help="Health probe port (defaults to HEALTH_PORT).",
)
def serve_command(host: str, port: int | None, health_port: int | None) -> None:
    """Start the webhook; exit 1 on a startup configuration error."""
    settings = get_settings()
    configure_logging(settings.effective_log_level, settings.json_logs)

    ssl_options: dict[str, str] = {}
    if not settings.skip_tls:
        for path in (settings.tls_cert_path, settings.tls_key_path):
            if not path.is_file():
                error_exit("TLS material not found", path=str(path))
        ssl_options = {
            "ssl_certfile": str(settings.tls_cert_path),
            "ssl_keyfile": str(settings.tls_key_path),
        }

    try:
        controller = build_controller(settings)
    except StartupError as e:
        error_exit(str(e), exit_code=ExitCode.GENERAL_ERROR)

    port = port or settings.port
    health_port = health_port or settings.health_port
    logger.info(
        "webhook_starting",
        host=host,
        port=port,
        health_port=health_port,
        tls=not settings.skip_tls,
        target_registry=settings.normalized_target_registry,
        registry_timeout=settings.registry_timeout,
    )
    asyncio.run(run_servers(build_servers(controller, host, port, health_port, ssl_options)))


__all__: list[str] = ["serve_command"]
