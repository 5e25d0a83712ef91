"""HTTP surface of the admission webhook.

Routes:
    POST /validate: AdmissionReview in, AdmissionReview out
    GET /healthz, /health: liveness
    GET /readyz, /ready: readiness

The webhook listens on ``PORT`` with TLS. Kubelet probes are answered by a
second, plain-HTTP application on ``HEALTH_PORT`` that serves only the
liveness and readiness routes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from image_validator import __version__
from image_validator.admission import AdmissionController
from image_validator.errors import InvalidAdmissionReviewError

logger = structlog.get_logger(__name__)

health_router = APIRouter(tags=["health"])


@health_router.get("/healthz")
@health_router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok"}


@health_router.get("/readyz")
@health_router.get("/ready")
async def ready() -> dict[str, str]:
    """Readiness probe."""
    return {"status": "ready"}


def create_app(controller: AdmissionController) -> FastAPI:
    """Create the webhook application around an AdmissionController.

    The controller's registry client is closed when the application shuts
    down.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("webhook_started", target_registry=controller.client.target_registry)
        yield
        await controller.client.aclose()
        logger.info("webhook_stopped")

    app = FastAPI(
        title="image-validator",
        description="Admission webhook that validates container images exist",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.controller = controller
    app.include_router(health_router)

    @app.post("/validate")
    async def validate(request: Request) -> JSONResponse:
        content_type = request.headers.get("content-type", "")
        if content_type.split(";", 1)[0].strip().lower() != "application/json":
            logger.warning("validate_rejected", reason="content_type", content_type=content_type)
            return JSONResponse(
                status_code=415,
                content={"detail": "Content-Type must be application/json"},
            )

        body = await request.body()
        try:
            review = await controller.review(body)
        except InvalidAdmissionReviewError as e:
            logger.warning("validate_rejected", reason="invalid_review", error=str(e))
            return JSONResponse(status_code=400, content={"detail": str(e)})
        return JSONResponse(content=review)

    return app


def create_health_app() -> FastAPI:
    """Create the probe-only application served on the health port."""
    app = FastAPI(
        title="image-validator-health",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.include_router(health_router)
    return app


def build_servers(
    controller: AdmissionController,
    host: str,
    port: int,
    health_port: int | None = None,
    ssl_options: dict[str, str] | None = None,
) -> list[uvicorn.Server]:
    """Build the webhook server and, on a distinct port, the health server.

    Args:
        controller: Controller answering ``/validate``.
        host: Interface both servers bind.
        port: Webhook port.
        health_port: Plain-HTTP probe port. No separate server is built when
            it is None or equal to ``port``.
        ssl_options: ``ssl_certfile``/``ssl_keyfile`` for the webhook only.
    """
    servers = [
        uvicorn.Server(
            uvicorn.Config(
                create_app(controller),
                host=host,
                port=port,
                log_config=None,
                **(ssl_options or {}),
            )
        )
    ]
    if health_port is not None and health_port != port:
        servers.append(
            uvicorn.Server(
                uvicorn.Config(create_health_app(), host=host, port=health_port, log_config=None)
            )
        )
    return servers


async def run_servers(servers: list[uvicorn.Server]) -> None:
    """Run servers together; when one stops, the others are asked to stop too."""
    tasks = [asyncio.create_task(server.serve()) for server in servers]
    await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for server in servers:
        server.should_exit = True
    await asyncio.gather(*tasks)


__all__ = ["build_servers", "create_app", "create_health_app", "health_router", "run_servers"]
