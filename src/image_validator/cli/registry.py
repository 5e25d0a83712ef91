"""Registry commands: check, clone and parse.

These commands use the same client, credentials and settings as the webhook,
which makes them useful for diagnosing a denial from a workstation or CI job.

Example:
    $ image-validator check nginx:1.25 ghcr.io/org/app:v1
    $ image-validator clone nginx:1.25 --target mirror.example.com
    $ image-validator parse localhost:5000/app
"""

from __future__ import annotations

import asyncio
import json

import click

from image_validator.cli.utils import ExitCode, error, error_exit, info, success, warn
from image_validator.client import RegistryClient
from image_validator.config import WebhookSettings, get_settings
from image_validator.credentials import load_credentials
from image_validator.reference import parse_image_reference
from image_validator.schemas import CloneOutcome, ImageValidationResult


def make_client(settings: WebhookSettings, target_registry: str | None = None) -> RegistryClient:
    """Build a RegistryClient from settings and environment credentials."""
    return RegistryClient(
        load_credentials(),
        target_registry=target_registry,
        timeout=settings.registry_timeout,
        insecure_registries=settings.insecure_registries,
    )


async def _check(client: RegistryClient, images: list[str]) -> list[ImageValidationResult]:
    async with client:
        return await client.check_images(images)


async def _clone(client: RegistryClient, image: str, target: str) -> CloneOutcome:
    async with client:
        return await client.clone_image(image, target)


@click.command(
    name="check",
    help="""\b
Check that images exist in their registries.

With --target (or TARGET_REGISTRY) the target registry is checked instead,
answering whether the images have already been replicated.

Examples:
    $ image-validator check nginx:1.25
    $ image-validator check app:v1 --target mirror.example.com
""",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.argument("images", nargs=-1, required=True)
@click.option(
    "--target",
    "-t",
    type=str,
    default=None,
    help="Check in this registry instead of each image's own registry.",
)
def check_command(images: tuple[str, ...], target: str | None) -> None:
    """Check image existence; exit 3 if any image is missing."""
    settings = get_settings()
    target = target or settings.normalized_target_registry
    results = asyncio.run(_check(make_client(settings, target), list(images)))

    missing = 0
    for result in results:
        if result.exists:
            success(f"{result.image}: exists in {result.registry}")
            if result.error:
                warn(f"{result.image}: {result.error}")
            continue
        missing += 1
        if result.error:
            error(f"{result.image}: {result.error}", registry=result.registry)
        else:
            error(f"{result.image}: not found", registry=result.registry)

    if missing:
        error_exit(
            f"{missing} of {len(results)} image(s) missing",
            exit_code=ExitCode.IMAGE_NOT_FOUND,
        )


@click.command(
    name="clone",
    help="""\b
Copy an image's manifest into a target registry.

Examples:
    $ image-validator clone nginx:1.25 --target mirror.example.com
""",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.argument("image")
@click.option(
    "--target",
    "-t",
    type=str,
    default=None,
    help="Target registry (defaults to TARGET_REGISTRY).",
)
def clone_command(image: str, target: str | None) -> None:
    """Clone one image; exit 8 on failure."""
    settings = get_settings()
    target = target or settings.normalized_target_registry
    if not target:
        error_exit(
            "No target registry given (use --target or TARGET_REGISTRY)",
            exit_code=ExitCode.USAGE_ERROR,
        )

    info(f"Cloning {image} into {target}")
    outcome = asyncio.run(_clone(make_client(settings, target), image, target))
    if not outcome.success:
        error_exit(
            outcome.error or "Clone failed",
            exit_code=ExitCode.CLONE_ERROR,
            image=image,
            target=target,
        )
    success(f"{image}: cloned to {parse_image_reference(image).retarget(target)}")


@click.command(
    name="parse",
    help="Print how an image string is interpreted, as JSON.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.argument("image")
def parse_command(image: str) -> None:
    """Print the parsed image reference."""
    ref = parse_image_reference(image)
    payload = ref.model_dump()
    payload["reference"] = ref.reference
    success(json.dumps(payload, indent=2))


__all__: list[str] = ["check_command", "clone_command", "make_client", "parse_command"]
