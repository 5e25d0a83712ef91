"""CLI utility functions and error handling.

Errors go to stderr as plain text with a non-zero exit code so the commands
can gate CI pipelines; results go to stdout.

Example:
    from image_validator.cli.utils import error_exit, ExitCode

    if not outcome.success:
        error_exit("Clone failed", exit_code=ExitCode.CLONE_ERROR, image=image)
"""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes for CLI commands."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error, including fatal startup configuration."""

    USAGE_ERROR = 2
    """Invalid usage (bad arguments, missing required options)."""

    IMAGE_NOT_FOUND = 3
    """At least one image does not exist or could not be checked."""

    CLONE_ERROR = 8
    """Replicating an image into the target registry failed."""


def _format(prefix: str, message: str, context: dict[str, str | int | bool | None]) -> str:
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    if context_str:
        return f"{prefix}: {message} ({context_str})"
    return f"{prefix}: {message}"


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Image not found", image="nginx:9.9")
        # Output: Error: Image not found (image=nginx:9.9)
    """
    click.echo(_format("Error", message, context), err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    click.echo(_format("Warning", message, context), err=True)


def success(message: str) -> None:
    """Print a result line to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print progress information to stderr."""
    click.echo(message, err=True)


__all__: list[str] = [
    "ExitCode",
    "error",
    "error_exit",
    "info",
    "success",
    "warn",
]
