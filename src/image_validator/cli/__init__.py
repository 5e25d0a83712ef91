"""Command-line interface for the image validator.

Exit Codes:
    0: Success
    1: General error (including fatal startup configuration)
    2: Usage error (invalid arguments)
    3: Image missing
    8: Clone failed
"""

from __future__ import annotations

from image_validator.cli.main import cli, main
from image_validator.cli.utils import ExitCode, error, error_exit, success, warn

__all__: list[str] = [
    "ExitCode",
    "cli",
    "error",
    "error_exit",
    "main",
    "success",
    "warn",
]
