"""Main entry point for the image-validator CLI.

Commands:
    image-validator serve: Run the admission webhook
    image-validator check: Check that images exist
    image-validator clone: Copy an image manifest into a target registry
    image-validator parse: Show how an image string is interpreted

Example:
    $ image-validator --help
    $ image-validator check nginx:1.25
"""

from __future__ import annotations

import sys

import click

from image_validator import __version__
from image_validator.cli.registry import check_command, clone_command, parse_command
from image_validator.cli.serve import serve_command


@click.group(
    name="image-validator",
    help="image-validator - Admission webhook that validates container images exist.",
    epilog="Use 'image-validator <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=__version__,
    prog_name="image-validator",
    message="%(prog)s %(version)s",
)
def cli() -> None:
    """Root command group for the image-validator CLI."""


cli.add_command(serve_command)
cli.add_command(check_command)
cli.add_command(clone_command)
cli.add_command(parse_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the image-validator CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
