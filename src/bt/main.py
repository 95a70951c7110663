"""
Main entry point for the bt command-line interface.

This module sets up the main CLI group, logging and error rendering, and
registers the command modules.
"""

import logging
import os
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

from bt import __version__
from bt.cli import auth
from bt.core.exceptions import BTError
from bt.utils.output import FORMATS, OutputFormatter

# Install rich traceback handler only in development mode
if os.getenv("BT_DEBUG"):
    install(show_locals=True)

# Global console instances
console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool) -> None:
    """Route bt's loggers through rich; DEBUG with --verbose, WARNING otherwise."""
    logger = logging.getLogger("bt")
    logger.handlers.clear()
    handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


@click.group()
@click.version_option(version=__version__, prog_name="bt")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output for debugging.",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(FORMATS, case_sensitive=False),
    default="text",
    help="Output format (default: text).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, output: str) -> None:
    """
    bt - A command-line interface for the Bitbucket Cloud API.

    Examples:
        bt auth login                       # Log in with an API token
        bt auth login --method oauth        # Log in through the browser
        bt auth status                      # Show the active session

    For more information on specific commands, use:
        bt <command> --help
    """
    ctx.ensure_object(dict)
    setup_logging(verbose)

    ctx.obj["verbose"] = verbose
    ctx.obj["output_format"] = output.lower()
    ctx.obj["console"] = console
    ctx.obj["formatter"] = OutputFormatter(output.lower(), console, err_console)


# Register command groups
cli.add_command(auth.auth)


def handle_exception(exc: Exception) -> None:
    """Handle exceptions and display appropriate error messages."""
    if isinstance(exc, BTError):
        err_console.print(f"[red]Error:[/red] {exc}")
        if exc.suggestion:
            err_console.print(f"[yellow]Suggestion:[/yellow] {exc.suggestion}")
        sys.exit(exc.exit_code)
    elif isinstance(exc, click.ClickException):
        # Let Click handle its own exceptions
        exc.show()
        sys.exit(exc.exit_code)
    elif isinstance(exc, click.exceptions.Abort):
        err_console.print("Aborted!")
        sys.exit(1)
    else:
        err_console.print(f"[red]Unexpected error:[/red] {exc}")
        sys.exit(1)


def main() -> None:
    """Main entry point with exception handling."""
    try:
        cli(standalone_mode=False)
    except Exception as exc:
        handle_exception(exc)


if __name__ == "__main__":
    main()
