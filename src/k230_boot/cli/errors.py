"""
CLI Error Handling
==================

Maps k230_boot exceptions onto consistent messages and exit codes.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click


class ExitCode(IntEnum):
    """Exit codes for k230boot."""
    SUCCESS = 0
    BOOT_ERROR = 1       # Device, transport or protocol failure
    INVALID_ARGS = 2     # Invalid arguments, missing files or a bad boot plan
    INTERNAL_ERROR = 3   # Unexpected internal error


def handle_cli_exception(
    error: Exception,
    verbose: bool = False,
    error_type: str | None = None
) -> NoReturn:
    """
    Report error and exit with the matching exit code.

    Args:
        error: The exception that was raised
        verbose: If True, print full traceback for internal errors
        error_type: Optional prefix for the error message (e.g., "Boot")

    Raises:
        SystemExit: Always exits with an appropriate exit code
    """
    from k230_boot.errors import BootCancelled, K230Error, PlanError

    prefix = f"{error_type} error: " if error_type else "Error: "

    if isinstance(error, PlanError):
        # Nothing was sent to the device; the plan or its inputs are wrong
        click.echo(f"Invalid boot plan: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, BootCancelled):
        click.echo("\nBoot cancelled", err=True)
        sys.exit(ExitCode.BOOT_ERROR)

    elif isinstance(error, K230Error):
        click.echo(f"\n{prefix}{error}", err=True)
        sys.exit(ExitCode.BOOT_ERROR)

    elif isinstance(error, (click.BadParameter, FileNotFoundError, PermissionError, ValueError)):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()
        sys.exit(ExitCode.INTERNAL_ERROR)
