"""
CLI Error Handling
==================

Maps exceptions to messages and exit codes for the mculink commands.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click

from mcu_link.errors import ConnectionError, McuLinkError, TimeoutError


class ExitCode(IntEnum):
    """Exit codes of the mculink command."""
    SUCCESS = 0
    DEVICE_ERROR = 1     # Connection, protocol or device error
    INVALID_ARGS = 2     # Invalid arguments or missing files
    INTERNAL_ERROR = 3   # Unexpected internal error


# Extra line printed after the message for some device errors
HINTS = {
    TimeoutError: "Is the device connected and in the right mode?",
}


def exit_code_for(error: BaseException) -> ExitCode:
    """Return the exit code the CLI uses for an exception."""
    if isinstance(error, McuLinkError):
        return ExitCode.DEVICE_ERROR
    if isinstance(error, (click.BadParameter, FileNotFoundError, PermissionError)):
        return ExitCode.INVALID_ARGS
    return ExitCode.INTERNAL_ERROR


def handle_cli_exception(
    error: Exception,
    verbose: bool = False,
    error_type: str | None = None
) -> NoReturn:
    """
    Report an exception and exit.

    Connection problems are reported as such whatever the command;
    other device errors get the command's prefix (e.g. "Sync error: ").
    The traceback of an internal error is printed only when verbose.

    Args:
        error: The exception that was raised
        verbose: Print the traceback of internal errors
        error_type: Message prefix naming the failed operation

    Raises:
        SystemExit: Always
    """
    code = exit_code_for(error)

    if isinstance(error, ConnectionError):
        click.echo(f"Connection error: {error}", err=True)
    elif code is ExitCode.DEVICE_ERROR:
        prefix = f"{error_type} error: " if error_type else "Error: "
        click.echo(f"{prefix}{error}", err=True)
        for error_class, hint in HINTS.items():
            if isinstance(error, error_class):
                click.echo(hint, err=True)
    elif code is ExitCode.INVALID_ARGS:
        click.echo(f"Error: {error}", err=True)
    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()

    sys.exit(code)
