"""
mculink - Device Link Command-Line Interface
============================================

This module implements the command-line interface for talking to a
microcontroller over serial: the ROM bootloader (sync, register reads)
and the interpreter running on the device (raw REPL execution).

Usage Examples
--------------
List available serial ports:
    $ mculink ports

Reset into the bootloader and synchronise:
    $ mculink sync

Read a register through the bootloader:
    $ mculink read-reg 0x3FF5A000

Run code on the device:
    $ mculink exec "print(1 + 1)"
    $ mculink exec --file script.py --timeout 20

Stop a running program and show the prompt:
    $ mculink interrupt

Configuration
-------------
Defaults come from MCULINK_* environment variables (see
mcu_link.config.LinkConfig); command-line options override them.

Exit Codes
----------
0 - Success
1 - Connection, protocol or device error
2 - Invalid arguments or missing files
3 - Internal error
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click

from mcu_link import __version__
from mcu_link.cli.errors import ExitCode, handle_cli_exception
from mcu_link.comms import (
    VALID_BAUD_RATES,
    ConnectionMode,
    DeviceLink,
    ReplSession,
    SerialTransport,
    find_device_port,
    format_port_list,
    list_serial_ports,
)
from mcu_link.config import LinkConfig
from mcu_link.errors import ConnectionError

# Configure logging
logger = logging.getLogger(__name__)


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Holds the LinkConfig (environment defaults with command-line
    overrides) and the verbosity.
    """

    def __init__(self) -> None:
        self.config: LinkConfig = LinkConfig.from_env()
        self.verbose: bool = False

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )

    def resolve_port(self) -> str:
        """
        Return the configured port, or auto-detect one.

        Raises:
            ConnectionError: If no port is configured or detected.
        """
        port = self.config.port or find_device_port()
        if not port:
            raise ConnectionError(
                "No serial port specified and auto-detect failed. "
                "Use --port option or 'mculink ports' to find available ports."
            )
        return port


pass_context = click.make_pass_decorator(Context, ensure=True)


def parse_int(ctx: click.Context, param: click.Parameter, value: str) -> int:
    """Click callback accepting decimal or 0x-prefixed integers."""
    try:
        return int(value, 0)
    except ValueError:
        raise click.BadParameter(f"{value!r} is not an integer")


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help="Serial port device (auto-detect if not specified)",
)
@click.option(
    "-b", "--baud",
    type=click.Choice([str(b) for b in VALID_BAUD_RATES]),
    default=None,
    help="Baud rate (default: 115200)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Bootloader response timeout in seconds (default: 1.0)",
)
@click.version_option(version=__version__, prog_name="mculink")
@pass_context
def main(
    ctx: Context,
    port: Optional[str],
    baud: Optional[str],
    verbose: bool,
    timeout: Optional[float],
) -> None:
    """
    Talk to a microcontroller's bootloader and REPL over serial.

    Use 'mculink ports' to list available serial ports.
    """
    if port is not None:
        ctx.config.port = port
    if baud is not None:
        ctx.config.baud_rate = int(baud)
    if timeout is not None:
        ctx.config.timeout = timeout
    ctx.verbose = verbose
    ctx.setup_logging()


# =============================================================================
# Ports Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed port information",
)
@pass_context
def ports(ctx: Context, detailed: bool) -> None:
    """
    List available serial ports.

    Shows all serial ports detected on the system. Known USB-serial
    bridges are marked with their vendor (e.g., Espressif, FTDI).

    Example:
        mculink ports
        mculink ports --detailed
    """
    port_list = list_serial_ports()

    if not port_list:
        click.echo("No serial ports found.")
        click.echo("\nTips:")
        click.echo("  - Connect the board's USB cable")
        click.echo("  - On Linux, ensure you have permission (dialout group)")
        return

    click.echo("Available serial ports:")
    click.echo(format_port_list(port_list, verbose=detailed))

    auto_port = find_device_port()
    if auto_port:
        click.echo(f"\nSuggested port: {auto_port}")
    else:
        click.echo("\nNo USB-serial adapter auto-detected.")


# =============================================================================
# Bootloader Commands
# =============================================================================

async def _open_link(ctx: Context, no_reset: bool) -> DeviceLink:
    """Open a DeviceLink, reset into download mode and sync."""
    link = DeviceLink(
        SerialTransport(ctx.resolve_port()),
        timeout=ctx.config.timeout,
        sync_timeout=ctx.config.sync_timeout,
        error_on_skip=ctx.config.error_on_skip,
    )
    link.connect(ConnectionMode.NO_RESET if no_reset else ConnectionMode.DEFAULT_RESET)
    await link.open(ctx.config.baud_rate)
    if not no_reset:
        await link.enter_download_mode()
    link.flush_input()
    await link.sync()
    return link


@main.command()
@click.option(
    "--no-reset",
    is_flag=True,
    help="Do not toggle DTR/RTS (chip already in the bootloader)",
)
@pass_context
def sync(ctx: Context, no_reset: bool) -> None:
    """
    Reset into the bootloader and synchronise.

    Reports whether the ROM bootloader or the flasher stub answered,
    then resets the chip back into its application.

    Example:
        mculink sync
        mculink --port /dev/ttyUSB0 sync --no-reset
    """
    async def run() -> bool:
        link = await _open_link(ctx, no_reset)
        try:
            if not no_reset:
                await link.exit_download_mode()
            return link.sync_stub_detected
        finally:
            await link.close()

    try:
        stub = asyncio.run(run())
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose, error_type="Sync")

    click.echo(f"Synchronised with {'flasher stub' if stub else 'ROM bootloader'}")


@main.command("read-reg")
@click.argument("address", callback=parse_int)
@click.option(
    "--no-reset",
    is_flag=True,
    help="Do not toggle DTR/RTS (chip already in the bootloader)",
)
@pass_context
def read_reg(ctx: Context, address: int, no_reset: bool) -> None:
    """
    Read a 32-bit register through the bootloader.

    ADDRESS is the register address (decimal or 0x-prefixed hex).

    Example:
        mculink read-reg 0x3FF5A000
    """
    async def run() -> int:
        link = await _open_link(ctx, no_reset)
        try:
            value = await link.read_reg(address)
            if not no_reset:
                await link.exit_download_mode()
            return value
        finally:
            await link.close()

    try:
        value = asyncio.run(run())
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose, error_type="Register read")

    click.echo(f"0x{address:08X} = 0x{value:08X}")


# =============================================================================
# REPL Commands
# =============================================================================

async def _open_session(ctx: Context) -> ReplSession:
    """Open the port and start a REPL session on it."""
    transport = SerialTransport(ctx.resolve_port())
    session = ReplSession.from_config(transport, ctx.config)
    await session.transport.open(ctx.config.baud_rate)
    await session.start()
    return session


async def _close_session(session: ReplSession) -> None:
    await session.close()
    await session.transport.close()


@main.command("exec")
@click.argument("code", required=False)
@click.option(
    "--file", "-f", "file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Read the code from a file",
)
@click.option(
    "--timeout", "-t",
    type=float,
    default=None,
    help="Seconds to wait for the output (default: 5.0)",
)
@pass_context
def exec_code(ctx: Context, code: Optional[str], file: Optional[str], timeout: Optional[float]) -> None:
    """
    Execute code through the raw REPL and print its output.

    CODE is the code to run. Use --file to run a script instead.

    Example:
        mculink exec "print(1 + 1)"
        mculink exec --file blink.py --timeout 20
    """
    if (code is None) == (file is None):
        click.echo("Error: Give either CODE or --file.", err=True)
        raise SystemExit(ExitCode.INVALID_ARGS)

    if file is not None:
        try:
            code = Path(file).read_text(encoding="utf-8")
        except (IOError, UnicodeDecodeError) as e:
            click.echo(f"Error reading file: {e}", err=True)
            raise SystemExit(ExitCode.INVALID_ARGS)

    if timeout is None:
        timeout = ctx.config.exec_timeout

    async def run() -> str:
        session = await _open_session(ctx)
        try:
            return await session.execute(code, timeout=timeout)
        finally:
            await _close_session(session)

    try:
        output = asyncio.run(run())
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose, error_type="Execution")

    click.echo(output, nl=not output.endswith("\n"))


@main.command()
@pass_context
def interrupt(ctx: Context) -> None:
    """
    Interrupt the running program and show the REPL prompt.

    Example:
        mculink interrupt
    """
    async def run() -> str:
        session = await _open_session(ctx)
        try:
            return await session.interrupt(friendly=True)
        finally:
            await _close_session(session)

    try:
        text = asyncio.run(run())
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose, error_type="Interrupt")

    if not text:
        click.echo("No response from the device.")
        raise SystemExit(ExitCode.DEVICE_ERROR)
    click.echo(text)


if __name__ == "__main__":
    main()
