"""
MCU Link - Host-Side Protocol Layer for Microcontroller Tooling
===============================================================

This package talks to a microcontroller over a serial connection. It
drives the chip's ROM (or RAM stub) bootloader through the framed binary
command protocol, and scripts the interactive interpreter (REPL) running
on the device through its raw, machine-readable mode.

Main Components
---------------
- **comms**: frame codec, bootloader protocol, DeviceLink, ReplSession,
  stream pipeline and transports
- **config**: LinkConfig (defaults and environment overrides)
- **errors**: exception hierarchy
- **cli**: the `mculink` command-line tool

Quick Start
-----------
Synchronise with the bootloader:
    >>> import asyncio
    >>> from mcu_link.comms import DeviceLink, SerialTransport
    >>> async def main():
    ...     link = DeviceLink(SerialTransport("/dev/ttyUSB0"))
    ...     await link.open()
    ...     await link.enter_download_mode()
    ...     return await link.sync()

Or use the command-line tool:
    $ mculink ports
    $ mculink -p /dev/ttyUSB0 sync
    $ mculink -p /dev/ttyUSB0 exec "print(1 + 1)"

Version History
---------------
0.1.0 - Initial release with bootloader link, raw REPL queue and CLI
"""

__version__ = "0.1.0"

# =============================================================================
# Public API Exports
# =============================================================================

from mcu_link.config import LinkConfig
from mcu_link.errors import (
    McuLinkError,
    IllegalStateError,
    CommsError,
    FramingError,
    ProtocolError,
    DeviceProtocolError,
    TimeoutError,
    TransportError,
    ConnectionError,
)

__all__ = [
    "__version__",
    "LinkConfig",
    "McuLinkError",
    "IllegalStateError",
    "CommsError",
    "FramingError",
    "ProtocolError",
    "DeviceProtocolError",
    "TimeoutError",
    "TransportError",
    "ConnectionError",
]
