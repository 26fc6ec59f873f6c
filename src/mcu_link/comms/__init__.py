"""
MCU Communication Module
========================

This module provides the protocol layer for talking to a microcontroller
over a serial connection: the ROM/stub bootloader's framed command
protocol, and the interactive interpreter (REPL) running on the device.

Module Structure
----------------
- **slip**: escape-based frame codec
- **bootloader**: command/response packets, opcodes, status checks
- **device**: DeviceLink (download mode, sync, commands, orphan results)
- **repl**: ReplSession (mode transitions, raw execution, FIFO queue)
- **pipeline**: transform stages, builder and read loop
- **transport**: transport capability, serial transport, multi-reader fan-out
- **serial**: serial port utilities (detection, configuration)

Quick Start
-----------
**Talking to the bootloader**:

    import asyncio
    from mcu_link.comms import DeviceLink, SerialTransport

    async def main():
        link = DeviceLink(SerialTransport('/dev/ttyUSB0'))
        await link.open(115200)
        await link.enter_download_mode()
        stub = await link.sync()
        print(hex(await link.read_reg(0x3FF5A000)))
        await link.exit_download_mode()
        await link.close()

    asyncio.run(main())

**Running code on the device**:

    async def main():
        transport = SerialTransport('/dev/ttyUSB0')
        await transport.open(115200)
        session = ReplSession(transport)
        await session.start()
        print(await session.execute("print(1 + 1)"))

Sharing a Port
--------------
DeviceLink and ReplSession wrap their transport in a MultiReaderTransport
when it is not one already. Pass the same MultiReaderTransport to both to
share a port: each gets its own subscription to the incoming bytes.

Error Handling
--------------
All communication errors inherit from `CommsError`:

- `FramingError`: malformed frame (strict framing policy)
- `ProtocolError` / `DeviceProtocolError`: bad packet / device reported failure
- `TimeoutError`: a timed wait expired (the operation may still finish)
- `TransportError` / `ConnectionError`: port cannot be used

These exceptions are defined in `mcu_link.errors`.

Concurrency
-----------
Everything runs on one asyncio event loop; blocking pyserial calls are
moved to the default executor. The classes are NOT thread-safe.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# Frame codec
from mcu_link.comms.slip import (
    END,
    ESC,
    ESC_END,
    ESC_ESC,
    CodecState,
    FrameCodec,
    encode,
)

# Bootloader protocol
from mcu_link.comms.bootloader import (
    CHECKSUM_MAGIC,
    HEADER_SIZE,
    SYNC_PAYLOAD,
    BootloaderCommand,
    CommandPacket,
    ResponsePacket,
    build_command,
    check_response,
    data_checksum,
    parse_response,
)

# Stream pipeline
from mcu_link.comms.pipeline import (
    CharacterSplitter,
    FrameStage,
    LoggingStage,
    Pipeline,
    PipelineBuilder,
    ProtocolConverter,
    ProtocolType,
    ReadAfterMarker,
    ReadLoop,
    Stage,
)

# Transport
from mcu_link.comms.transport import (
    EventRegistry,
    MultiReaderTransport,
    SerialTransport,
    StreamLock,
    Subscription,
    Transport,
    TransportEvent,
)

# Serial port utilities
from mcu_link.comms.serial import (
    DEFAULT_BAUD_RATE,
    VALID_BAUD_RATES,
    PortInfo,
    close_serial_port,
    find_device_port,
    format_port_list,
    list_serial_ports,
    open_serial_port,
)

# Bootloader link
from mcu_link.comms.device import ConnectionMode, DeviceLink

# REPL session
from mcu_link.comms.repl import (
    BusyState,
    CommandExecutor,
    ReplSession,
    ReplState,
    TextStream,
    WriteController,
    read_until,
    read_until_match,
)

# Public API - what gets exported with "from mcu_link.comms import *"
__all__ = [
    # Frame codec
    "END",
    "ESC",
    "ESC_END",
    "ESC_ESC",
    "CodecState",
    "FrameCodec",
    "encode",
    # Bootloader protocol
    "CHECKSUM_MAGIC",
    "HEADER_SIZE",
    "SYNC_PAYLOAD",
    "BootloaderCommand",
    "CommandPacket",
    "ResponsePacket",
    "build_command",
    "check_response",
    "data_checksum",
    "parse_response",
    # Pipeline
    "CharacterSplitter",
    "FrameStage",
    "LoggingStage",
    "Pipeline",
    "PipelineBuilder",
    "ProtocolConverter",
    "ProtocolType",
    "ReadAfterMarker",
    "ReadLoop",
    "Stage",
    # Transport
    "EventRegistry",
    "MultiReaderTransport",
    "SerialTransport",
    "StreamLock",
    "Subscription",
    "Transport",
    "TransportEvent",
    # Serial
    "DEFAULT_BAUD_RATE",
    "VALID_BAUD_RATES",
    "PortInfo",
    "close_serial_port",
    "find_device_port",
    "format_port_list",
    "list_serial_ports",
    "open_serial_port",
    # Device link
    "ConnectionMode",
    "DeviceLink",
    # REPL
    "BusyState",
    "CommandExecutor",
    "ReplSession",
    "ReplState",
    "TextStream",
    "WriteController",
    "read_until",
    "read_until_match",
]
