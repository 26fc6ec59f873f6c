"""
Bootloader Command Protocol
===========================

This module builds and parses the fixed-layout packets spoken by the ROM
and stub bootloaders. Packets travel inside frames (see slip.py).

Command Packet (host to device, little-endian)
----------------------------------------------
    ┌────────┬────────┬──────────┬────────────┬────────────┐
    │  Dir   │ Opcode │  Length  │  Checksum  │  Payload   │
    │   00   │   XX   │  u16 LE  │   u32 LE   │  Length B  │
    └────────┴────────┴──────────┴────────────┴────────────┘

Response Packet (device to host, little-endian)
-----------------------------------------------
    ┌────────┬────────┬──────────┬────────────┬──────────────────────┐
    │ Status │ OpEcho │  Length  │   Value    │  Data ... + 2 status │
    │ 01=ok  │   XX   │  u16 LE  │   u32 LE   │                      │
    └────────┴────────┴──────────┴────────────┴──────────────────────┘

The last two bytes of the response data are reserved status bytes
(error flag, reason code). check_response() validates them.

The checksum field is opaque to this layer: callers supply it (0 for
commands that carry no data checksum). data_checksum() computes the
value used by data-carrying commands, but nothing here applies it
implicitly.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Final, Optional, Union

from mcu_link.comms.slip import encode
from mcu_link.errors import DeviceProtocolError, ProtocolError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Direction byte of every request
REQUEST_DIRECTION: Final[int] = 0x00

# Status byte of a successful response
RESPONSE_SUCCESS: Final[int] = 0x01

# Header layouts: dir/status(1) + opcode(1) + length(2) + checksum/value(4)
COMMAND_HEADER: Final[struct.Struct] = struct.Struct("<BBHI")
RESPONSE_HEADER: Final[struct.Struct] = struct.Struct("<BBHI")
HEADER_SIZE: Final[int] = 8

# Number of reserved status bytes at the end of response data
STATUS_BYTES_LENGTH: Final[int] = 2

# Sync payload: 4-byte magic followed by 32 filler bytes
SYNC_MAGIC: Final[bytes] = b"\x07\x07\x12\x20"
SYNC_FILLER: Final[int] = 0x55
SYNC_PAYLOAD: Final[bytes] = SYNC_MAGIC + bytes([SYNC_FILLER]) * 32

# Initial state for data_checksum()
CHECKSUM_MAGIC: Final[int] = 0xEF


# =============================================================================
# Opcodes
# =============================================================================

class BootloaderCommand(IntEnum):
    """
    Bootloader opcodes.

    The first group is understood by every ROM bootloader, the later
    groups only by newer ROMs or by the RAM stub.
    """

    # Supported by every ROM bootloader
    ESP_FLASH_BEGIN = 0x02
    ESP_FLASH_DATA = 0x03
    ESP_FLASH_END = 0x04
    ESP_MEM_BEGIN = 0x05
    ESP_MEM_END = 0x06
    ESP_MEM_DATA = 0x07
    ESP_SYNC = 0x08
    ESP_WRITE_REG = 0x09
    ESP_READ_REG = 0x0A

    # Newer ROMs (or the stub)
    ESP_SPI_SET_PARAMS = 0x0B
    ESP_SPI_ATTACH = 0x0D
    ESP_READ_FLASH_SLOW = 0x0E  # ROM only
    ESP_CHANGE_BAUDRATE = 0x0F
    ESP_FLASH_DEFL_BEGIN = 0x10
    ESP_FLASH_DEFL_DATA = 0x11
    ESP_FLASH_DEFL_END = 0x12
    ESP_SPI_FLASH_MD5 = 0x13

    # Only the newest ROMs
    ESP_GET_SECURITY_INFO = 0x14

    # Stub only
    ESP_ERASE_FLASH = 0xD0
    ESP_ERASE_REGION = 0xD1
    ESP_READ_FLASH = 0xD2
    ESP_RUN_USER_CODE = 0xD3

    # Flash encryption data
    ESP_FLASH_ENCRYPT_DATA = 0xD4


# =============================================================================
# Packet Classes
# =============================================================================

@dataclass
class CommandPacket:
    """
    A request sent to the bootloader.

    Attributes:
        opcode: Bootloader operation
        payload: Command data
        checksum: Caller-supplied 32-bit value (0 unless required)
        direction: Request tag, always 0x00

    Example:
        packet = CommandPacket(BootloaderCommand.ESP_SYNC, SYNC_PAYLOAD)
        wire = packet.to_bytes()
    """

    opcode: int
    payload: bytes = b""
    checksum: int = 0
    direction: int = REQUEST_DIRECTION

    def __post_init__(self) -> None:
        """Validate packet fields after initialization."""
        if not 0 <= self.opcode <= 0xFF:
            raise ValueError(f"Opcode must be 0-255, got {self.opcode}")

        if not 0 <= self.checksum <= 0xFFFFFFFF:
            raise ValueError(f"Checksum must fit in 32 bits, got {self.checksum}")

        if len(self.payload) > 0xFFFF:
            raise ValueError(
                f"Payload too large: {len(self.payload)} bytes, max 65535"
            )

        self.payload = bytes(self.payload)

    @property
    def length(self) -> int:
        """Payload length as carried in the header."""
        return len(self.payload)

    def to_bytes(self) -> bytes:
        """Serialize header + payload (unframed)."""
        header = COMMAND_HEADER.pack(
            self.direction, self.opcode, self.length, self.checksum
        )
        return header + self.payload

    def __repr__(self) -> str:
        try:
            name = BootloaderCommand(self.opcode).name
        except ValueError:
            name = f"0x{self.opcode:02X}"
        return (
            f"CommandPacket(opcode={name}, length={self.length}, "
            f"checksum=0x{self.checksum:08X})"
        )


@dataclass(frozen=True)
class ResponsePacket:
    """
    A successful bootloader response.

    Only constructed when the status byte is 1.

    Attributes:
        status: Status byte (always 1)
        opcode: Echo of the request opcode
        length: Length field from the header
        value: 32-bit value field (e.g. register contents)
        data: Remaining bytes, ending with the two status bytes
    """

    status: int
    opcode: int
    length: int
    value: int
    data: bytes

    @property
    def status_bytes(self) -> bytes:
        """The reserved trailing status bytes of data."""
        return self.data[-STATUS_BYTES_LENGTH:]

    @classmethod
    def from_bytes(cls, frame: bytes) -> Optional["ResponsePacket"]:
        """
        Parse a decoded frame payload.

        Args:
            frame: Frame payload (already unescaped).

        Returns:
            ResponsePacket, or None when the status byte is not 1.

        Raises:
            ProtocolError: If the frame is shorter than the header.
        """
        if len(frame) < HEADER_SIZE:
            raise ProtocolError(
                f"Response too short: {len(frame)} bytes, minimum {HEADER_SIZE}"
            )

        status, opcode, length, value = RESPONSE_HEADER.unpack_from(frame)
        if status != RESPONSE_SUCCESS:
            logger.debug("Ignoring response with status %d", status)
            return None

        return cls(
            status=status,
            opcode=opcode,
            length=length,
            value=value,
            data=bytes(frame[HEADER_SIZE:]),
        )


# =============================================================================
# Packet Functions
# =============================================================================

def build_command(opcode: int, payload: bytes = b"", checksum: int = 0) -> bytes:
    """
    Serialize a command and wrap it in a frame.

    Args:
        opcode: Bootloader opcode.
        payload: Command data.
        checksum: Opaque checksum field.

    Returns:
        Framed bytes ready to write to the transport.
    """
    packet = CommandPacket(opcode, payload, checksum)
    wire = encode(packet.to_bytes())
    logger.debug("Encoded %r: %s", packet, wire.hex())
    return wire


def parse_response(frame: bytes) -> Optional[ResponsePacket]:
    """Parse a decoded frame into a ResponsePacket (None unless status is 1)."""
    return ResponsePacket.from_bytes(frame)


def check_response(
    description: str,
    response: Optional[ResponsePacket],
    request_payload: bytes = b"",
) -> Union[bytes, int]:
    """
    Validate the status bytes of a command result.

    Args:
        description: What the command was doing, for error messages.
        response: Parsed response (None when the device did not succeed).
        request_payload: The payload of the original request.

    Returns:
        The response data without its status bytes when the request
        payload was longer than the status bytes; otherwise the value
        field of the response.

    Raises:
        DeviceProtocolError: If there is no successful response or the
                             first status byte is non-zero.
    """
    if response is None:
        raise DeviceProtocolError(f"Failed to {description}: no successful response")

    if len(response.data) < STATUS_BYTES_LENGTH:
        raise DeviceProtocolError(
            f"Failed to {description}. Only got {len(response.data)} byte status response.",
            response.data,
        )

    status_bytes = response.status_bytes
    if status_bytes[0] != 0:
        raise DeviceProtocolError(f"Failed to {description}", status_bytes)

    if len(request_payload) > STATUS_BYTES_LENGTH:
        return response.data[:-STATUS_BYTES_LENGTH]
    return response.value


def data_checksum(data: bytes, state: int = CHECKSUM_MAGIC) -> int:
    """
    Checksum of a data block as the ROM computes it (XOR of all bytes).

    Args:
        data: Data block.
        state: Initial value (default 0xEF).

    Returns:
        Checksum value for the command checksum field.
    """
    for byte in data:
        state ^= byte
    return state
