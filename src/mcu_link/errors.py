"""
MCU Link Error Hierarchy
========================

This module defines the exception hierarchy for the entire MCU Link package.
All exceptions inherit from McuLinkError, allowing callers to catch all
package-related errors with a single except clause if desired.

Exception Hierarchy
-------------------
McuLinkError (base)
├── CommsError (serial communication)
│   ├── FramingError - malformed escape sequence or stray byte
│   ├── ProtocolError - malformed command/response packet
│   │   └── DeviceProtocolError - device reported a failed command
│   ├── TimeoutError - a timed operation lost the race to its timer
│   └── TransportError - open/read/write failure at the transport
│       └── ConnectionError - cannot open or select a port
└── IllegalStateError - operation invalid in the current state

Timeout Semantics
-----------------
A TimeoutError never means the underlying operation was cancelled. It only
means the caller stopped waiting. Reads that complete later are kept (see
DeviceLink orphan results) so late data is not lost.
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class McuLinkError(Exception):
    """
    Base exception for all MCU Link errors.

    All exceptions in the package inherit from this class, allowing callers
    to catch all package errors with a single except clause:

        try:
            await link.sync()
        except McuLinkError as e:
            print(f"Error: {e}")
    """
    pass


class IllegalStateError(McuLinkError):
    """
    Operation is not valid in the current object state.

    Raised when the REPL command queue consumer or a ReadLoop is started
    while it is already running.
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(McuLinkError):
    """Base exception for serial communication errors."""
    pass


class FramingError(CommsError):
    """
    Malformed data seen by the frame decoder.

    Raised when a byte arrives before a frame start marker, or when an
    escape marker is followed by something other than a valid escape code.
    Only raised when the decoder is configured to reject (the default);
    otherwise the byte is dropped with a warning.
    """

    def __init__(self, message: str, byte: Optional[int] = None,
                 buffer: Optional[bytes] = None):
        self.byte = byte
        self.buffer = buffer
        details = message
        if byte is not None:
            details += f" (byte 0x{byte:02X})"
        if buffer:
            details += f"; read so far: {buffer.hex()}"
        super().__init__(details)


class ProtocolError(CommsError):
    """
    Bootloader protocol violation.

    Raised for packets that cannot be parsed, such as a response shorter
    than the fixed 8-byte header.
    """
    pass


class DeviceProtocolError(ProtocolError):
    """
    The device reported that a command failed.

    The status bytes are the last two bytes of the response data: the
    first is non-zero on failure, the second is the reason code.
    Not retried automatically; the caller decides.

    Attributes:
        status_bytes: Raw status bytes as received (may be empty when the
                      device did not answer with a successful frame).
    """

    # Reason codes reported in the second status byte
    REASONS = {
        0x05: "Received message is invalid",
        0x06: "Failed to act on received message",
        0x07: "Invalid CRC in message",
        0x08: "Flash write error",
        0x09: "Flash read error",
        0x0A: "Flash read length error",
        0x0B: "Deflate error",
    }

    def __init__(self, message: str, status_bytes: bytes = b""):
        self.status_bytes = bytes(status_bytes)
        if len(self.status_bytes) >= 2:
            reason = self.REASONS.get(
                self.status_bytes[1], f"Unknown reason 0x{self.status_bytes[1]:02X}"
            )
            message = f"{message} (result was {self.status_bytes.hex()}: {reason})"
        super().__init__(message)


class TimeoutError(CommsError):
    """
    A timed operation did not complete before its timer fired.

    The underlying operation is not cancelled. Callers may retry, or use
    whatever partial data the operation exposes.
    """
    pass


class TransportError(CommsError):
    """
    Failure at the transport boundary.

    Raised when reading or writing the serial connection fails, or when a
    reader/writer lock is already held by another consumer.
    """
    pass


class ConnectionError(TransportError):
    """
    Cannot establish or maintain connection with the device.

    Raised when a serial port cannot be opened, is busy, or no port
    has been selected.
    """
    pass
