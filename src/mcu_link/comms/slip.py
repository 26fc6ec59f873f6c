"""
Escape-Based Frame Codec
========================

This module implements the byte-stream framing used by the ROM and stub
bootloaders (the SLIP scheme). It turns an arbitrary payload into a
delimited frame and reassembles frames from a stream of single bytes.

Frame Structure
---------------
    ┌──────┬──────────────────────────────┬──────┐
    │ END  │   payload (escaped)          │ END  │
    │  C0  │                              │  C0  │
    └──────┴──────────────────────────────┴──────┘

Escaping rules:
- Payload byte $C0 (END) is sent as $DB $DC
- Payload byte $DB (ESC) is sent as $DB $DD

The payload of a frame therefore never contains an unescaped END or ESC.

Decoder States
--------------
- IDLE: waiting for a start marker; anything else is a framing error
- ACCUMULATING: collecting payload bytes until the next END
- ESCAPING: the previous byte was ESC; exactly one escape code follows

The decoder can be configured to reject bad bytes (raise FramingError,
the default) or drop them with a warning.
"""

import logging
from enum import Enum
from typing import Final, Optional, Union

from mcu_link.errors import FramingError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Framing Constants
# =============================================================================

# Frame start/end marker
END: Final[int] = 0xC0

# Escape marker
ESC: Final[int] = 0xDB

# Escaped END ($DB $DC)
ESC_END: Final[int] = 0xDC

# Escaped ESC ($DB $DD)
ESC_ESC: Final[int] = 0xDD


class CodecState(Enum):
    """Decoder state."""

    IDLE = "idle"
    ACCUMULATING = "accumulating"
    ESCAPING = "escaping"


# =============================================================================
# Encoder
# =============================================================================

def encode(payload: bytes) -> bytes:
    """
    Wrap a payload in a frame.

    Every literal END byte becomes ESC ESC_END and every literal ESC byte
    becomes ESC ESC_ESC. Output keeps input order.

    Args:
        payload: Raw payload bytes.

    Returns:
        Framed bytes, starting and ending with END.

    Example:
        >>> encode(b"\\x01\\xc0\\x02").hex()
        'c001dbdc02c0'
    """
    frame = bytearray([END])
    for byte in payload:
        if byte == ESC:
            frame.extend((ESC, ESC_ESC))
        elif byte == END:
            frame.extend((ESC, ESC_END))
        else:
            frame.append(byte)
    frame.append(END)
    return bytes(frame)


# =============================================================================
# Stateful Decoder
# =============================================================================

class FrameCodec:
    """
    Stateful frame decoder.

    Feed the decoder one byte at a time with decode(); it returns the
    payload when a frame completes and None otherwise. feed() is a
    convenience for whole chunks.

    When disabled, the codec is a pass-through: each chunk is returned
    unchanged and the internal state is cleared.

    Attributes:
        run_once: Stop after the first complete frame.
        error_on_skip: Raise FramingError on bad bytes instead of dropping them.

    Example:
        codec = FrameCodec()
        for byte in b"\\xc0\\x01\\xdb\\xdc\\x02\\xc0":
            frame = codec.decode(byte)
        assert frame == b"\\x01\\xc0\\x02"
    """

    def __init__(
        self,
        run_once: bool = False,
        error_on_skip: bool = True,
        enabled: bool = True,
    ):
        self.run_once = run_once
        self.error_on_skip = error_on_skip
        self._enabled = enabled
        self._buffer: Optional[bytearray] = None
        self._escaping = False
        self._terminated = False

    @property
    def enabled(self) -> bool:
        """Return True if decoding, False if passing chunks through."""
        return self._enabled

    @enabled.setter
    def enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        self.reset()

    @property
    def state(self) -> CodecState:
        """Current decoder state."""
        if self._buffer is None:
            return CodecState.IDLE
        if self._escaping:
            return CodecState.ESCAPING
        return CodecState.ACCUMULATING

    @property
    def terminated(self) -> bool:
        """True once a run_once codec has emitted its frame."""
        return self._terminated

    def reset(self) -> None:
        """Drop any partial frame and return to IDLE."""
        self._buffer = None
        self._escaping = False

    def decode(self, chunk: Union[int, bytes]) -> Optional[bytes]:
        """
        Process one byte (or one pass-through chunk when disabled).

        Args:
            chunk: A single byte value, or a bytes chunk. Chunks are only
                   passed through whole when the codec is disabled;
                   otherwise a one-byte chunk is accepted.

        Returns:
            The completed frame payload, the pass-through chunk, or None.

        Raises:
            FramingError: Byte outside a frame or invalid escape code,
                          when error_on_skip is set.
        """
        if not self._enabled:
            self.reset()
            if isinstance(chunk, int):
                return bytes([chunk])
            return bytes(chunk)

        if self._terminated:
            return None

        if not isinstance(chunk, int):
            if len(chunk) != 1:
                raise ValueError(
                    f"Decoder consumes single bytes, got {len(chunk)} bytes"
                )
            chunk = chunk[0]

        if self._buffer is None:
            if chunk == END:
                # Frame start
                self._buffer = bytearray()
            else:
                self._skip("Header not seen yet", chunk)
            return None

        if self._escaping:
            self._escaping = False
            if chunk == ESC_END:
                self._buffer.append(END)
            elif chunk == ESC_ESC:
                self._buffer.append(ESC)
            else:
                self._skip("Escaping but no char type to escape", chunk)
            return None

        if chunk == ESC:
            self._escaping = True
            return None

        if chunk == END:
            frame = bytes(self._buffer)
            self._buffer = None
            logger.debug("Frame complete: %d bytes: %s", len(frame), frame.hex())
            if self.run_once:
                self._terminated = True
            return frame

        self._buffer.append(chunk)
        return None

    def feed(self, data: bytes) -> list[bytes]:
        """
        Decode a whole chunk of bytes.

        Args:
            data: Raw bytes from the transport.

        Returns:
            List of completed frames (possibly empty).
        """
        if not self._enabled:
            return [self.decode(data)] if data else []

        frames = []
        for byte in data:
            frame = self.decode(byte)
            if frame is not None:
                frames.append(frame)
        return frames

    def _skip(self, reason: str, byte: int) -> None:
        """Reject or drop a byte according to the error_on_skip policy."""
        buffer = bytes(self._buffer) if self._buffer is not None else None
        if self.error_on_skip:
            raise FramingError(reason, byte=byte, buffer=buffer)
        logger.warning("Skipping data. %s: 0x%02X", reason, byte)
