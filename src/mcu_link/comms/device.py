"""
Bootloader Device Link
======================

DeviceLink drives the ROM (or stub) bootloader of one connected device:
resetting it into download mode, synchronising, and issuing commands.

Read Model
----------
Incoming bytes are split into single bytes and fed through a FrameCodec
(see pipeline.py). At most one frame read is in flight at a time:

- A caller that arrives while a read is pending waits on that same read.
- A timeout only stops the caller from waiting; the read keeps running.
- A frame that arrives after everyone stopped waiting is kept as the
  orphan result and handed (with a warning) to the next caller.

Sync Handshake
--------------
The ROM answers a sync command several times, so sync() sends the sync
packet once and then drains seven more responses with frame-less probes,
ignoring individual failures. A zero value in a response means the stub
is running instead of the ROM.

Usage:
    link = DeviceLink(SerialTransport("/dev/ttyUSB0"))
    await link.open(115200)
    await link.enter_download_mode()
    await link.sync()
    value = await link.read_reg(0x3FF5A000)
"""

import asyncio
import logging
import struct
from collections import deque
from enum import Enum
from typing import Final, Optional, Union

from mcu_link.comms import bootloader
from mcu_link.comms.bootloader import (
    SYNC_PAYLOAD,
    BootloaderCommand,
    ResponsePacket,
    build_command,
    check_response,
    parse_response,
)
from mcu_link.comms.pipeline import Pipeline, PipelineBuilder
from mcu_link.comms.serial import DEFAULT_BAUD_RATE
from mcu_link.comms.slip import FrameCodec
from mcu_link.comms.transport import (
    MultiReaderTransport,
    Subscription,
    Transport,
    TransportEvent,
)
from mcu_link.config import LinkConfig
from mcu_link.errors import TimeoutError, TransportError

# Configure module logger
logger = logging.getLogger(__name__)


class ConnectionMode(str, Enum):
    """How connect() brings the chip into the bootloader."""

    DEFAULT_RESET = "default_reset"
    NO_RESET = "no_reset"
    NO_RESET_NO_SYNC = "no_reset_no_sync"


class DeviceLink:
    """
    Bootloader command link over a transport.

    Attributes:
        transport: The fan-out transport frames are read from
        baud_rate: Baud rate the transport was last opened with
        timeout: Default response timeout for command()
        sync_timeout: Timeout of the first sync probe
        sync_stub_detected: True if the last sync saw a zero value
    """

    # Default read timeout of read_one()
    READ_TIMEOUT: Final[float] = 0.5

    # Follow-up probes after the sync packet
    SYNC_PROBES: Final[int] = 7

    # Download-mode reset timing (seconds)
    RESET_HOLD: Final[float] = 0.1
    RESET_RELEASE: Final[float] = 0.05
    EXIT_HOLD: Final[float] = 0.2

    def __init__(
        self,
        transport: Transport,
        timeout: float = 1.0,
        sync_timeout: float = 0.1,
        error_on_skip: bool = True,
    ):
        if not isinstance(transport, MultiReaderTransport):
            transport = MultiReaderTransport(transport)
        self.transport = transport
        self.baud_rate = DEFAULT_BAUD_RATE
        self.timeout = timeout
        self.sync_timeout = sync_timeout
        self.error_on_skip = error_on_skip
        self.sync_stub_detected = False

        self._subscription: Optional[Subscription] = None
        self._pipeline: Optional[Pipeline] = None
        self._frames: deque[bytes] = deque()
        self._pending: Optional[asyncio.Task] = None
        self._orphan: Optional[asyncio.Task] = None

        transport.events.on(TransportEvent.OPEN, self._on_open)
        transport.events.on(TransportEvent.CLOSE, self._on_close)

    @classmethod
    def from_config(cls, transport: Transport, config: LinkConfig) -> "DeviceLink":
        """Create a link using the timing and framing policy of a LinkConfig."""
        link = cls(
            transport,
            timeout=config.timeout,
            sync_timeout=config.sync_timeout,
            error_on_skip=config.error_on_skip,
        )
        link.baud_rate = config.baud_rate
        return link

    @property
    def opened(self) -> bool:
        return self.transport.is_open

    # =========================================================================
    # Connection
    # =========================================================================

    async def open(self, baud_rate: Optional[int] = None) -> None:
        """Open the transport, closing it first if it is already open."""
        if baud_rate is not None:
            self.baud_rate = baud_rate
        if self.transport.is_open:
            await self.transport.close()
        await self.transport.open(self.baud_rate)

    async def close(self) -> None:
        await self.transport.close()

    async def enter_download_mode(self) -> None:
        """Reset the chip into the serial bootloader using DTR/RTS."""
        logger.info("Resetting into download mode")
        await self.transport.set_signals(dtr=False, rts=True)
        await asyncio.sleep(self.RESET_HOLD)
        await self.transport.set_signals(dtr=True, rts=False)
        await asyncio.sleep(self.RESET_RELEASE)
        await self.transport.set_signals(dtr=False)

    async def exit_download_mode(self) -> None:
        """Hard-reset the chip so it boots the application."""
        logger.info("Leaving download mode (hard reset)")
        await self.transport.set_signals(rts=True)
        await asyncio.sleep(self.EXIT_HOLD)
        await self.transport.set_signals(rts=False)

    def connect(self, mode: Union[ConnectionMode, str] = ConnectionMode.DEFAULT_RESET) -> None:
        """
        Check a connection mode.

        Only the default reset sequence is driven by this link; the
        no-reset modes expect the chip to be in the bootloader already.
        """
        mode = ConnectionMode(mode)
        if mode is not ConnectionMode.DEFAULT_RESET:
            logger.warning(
                "Pre-connection option %r was selected. "
                "Connection may fail if the chip is not in bootloader "
                "or flasher stub mode.", mode.value
            )

    # =========================================================================
    # Frame Reading
    # =========================================================================

    def _attach(self) -> None:
        """Subscribe to the transport and build a fresh frame pipeline."""
        self._detach()
        codec = FrameCodec(error_on_skip=self.error_on_skip)
        self._pipeline = PipelineBuilder().split_characters().frames(codec).build()
        self._subscription = self.transport.subscribe()

    def _detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = None
        self._pipeline = None
        self._frames.clear()

    def _ensure_attached(self) -> None:
        if self._subscription is None or self._subscription.ended:
            self._attach()

    def _on_open(self, detail) -> None:
        self._attach()

    def _on_close(self, detail) -> None:
        self._detach()

    async def _read_frame(self) -> bytes:
        """Wait for the next complete frame."""
        subscription = self._subscription
        pipeline = self._pipeline
        while not self._frames:
            chunk = await subscription.read()
            if not chunk:
                raise TransportError("Transport closed while waiting for a frame")
            self._frames.extend(pipeline.process(chunk))
        return self._frames.popleft()

    def _on_read_done(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug("Frame read failed: %s", error)
            return
        self._orphan = task

    async def read_one(self, timeout: float = READ_TIMEOUT) -> bytes:
        """
        Read one frame payload.

        Args:
            timeout: Seconds to wait.

        Returns:
            Decoded frame payload.

        Raises:
            TimeoutError: If no frame arrived in time. The read stays
                          pending and its result is kept for the next call.
            FramingError: If the framing is invalid (strict policy).
            TransportError: If the transport closed while reading.
        """
        if self._pending is None:
            orphan, self._orphan = self._orphan, None
            if orphan is not None:
                frame = orphan.result()
                logger.warning("Orphaned result found: %s", frame.hex())
                return frame

            self._ensure_attached()
            self._pending = asyncio.ensure_future(self._read_frame())
            self._pending.add_done_callback(self._on_read_done)

        pending = self._pending
        done, _ = await asyncio.wait({pending}, timeout=timeout)
        if not done:
            raise TimeoutError(f"No response within {timeout}s")

        if self._orphan is pending:
            self._orphan = None
        return pending.result()

    def flush_input(self) -> None:
        """Discard frames and partial framing state received so far."""
        self._frames.clear()
        if self._pipeline is not None:
            self._pipeline.reset()

    # =========================================================================
    # Commands
    # =========================================================================

    async def write(self, packet: bytes) -> None:
        """Write framed bytes to the device."""
        self._ensure_attached()
        try:
            await self.transport.write(packet, owner="bootloader")
        except TransportError as e:
            logger.warning("Write failed: %s", e)
            raise

    async def command(
        self,
        opcode: Optional[int] = None,
        payload: bytes = b"",
        checksum: int = 0,
        wait_response: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[ResponsePacket]:
        """
        Send a command and read its response.

        Args:
            opcode: Bootloader opcode, or None to only read a response.
            payload: Command data.
            checksum: Opaque checksum field.
            wait_response: Read a response after writing.
            timeout: Response timeout (default: self.timeout).

        Returns:
            The parsed response, None on a failure status or when not
            waiting for a response.
        """
        if timeout is None:
            timeout = self.timeout

        if opcode is not None:
            packet = build_command(opcode, payload, checksum)
            await self.write(packet)

        if not wait_response:
            return None

        frame = await self.read_one(timeout)
        response = parse_response(frame)
        logger.debug("Response: %r", response)
        return response

    async def check_command(
        self,
        description: str,
        opcode: Optional[int] = None,
        payload: bytes = b"",
        checksum: int = 0,
        timeout: Optional[float] = None,
    ) -> Union[bytes, int]:
        """
        Send a command and validate its status bytes.

        Returns:
            Response data without status bytes when the request carried
            more than two payload bytes, otherwise the response value.

        Raises:
            DeviceProtocolError: If the device reported a failure.
        """
        response = await self.command(opcode, payload, checksum, timeout=timeout)
        return check_response(description, response, payload)

    async def read_reg(self, address: int, timeout: Optional[float] = None) -> int:
        """
        Read a 32-bit register.

        The register value comes back in the value field of the response;
        the data only carries the status bytes.

        Raises:
            DeviceProtocolError: If the device reported a failure.
        """
        response = await self.command(
            BootloaderCommand.ESP_READ_REG,
            struct.pack("<I", address),
            timeout=timeout,
        )
        check_response("read target memory", response)
        return response.value

    async def write_reg(
        self,
        address: int,
        value: int,
        mask: int = 0xFFFFFFFF,
        delay_us: int = 0,
    ) -> Union[bytes, int]:
        """Write a 32-bit register (masked), optionally waiting delay_us."""
        payload = struct.pack("<IIII", address, value, mask, delay_us)
        return await self.check_command(
            "write target memory",
            BootloaderCommand.ESP_WRITE_REG,
            payload,
        )

    @staticmethod
    def data_checksum(data: bytes) -> int:
        """Checksum for data-carrying commands (pass as checksum)."""
        return bootloader.data_checksum(data)

    async def sync(self) -> bool:
        """
        Synchronise with the bootloader.

        Sends the sync packet, then drains the extra responses the ROM
        emits with seven frame-less probes. Probe failures are ignored.

        Returns:
            True if the stub (rather than the ROM) answered.
        """
        try:
            response = await self.command(
                BootloaderCommand.ESP_SYNC,
                SYNC_PAYLOAD,
                timeout=self.sync_timeout,
            )
            self.sync_stub_detected = response is not None and response.value == 0
        except Exception as e:
            logger.debug("Sync probe failed: %s", e)

        for _ in range(self.SYNC_PROBES):
            try:
                response = await self.command()
                self.sync_stub_detected = response is not None and response.value == 0
            except Exception as e:
                logger.debug("Sync follow-up probe failed: %s", e)

        logger.info(
            "Sync finished (%s)",
            "stub detected" if self.sync_stub_detected else "ROM bootloader"
        )
        return self.sync_stub_detected
