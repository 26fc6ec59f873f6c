"""
Transport Capability
====================

This module defines the byte transport used by the bootloader link and the
REPL session, and the pieces that let several consumers share it:

- **Transport**: abstract capability (open/close, control signals,
  read/write raw bytes, open/close/data notifications)
- **SerialTransport**: Transport over a pyserial port
- **MultiReaderTransport**: decorator that fans one transport's input out
  to any number of subscribers
- **EventRegistry**: per-instance observer registry for notifications
- **StreamLock**: exclusive reader/writer ownership

Ownership Rules
---------------
The underlying byte stream has exactly one active reader and one active
writer at a time. A consumer that tries to take a lock already held by
someone else gets a TransportError immediately; it never waits. Locks are
released on every exit path.

With MultiReaderTransport, the only reader of the wrapped transport is
the fan-out pump task. Everyone else reads through a Subscription, which
buffers every chunk received after it was created.

Threading
---------
pyserial calls block, so SerialTransport runs them in the event loop's
default executor. Everything else runs on the event loop.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterator, Optional

import serial

from mcu_link.comms.serial import (
    DEFAULT_BAUD_RATE,
    close_serial_port,
    open_serial_port,
)
from mcu_link.errors import ConnectionError, TransportError

# Configure module logger
logger = logging.getLogger(__name__)


class TransportEvent(str, Enum):
    """Notifications emitted by a transport."""

    OPEN = "open"
    CLOSE = "close"
    DATA = "data"


# =============================================================================
# Observer Registry
# =============================================================================

class EventRegistry:
    """
    Observer registry owned by one object.

    Each transport (and each REPL session) has its own registry, so
    listeners of one connection never see events of another.

    Example:
        events = EventRegistry()
        events.on(TransportEvent.OPEN, lambda detail: print("opened"))
        events.emit(TransportEvent.OPEN)
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[[Any], None]]] = defaultdict(list)

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        """Register a listener."""
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[[Any], None]) -> None:
        """Remove a listener (no-op if not registered)."""
        try:
            self._listeners[event].remove(callback)
        except ValueError:
            pass

    def emit(self, event: str, detail: Any = None) -> None:
        """
        Call every listener of an event.

        A failing listener is logged and does not stop the others.
        """
        for callback in list(self._listeners[event]):
            try:
                callback(detail)
            except Exception:
                logger.exception("Listener for %r failed", event)

    def listener_count(self, event: str) -> int:
        """Number of listeners registered for an event."""
        return len(self._listeners[event])


# =============================================================================
# Exclusive Stream Ownership
# =============================================================================

class StreamLock:
    """
    Exclusive ownership of one side of a byte stream.

    Unlike asyncio.Lock, acquiring a held lock fails instead of waiting.
    """

    def __init__(self, name: str):
        self.name = name
        self._owner: Optional[str] = None

    @property
    def locked(self) -> bool:
        """Return True if someone holds the lock."""
        return self._owner is not None

    @property
    def owner(self) -> Optional[str]:
        """Name of the current holder."""
        return self._owner

    def acquire(self, owner: str) -> None:
        """
        Take the lock.

        Raises:
            TransportError: If the lock is already held.
        """
        if self._owner is not None:
            raise TransportError(
                f"{self.name} already locked by {self._owner}"
            )
        self._owner = owner

    def release(self) -> None:
        """Give the lock back."""
        self._owner = None

    @contextmanager
    def hold(self, owner: str) -> Iterator[None]:
        """Hold the lock for the duration of a with-block."""
        self.acquire(owner)
        try:
            yield
        finally:
            self.release()


# =============================================================================
# Transport Capability
# =============================================================================

class Transport(ABC):
    """
    Abstract byte transport.

    Subclasses implement the raw operations; write() adds the writer lock
    and the abort-and-release behaviour on failure.

    Events:
        open: after the transport was opened
        close: after the transport was closed
        data: (fan-out transports only) for each chunk received
    """

    def __init__(self) -> None:
        self.events = EventRegistry()
        self.reader_lock = StreamLock("reader")
        self.writer_lock = StreamLock("writer")

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Return True if the transport is open."""

    @abstractmethod
    async def open(self, baud_rate: int = DEFAULT_BAUD_RATE) -> None:
        """Open the transport (reopening if already open)."""

    @abstractmethod
    async def close(self) -> None:
        """Close the transport."""

    @abstractmethod
    async def set_signals(
        self,
        dtr: Optional[bool] = None,
        rts: Optional[bool] = None,
        brk: Optional[bool] = None,
    ) -> None:
        """Set control lines. None leaves a line unchanged."""

    @abstractmethod
    async def read(self) -> bytes:
        """
        Read the next chunk of bytes.

        Returns b"" when nothing arrived within the poll interval.

        Raises:
            TransportError: If the transport is closed or the read fails.
        """

    @abstractmethod
    async def _write(self, data: bytes) -> None:
        """Write bytes (called with the writer lock held)."""

    async def _abort_write(self, error: BaseException) -> None:
        """Discard pending output after a failed write."""

    async def write(self, data: bytes, owner: str = "writer") -> None:
        """
        Write bytes to the transport.

        Args:
            data: Bytes to write.
            owner: Name recorded on the writer lock while writing.

        Raises:
            TransportError: If the writer is locked by another consumer or
                            the write fails (the write is aborted first).
        """
        with self.writer_lock.hold(owner):
            try:
                await self._write(data)
            except TransportError:
                raise
            except Exception as e:
                await self._abort_write(e)
                raise TransportError(f"Write failed: {e}") from e


class SerialTransport(Transport):
    """
    Transport over a pyserial port.

    Usage:
        transport = SerialTransport("/dev/ttyUSB0")
        await transport.open(115200)
        await transport.write(b"\\r\\x03\\x03")
        chunk = await transport.read()
        await transport.close()
    """

    # Maximum bytes returned by one read
    READ_SIZE = 4096

    def __init__(self, device: str):
        super().__init__()
        self.device = device
        self.baud_rate = DEFAULT_BAUD_RATE
        self._port: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return self._port is not None and self._port.is_open

    async def _run(self, func, *args):
        """Run a blocking pyserial call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def open(self, baud_rate: int = DEFAULT_BAUD_RATE) -> None:
        if self.is_open:
            await self.close()

        self._port = await self._run(open_serial_port, self.device, baud_rate)
        self.baud_rate = baud_rate
        logger.info("Transport open: %s at %d baud", self.device, baud_rate)
        self.events.emit(TransportEvent.OPEN, self.device)

    async def close(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        await self._run(close_serial_port, port)
        logger.info("Transport closed: %s", self.device)
        self.events.emit(TransportEvent.CLOSE, self.device)

    async def set_signals(
        self,
        dtr: Optional[bool] = None,
        rts: Optional[bool] = None,
        brk: Optional[bool] = None,
    ) -> None:
        if not self.is_open:
            raise ConnectionError(f"Port {self.device} is not open")

        port = self._port
        if dtr is not None:
            port.dtr = dtr
        if rts is not None:
            port.rts = rts
            # usbser.sys only sends the RTS change together with a DTR update
            port.dtr = port.dtr
        if brk is not None:
            port.break_condition = brk

    def _read_blocking(self) -> bytes:
        port = self._port
        if port is None:
            return b""
        return port.read(min(port.in_waiting or 1, self.READ_SIZE))

    async def read(self) -> bytes:
        if not self.is_open:
            raise TransportError(f"Port {self.device} is not open")
        try:
            return await self._run(self._read_blocking)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Read failed on {self.device}: {e}") from e

    def _write_blocking(self, data: bytes) -> None:
        self._port.write(data)
        self._port.flush()

    async def _write(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportError(f"Port {self.device} is not open")
        await self._run(self._write_blocking, data)
        logger.debug("Sent %d bytes: %s", len(data), data.hex())

    async def _abort_write(self, error: BaseException) -> None:
        logger.warning("Aborting write on %s: %s", self.device, error)
        if self.is_open:
            await self._run(self._port.reset_output_buffer)


# =============================================================================
# Multi-Reader Fan-Out
# =============================================================================

class Subscription:
    """
    One consumer's view of a fanned-out byte stream.

    Buffers every chunk received after creation. Iteration ends (and
    read() returns b"") once the subscription is closed or the transport
    closes.
    """

    def __init__(self, owner: "MultiReaderTransport"):
        self._owner = owner
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ended = False

    @property
    def ended(self) -> bool:
        """Return True once no more data will arrive."""
        return self._ended

    def push(self, chunk: bytes) -> None:
        """Deliver a chunk (called by the pump)."""
        if not self._ended:
            self._queue.put_nowait(chunk)

    def end(self) -> None:
        """Mark the end of the stream."""
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(None)

    async def read(self) -> bytes:
        """Wait for the next chunk; b"" at end of stream."""
        if self._ended and self._queue.empty():
            return b""
        chunk = await self._queue.get()
        if chunk is None:
            return b""
        return chunk

    def close(self) -> None:
        """Stop receiving data. The transport itself stays open."""
        self._owner.unsubscribe(self)
        self.end()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk


class MultiReaderTransport(Transport):
    """
    Decorator adding multi-reader fan-out to a transport.

    A single pump task owns the wrapped transport's reader lock and copies
    each chunk to every Subscription. Writes and control signals are
    forwarded unchanged. Open/close notifications of the wrapped transport
    are re-emitted; a data event is emitted for every chunk.

    Usage:
        transport = MultiReaderTransport(SerialTransport("/dev/ttyUSB0"))
        await transport.open()
        subscription = transport.subscribe()
        async for chunk in subscription:
            ...
    """

    def __init__(self, inner: Transport):
        super().__init__()
        self.inner = inner
        self._subscriptions: list[Subscription] = []
        self._pump: Optional[asyncio.Task] = None
        self._default: Optional[Subscription] = None
        inner.events.on(TransportEvent.OPEN, self._on_inner_open)
        inner.events.on(TransportEvent.CLOSE, self._on_inner_close)

    @property
    def is_open(self) -> bool:
        return self.inner.is_open

    @property
    def pumping(self) -> bool:
        """Return True while the fan-out pump is running."""
        return self._pump is not None and not self._pump.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def open(self, baud_rate: int = DEFAULT_BAUD_RATE) -> None:
        await self.inner.open(baud_rate)

    async def close(self) -> None:
        await self.inner.close()

    async def set_signals(
        self,
        dtr: Optional[bool] = None,
        rts: Optional[bool] = None,
        brk: Optional[bool] = None,
    ) -> None:
        await self.inner.set_signals(dtr=dtr, rts=rts, brk=brk)

    def subscribe(self) -> Subscription:
        """
        Create a new reader of the incoming byte stream.

        The subscription sees every chunk received from now on.
        """
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        if self.inner.is_open and not self.pumping:
            self._start_pump()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription (no-op if already detached)."""
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    async def read(self) -> bytes:
        """Read through a private default subscription."""
        if self._default is None or self._default.ended:
            self._default = self.subscribe()
        return await self._default.read()

    async def _write(self, data: bytes) -> None:
        await self.inner.write(data)

    # -------------------------------------------------------------------------
    # Pump
    # -------------------------------------------------------------------------

    def _start_pump(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the pump starts on the next subscribe/open
            return
        self._pump = loop.create_task(self._pump_loop())

    async def _pump_loop(self) -> None:
        failed = False
        with self.inner.reader_lock.hold("fan-out"):
            while self.inner.is_open:
                try:
                    chunk = await self.inner.read()
                except TransportError as e:
                    if self.inner.is_open:
                        logger.error("Read failed, stopping fan-out: %s", e)
                    else:
                        logger.debug("Read ended by close: %s", e)
                    failed = True
                    break
                if not chunk:
                    continue
                for subscription in list(self._subscriptions):
                    subscription.push(chunk)
                self.events.emit(TransportEvent.DATA, chunk)

        if failed and self.inner.is_open:
            await self.inner.close()

    def _on_inner_open(self, detail: Any) -> None:
        if not self.pumping:
            self._start_pump()
        self.events.emit(TransportEvent.OPEN, detail)

    def _on_inner_close(self, detail: Any) -> None:
        pump, self._pump = self._pump, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
        for subscription in self._subscriptions:
            subscription.end()
        self._subscriptions.clear()
        self._default = None
        self.events.emit(TransportEvent.CLOSE, detail)
