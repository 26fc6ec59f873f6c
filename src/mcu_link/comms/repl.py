"""
Interactive REPL Session
========================

ReplSession talks to the line-oriented interpreter running on the device.
Besides plain writes it supports the raw REPL, a machine-readable mode in
which a whole script is sent, terminated with Ctrl-D, and answered with
"OK", the script's output and another Ctrl-D.

Control Sequences
-----------------
    interrupt       CR Ctrl-C Ctrl-C   stop any running program
    enter raw       CR Ctrl-A
    exit raw        CR Ctrl-B          back to the friendly REPL
    enter paste     CR Ctrl-E
    exit paste      CR Ctrl-D
    EOF             Ctrl-D             execute (raw REPL) / soft reset

Raw Execution
-------------
write_raw() runs one batch:

1. Interrupt, exit raw, enter raw and wait briefly for the banner
   ("CTRL-B to exit"). Failure here is only logged.
2. Subscribe to the output, skipping everything up to "OK".
3. Write the lines and EOF.
4. Collect text up to the next Ctrl-D and strip it.
5. Exit the raw REPL (twice).

Execution Queue
---------------
schedule_execution() queues a batch and returns two futures: one resolved
when the batch is dequeued, one with its output (or failure). A single
consumer runs the batches strictly in order, one full raw cycle at a time.

Reconnects
----------
When the transport closes, the read loop stops and the consumer is
cancelled. When it opens again a new pipeline is built, and after
settle_delay the read loop and the consumer start again.

Timeouts
--------
Reads with a timeout return whatever text was received when the time ran
out. A short result means "unknown", not "nothing was printed".
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Final, Optional, Union

from mcu_link.comms.pipeline import Pipeline, PipelineBuilder, ReadLoop
from mcu_link.comms.transport import (
    EventRegistry,
    MultiReaderTransport,
    Subscription,
    Transport,
    TransportEvent,
)
from mcu_link.config import LinkConfig
from mcu_link.errors import IllegalStateError, TimeoutError, TransportError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Control Sequences
# =============================================================================

RAW_REPL: Final[str] = "\r\x01"
FRIENDLY_REPL: Final[str] = "\r\x02"
INTERRUPT: Final[str] = "\r\x03\x03"
SOFT_RESET: Final[str] = "\x04"
EOF: Final[str] = "\x04"
EXIT_PASTE: Final[str] = "\r\x04"
ENTER_PASTE: Final[str] = "\r\x05"

# Acknowledgement preceding raw REPL output
RAW_EXECUTE_OK: Final[str] = "OK"

# End of the banner printed when the raw REPL is entered
RAW_REPL_BANNER: Final[str] = "CTRL-B to exit\r\n"

# Friendly REPL prompt
FRIENDLY_PROMPT: Final[str] = ">>>"


class ReplState(IntEnum):
    """Interpreter mode, as far as the session knows."""

    UNKNOWN = -1
    FRIENDLY_REPL = 0
    RAW_REPL = 1
    PASTE_MODE = 2


class BusyState(IntEnum):
    """Whether a raw execution is in progress."""

    UNKNOWN = -1
    IDLE = 0
    BUSY = 1


# =============================================================================
# Queue Entries and Write Control
# =============================================================================

def _new_future() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


@dataclass
class CommandExecutor:
    """
    One queued raw REPL batch.

    Attributes:
        lines: Text written to the raw REPL, in order
        timeout: Seconds to wait for the batch output
        dequeued: Resolved (None) when the consumer takes the batch
        result: Resolved with the output, or failed with the error
    """

    lines: tuple[str, ...]
    timeout: float
    dequeued: asyncio.Future = field(default_factory=_new_future)
    result: asyncio.Future = field(default_factory=_new_future)


class WriteController:
    """
    Cancellation handle for a multi-part write.

    Cancelling stops the write before its next part; the "last will"
    strings are written instead.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._last_will: tuple[str, ...] = ()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def last_will(self) -> tuple[str, ...]:
        return self._last_will

    def cancel(self, *last_will: str) -> None:
        self._last_will = last_will
        self._cancelled = True


# =============================================================================
# Text Streams
# =============================================================================

class TextStream:
    """
    Text view of the transport input from the moment of creation.

    Wraps a transport subscription and the pipeline decoding it.
    """

    def __init__(self, subscription: Subscription, pipeline: Pipeline):
        self.subscription = subscription
        self.pipeline = pipeline

    async def read(self) -> Optional[list[Any]]:
        """Next decoded items; None at end of stream."""
        chunk = await self.subscription.read()
        if not chunk:
            return None
        return self.pipeline.process(chunk)

    def close(self) -> None:
        self.subscription.close()

    def __aiter__(self):
        return self.pipeline.iterate(self.subscription)


async def _scan(
    stream: TextStream,
    done: Callable[[str], bool],
    timeout: float,
) -> str:
    """Buffer text until done(buffer) or the timeout; always returns the buffer."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    buffer = ""
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError
            items = await asyncio.wait_for(stream.read(), remaining)
            if items is None:
                logger.debug("Stream ended while scanning")
                break
            for item in items:
                buffer += item
                if done(buffer):
                    return buffer
    except asyncio.TimeoutError:
        logger.warning("Read timed out after %.1fs, buffered: %r", timeout, buffer)
    finally:
        stream.close()
    return buffer


async def read_until(stream: TextStream, end: str, timeout: float) -> str:
    """
    Read text until it ends with a given suffix.

    Returns the buffered text, complete or not, when the timeout expires.
    """
    return await _scan(stream, lambda buffer: buffer.endswith(end), timeout)


async def read_until_match(
    stream: TextStream,
    pattern: Union[str, re.Pattern[str]],
    timeout: float,
) -> str:
    """Read text until a regular expression matches somewhere in it."""
    regex = re.compile(pattern)
    return await _scan(stream, lambda buffer: regex.search(buffer) is not None, timeout)


# =============================================================================
# REPL Session
# =============================================================================

class ReplSession:
    """
    Session with the interpreter on one device connection.

    Args:
        transport: Transport to the device (wrapped for fan-out if needed).
        settle_delay: Seconds to wait after a reconnect before restarting
                      the read loop and the execution queue.
        banner_timeout: Seconds to wait for the raw REPL banner.

    Usage:
        session = ReplSession(transport)
        await session.start()
        dequeued, result = await session.schedule_execution(5.0, "print(1+1)")
        print(await result)
    """

    DEFAULT_EXEC_TIMEOUT: Final[float] = 5.0
    READ_TIMEOUT: Final[float] = 10.0
    INTERRUPT_TIMEOUT: Final[float] = 1.0

    def __init__(
        self,
        transport: Transport,
        settle_delay: float = 2.0,
        banner_timeout: float = 2.0,
    ):
        if not isinstance(transport, MultiReaderTransport):
            transport = MultiReaderTransport(transport)
        self.transport = transport
        self.settle_delay = settle_delay
        self.banner_timeout = banner_timeout
        self.state = ReplState.UNKNOWN
        self.busy_state = BusyState.UNKNOWN

        self._observers = EventRegistry()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queue_running = False
        self._consumer: Optional[asyncio.Task] = None
        self._stream: Optional[TextStream] = None
        self._read_loop: Optional[ReadLoop] = None
        self._read_loop_waiters: list[asyncio.Future] = []
        self._restart: Optional[asyncio.TimerHandle] = None
        self._current_write: Optional[WriteController] = None

        transport.events.on(TransportEvent.OPEN, self._on_open)
        transport.events.on(TransportEvent.CLOSE, self._on_close)

    @classmethod
    def from_config(cls, transport: Transport, config: LinkConfig) -> "ReplSession":
        return cls(
            transport,
            settle_delay=config.settle_delay,
            banner_timeout=config.banner_timeout,
        )

    @property
    def connected(self) -> bool:
        return self.transport.is_open

    @property
    def command_queue_running(self) -> bool:
        return self._queue_running

    @property
    def pending_commands(self) -> int:
        """Number of batches waiting in the queue."""
        return self._queue.qsize()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Start the read loop and execution queue now if the transport is
        open; otherwise they start when it opens.
        """
        if self.transport.is_open and self._read_loop is None:
            self._install_stream()
            self._run()

    async def close(self) -> None:
        """Stop the session. The transport is left open."""
        self.transport.events.off(TransportEvent.OPEN, self._on_open)
        self.transport.events.off(TransportEvent.CLOSE, self._on_close)
        self._stop()
        while not self._queue.empty():
            executor = self._queue.get_nowait()
            if not executor.result.done():
                executor.result.set_exception(TransportError("REPL session closed"))
        if self._consumer is not None:
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    def _install_stream(self) -> None:
        """Replace the main text stream with a fresh one."""
        if self._stream is not None:
            self._stream.close()
        pipeline = PipelineBuilder().text(character_device=False).build()
        self._stream = TextStream(self.transport.subscribe(), pipeline)

    def _run(self) -> None:
        if self._restart is not None:
            # start() got there before the settle timer
            self._restart.cancel()
            self._restart = None
        if not self.transport.is_open:
            return
        if self._stream is None:
            self._install_stream()
        if self._read_loop is not None:
            self._read_loop.stop()

        logger.debug("Starting REPL read loop")
        self._read_loop = ReadLoop(self._stream, self._on_data, self._on_end)
        self._read_loop.start()
        waiters, self._read_loop_waiters = self._read_loop_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(True)

        if not self._queue_running:
            self._consumer = asyncio.get_running_loop().create_task(
                self.run_command_queue()
            )

    def _stop(self) -> None:
        if self._restart is not None:
            self._restart.cancel()
            self._restart = None
        if self._read_loop is not None:
            self._read_loop.stop()
            self._read_loop = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        self._queue_running = False
        if self._consumer is not None:
            self._consumer.cancel()

    def _on_open(self, detail: Any) -> None:
        logger.info("Device reconnected, restarting REPL read loop")
        self._install_stream()
        loop = asyncio.get_running_loop()
        if self._restart is not None:
            self._restart.cancel()
        self._restart = loop.call_later(self.settle_delay, self._run)

    def _on_close(self, detail: Any) -> None:
        logger.info("Device closed, stopping REPL read loop")
        self._stop()
        self.state = ReplState.UNKNOWN
        self.busy_state = BusyState.UNKNOWN

    async def is_running(self) -> bool:
        """Wait until the read loop is running."""
        if self._read_loop is not None:
            return True
        waiter = asyncio.get_running_loop().create_future()
        self._read_loop_waiters.append(waiter)
        return await waiter

    # =========================================================================
    # Output
    # =========================================================================

    def on_output(self, callback: Callable[[str], None]) -> None:
        """Register a callback for text received by the read loop."""
        self._observers.on("output", callback)

    def _on_data(self, text: str) -> None:
        self._observers.emit("output", text)

    def _on_end(self) -> None:
        logger.debug("REPL read loop ended")

    def _open_text_stream(self, after: Optional[str] = None) -> TextStream:
        """Subscribe to a character stream, optionally starting after a marker."""
        builder = PipelineBuilder().text(character_device=True)
        if after is not None:
            builder.read_after(after)
        return TextStream(self.transport.subscribe(), builder.build())

    async def read_until(self, end: str, timeout: float = READ_TIMEOUT) -> str:
        return await read_until(self._open_text_stream(), end, timeout)

    async def read_until_match(
        self,
        pattern: Union[str, re.Pattern[str]],
        timeout: float = READ_TIMEOUT,
    ) -> str:
        return await read_until_match(self._open_text_stream(), pattern, timeout)

    async def read_from_until(
        self,
        start: str,
        end: str,
        timeout: float = READ_TIMEOUT,
    ) -> str:
        """Read the text following start, up to and including end."""
        return await read_until(self._open_text_stream(after=start), end, timeout)

    # =========================================================================
    # Writing
    # =========================================================================

    async def write(self, *strings: str, controller: Optional[WriteController] = None) -> None:
        """
        Write strings to the device, one after another.

        Pass a WriteController (or use cancel_write()) to stop part-way.

        Raises:
            TransportError: If the writer is busy or the write fails.
        """
        if controller is None:
            controller = WriteController()
        self._current_write = controller
        try:
            for chars in strings:
                if controller.cancelled:
                    logger.warning("Write aborted, sending %d last-will strings",
                                   len(controller.last_will))
                    for will in controller.last_will:
                        await self.transport.write(will.encode("utf-8"), owner="repl")
                    break
                await self.transport.write(chars.encode("utf-8"), owner="repl")
        finally:
            if self._current_write is controller:
                self._current_write = None

    def cancel_write(self, *last_will: str) -> bool:
        """
        Cancel the write in progress, sending last_will (default:
        interrupt) instead of its remaining parts.

        Returns:
            True if a write was in progress.
        """
        if self._current_write is None:
            return False
        self._current_write.cancel(*(last_will or (INTERRUPT,)))
        return True

    # =========================================================================
    # Mode Transitions
    # =========================================================================

    async def interrupt(self, friendly: bool = True) -> Optional[str]:
        """
        Interrupt the running program.

        Args:
            friendly: Wait (briefly) for the friendly prompt.

        Returns:
            Text received up to the prompt when friendly, otherwise None.
        """
        stream = self._open_text_stream() if friendly else None
        try:
            await self.write(INTERRUPT)
        except BaseException:
            if stream is not None:
                stream.close()
            raise

        if stream is None:
            return None
        text = await read_until(stream, FRIENDLY_PROMPT, self.INTERRUPT_TIMEOUT)
        if text.endswith(FRIENDLY_PROMPT):
            self.state = ReplState.FRIENDLY_REPL
            self.busy_state = BusyState.IDLE
        return text

    async def enter_raw_repl(self) -> None:
        await self.write(INTERRUPT, RAW_REPL)
        self.state = ReplState.RAW_REPL

    async def exit_raw_repl(self) -> None:
        await self.write(FRIENDLY_REPL)
        self.state = ReplState.FRIENDLY_REPL

    async def enter_paste(self) -> None:
        await self.write(INTERRUPT, ENTER_PASTE)
        self.state = ReplState.PASTE_MODE

    async def exit_paste(self) -> None:
        await self.write(EXIT_PASTE)
        self.state = ReplState.FRIENDLY_REPL

    async def soft_reset(self) -> None:
        """Soft-reset the interpreter (from the friendly REPL)."""
        await self.write(FRIENDLY_REPL, SOFT_RESET)
        self.state = ReplState.UNKNOWN
        self.busy_state = BusyState.UNKNOWN

    # =========================================================================
    # Raw Execution
    # =========================================================================

    async def _prepare_raw_write(self) -> None:
        banner = self._open_text_stream()
        try:
            await self.interrupt(friendly=False)
            await self.exit_raw_repl()
            await self.enter_raw_repl()
        except BaseException:
            banner.close()
            raise

        text = await read_until(banner, RAW_REPL_BANNER, self.banner_timeout)
        if not text.endswith(RAW_REPL_BANNER):
            raise TimeoutError(f"Raw REPL banner not seen, got {text!r}")

    async def write_raw(self, timeout: float, *lines: str) -> str:
        """
        Execute lines in the raw REPL and return their output.

        Args:
            timeout: Seconds to wait for the output.
            lines: Text to execute.

        Returns:
            Output text without the terminating Ctrl-D (partial when the
            timeout expired).
        """
        self.busy_state = BusyState.BUSY
        try:
            logger.debug("Preparing REPL for raw write")
            try:
                await self._prepare_raw_write()
            except Exception as e:
                logger.warning("Couldn't prepare REPL for raw write: %s", e)

            stream = self._open_text_stream(after=RAW_EXECUTE_OK)
            reading = asyncio.ensure_future(read_until(stream, EOF, timeout))
            try:
                await self.write(*lines, EOF)
            except BaseException:
                reading.cancel()
                stream.close()
                raise

            result = await reading
            if result.endswith(EOF):
                result = result[:-1]
            logger.debug("Raw REPL result: %r", result)

            await self.exit_raw_repl()
            await self.exit_raw_repl()
            return result
        finally:
            self.busy_state = BusyState.IDLE

    async def schedule_execution(self, timeout: float, *lines: str) -> tuple[asyncio.Future, asyncio.Future]:
        """
        Queue a raw REPL batch.

        Waits until the read loop is running, then returns without
        waiting for the batch itself.

        Returns:
            (dequeued, result) futures of the queued CommandExecutor.
        """
        await self.is_running()
        executor = CommandExecutor(lines=tuple(lines), timeout=timeout)
        self._queue.put_nowait(executor)
        return executor.dequeued, executor.result

    async def execute(self, *lines: str, timeout: float = DEFAULT_EXEC_TIMEOUT) -> str:
        """Queue a batch and wait for its output."""
        _, result = await self.schedule_execution(timeout, *lines)
        return await result

    async def run_command_queue(self) -> None:
        """
        Consume the execution queue until the connection closes.

        Raises:
            IllegalStateError: If the queue is already being consumed.
        """
        if self._queue_running:
            raise IllegalStateError("Command queue is already running")
        self._queue_running = True

        while self._queue_running:
            executor = await self._queue.get()
            if not executor.dequeued.done():
                executor.dequeued.set_result(None)
            try:
                output = await self.write_raw(executor.timeout, *executor.lines)
            except asyncio.CancelledError:
                if not executor.result.done():
                    executor.result.set_exception(
                        TransportError("Connection closed during execution")
                    )
                raise
            except Exception as e:
                logger.warning("Command failed: %s", e)
                if not executor.result.done():
                    executor.result.set_exception(e)
            else:
                if not executor.result.done():
                    executor.result.set_result(output)
