"""
Stream Pipeline
===============

Composable transform stages applied to the chunks read from a transport.

A stage takes one chunk and returns zero or more output chunks. A
Pipeline feeds each chunk through its stages in order. Pipelines are
built with PipelineBuilder and are never modified afterwards: when a
connection is re-established the owner builds a new one.

Stages
------
- CharacterSplitter: split a chunk into single items (bytes -> ints,
  str -> one-character strings)
- ProtocolConverter: convert between binary and text, optionally
  splitting the output into characters
- ReadAfterMarker: drop text until a marker has been seen, then pass
  everything after it through
- FrameStage: feed single bytes to a FrameCodec and emit complete frames
- LoggingStage: log every chunk at DEBUG and pass it on

Example:
    pipeline = (
        PipelineBuilder()
        .convert(ProtocolType.BINARY, ProtocolType.TEXT, character_device=True)
        .read_after("OK")
        .build()
    )
    pipeline.process(b"OK42")   # ['4', '2']

ReadLoop consumes an async stream through a pipeline and hands each
item to a callback.
"""

import asyncio
import codecs
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Optional

from mcu_link.comms.slip import FrameCodec
from mcu_link.errors import IllegalStateError

# Configure module logger
logger = logging.getLogger(__name__)


class ProtocolType(Enum):
    """Kind of data flowing through a stage."""

    TEXT = "text"
    BINARY = "binary"


def _to_bytes(chunk: Any) -> bytes:
    """Normalise a binary chunk (bytes-like, single int or list of ints)."""
    if isinstance(chunk, int):
        return bytes([chunk])
    return bytes(chunk)


# =============================================================================
# Stages
# =============================================================================

class Stage(ABC):
    """A single transform step."""

    @abstractmethod
    def process(self, chunk: Any) -> list[Any]:
        """Transform one chunk into zero or more output chunks."""

    def reset(self) -> None:
        """Drop any buffered state."""


class CharacterSplitter(Stage):
    """Split each chunk into its items (ints for bytes, chars for text)."""

    def process(self, chunk: Any) -> list[Any]:
        if isinstance(chunk, int):
            return [chunk]
        return list(chunk)


class ProtocolConverter(Stage):
    """
    Convert chunks between binary and text.

    UTF-8 decoding is incremental, so a multi-byte character split across
    two chunks is emitted once both halves have arrived.

    Args:
        in_type: Type of incoming chunks.
        out_type: Type of outgoing chunks.
        character_device: Emit one item per character (or byte).
    """

    def __init__(
        self,
        in_type: ProtocolType = ProtocolType.BINARY,
        out_type: ProtocolType = ProtocolType.TEXT,
        character_device: bool = False,
    ):
        self.in_type = in_type
        self.out_type = out_type
        self.character_device = character_device
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def process(self, chunk: Any) -> list[Any]:
        if self.in_type is ProtocolType.BINARY:
            chunk = _to_bytes(chunk)
            if self.out_type is ProtocolType.TEXT:
                chunk = self._decoder.decode(chunk)
        elif self.out_type is ProtocolType.BINARY:
            chunk = chunk.encode("utf-8")

        if not chunk:
            return []
        if self.character_device:
            return list(chunk)
        return [chunk]

    def reset(self) -> None:
        self._decoder.reset()


class ReadAfterMarker(Stage):
    """
    Drop text until a marker has been seen, then pass everything through.

    Text is buffered until the marker occurs in it; whatever follows the
    marker in that buffer is emitted, and later chunks pass unchanged.
    Used to skip the echo and acknowledgement that precede the output of
    a command.
    """

    def __init__(self, marker: str):
        self.marker = marker
        self.reading = False
        self._buffer = ""

    def process(self, chunk: Any) -> list[Any]:
        if self.reading:
            return [chunk]

        self._buffer += chunk
        index = self._buffer.find(self.marker)
        if index < 0:
            return []

        self.reading = True
        rest = self._buffer[index + len(self.marker):]
        self._buffer = ""
        return [rest] if rest else []

    def reset(self) -> None:
        self.reading = False
        self._buffer = ""


class FrameStage(Stage):
    """
    Adapt a FrameCodec to the pipeline.

    Expects single byte values (put a CharacterSplitter in front). Whole
    chunks are accepted too and decoded byte by byte. When the codec is
    disabled, chunks pass through unchanged.
    """

    def __init__(self, codec: FrameCodec):
        self.codec = codec

    def process(self, chunk: Any) -> list[Any]:
        if isinstance(chunk, int):
            frame = self.codec.decode(chunk)
            return [frame] if frame is not None else []
        return self.codec.feed(_to_bytes(chunk))

    def reset(self) -> None:
        self.codec.reset()


class LoggingStage(Stage):
    """Log every chunk at DEBUG and pass it on."""

    def __init__(self, label: str = "chunk"):
        self.label = label

    def process(self, chunk: Any) -> list[Any]:
        logger.debug("%s: %r", self.label, chunk)
        return [chunk]


# =============================================================================
# Pipeline
# =============================================================================

class Pipeline:
    """An ordered, fixed sequence of stages."""

    def __init__(self, stages: list[Stage]):
        self._stages = tuple(stages)

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    def process(self, chunk: Any) -> list[Any]:
        """Run one chunk through every stage."""
        items = [chunk]
        for stage in self._stages:
            output: list[Any] = []
            for item in items:
                output.extend(stage.process(item))
            items = output
            if not items:
                break
        return items

    async def iterate(self, source: AsyncIterable[Any]) -> AsyncIterator[Any]:
        """Yield the transformed items of an async source."""
        async for chunk in source:
            for item in self.process(chunk):
                yield item

    def reset(self) -> None:
        """Drop buffered state in every stage."""
        for stage in self._stages:
            stage.reset()


class PipelineBuilder:
    """
    Fluent builder for Pipeline.

    Example:
        pipeline = PipelineBuilder().split_characters().frames(FrameCodec()).build()
    """

    def __init__(self) -> None:
        self._stages: list[Stage] = []

    def add(self, stage: Stage) -> "PipelineBuilder":
        self._stages.append(stage)
        return self

    def split_characters(self) -> "PipelineBuilder":
        return self.add(CharacterSplitter())

    def convert(
        self,
        in_type: ProtocolType,
        out_type: ProtocolType,
        character_device: bool = False,
    ) -> "PipelineBuilder":
        return self.add(ProtocolConverter(in_type, out_type, character_device))

    def text(self, character_device: bool = True) -> "PipelineBuilder":
        """Shortcut for binary-to-text conversion."""
        return self.convert(ProtocolType.BINARY, ProtocolType.TEXT, character_device)

    def read_after(self, marker: str) -> "PipelineBuilder":
        return self.add(ReadAfterMarker(marker))

    def frames(self, codec: FrameCodec) -> "PipelineBuilder":
        return self.add(FrameStage(codec))

    def log(self, label: str = "chunk") -> "PipelineBuilder":
        return self.add(LoggingStage(label))

    def build(self) -> Pipeline:
        return Pipeline(self._stages)


# =============================================================================
# Read Loop
# =============================================================================

class ReadLoop:
    """
    Consume an async stream, calling on_data for every item.

    on_end is called once the stream ends, fails or the loop is stopped.

    Usage:
        loop = ReadLoop(pipeline.iterate(subscription), on_data=print)
        loop.start()
        ...
        loop.stop()
    """

    def __init__(
        self,
        source: AsyncIterable[Any],
        on_data: Optional[Callable[[Any], None]] = None,
        on_end: Optional[Callable[[], None]] = None,
    ):
        self._source = source
        self._on_data = on_data
        self._on_end = on_end
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """
        Start reading in a background task.

        Raises:
            IllegalStateError: If the loop is already reading.
        """
        if self.running:
            raise IllegalStateError("Read loop is already reading")
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Stop reading. The underlying transport stays open."""
        self._stopped = True
        if self.running:
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until the loop has finished."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        try:
            async for value in self._source:
                if self._stopped:
                    break
                if self._on_data is not None:
                    self._on_data(value)
        except Exception as e:
            logger.error("Read loop failed: %s", e)
        finally:
            if self._on_end is not None:
                self._on_end()
