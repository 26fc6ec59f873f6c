"""
MCU Link Test Configuration
===========================

pytest configuration and fixtures shared by the test suite.

It provides:
- FakeTransport, an in-memory transport that records writes and feeds
  scripted device output back to readers
- the `hardware` marker and the --hardware option (hardware tests are
  skipped unless it is given)
"""

import asyncio
from typing import Callable, Optional

import pytest

from mcu_link.comms.transport import Transport, TransportEvent
from mcu_link.errors import TransportError


# =============================================================================
# Fake Transport
# =============================================================================

Responder = Callable[[bytes], Optional[bytes]]


class FakeTransport(Transport):
    """
    In-memory transport.

    Every write is recorded in `written`; if a responder is set, its
    return value is fed back as device output. Control-signal changes are
    recorded in `signals` as dicts of the lines that changed.
    """

    def __init__(self, responder: Optional[Responder] = None):
        super().__init__()
        self.responder = responder
        self.written: list[bytes] = []
        self.signals: list[dict] = []
        self.baud_rate: Optional[int] = None
        self.open_count = 0
        self.fail_writes = False
        self._open = False
        self._incoming: Optional[asyncio.Queue] = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, baud_rate: int = 115200) -> None:
        if self._open:
            await self.close()
        self._incoming = asyncio.Queue()
        self._open = True
        self.baud_rate = baud_rate
        self.open_count += 1
        self.events.emit(TransportEvent.OPEN, "fake")

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._incoming.put_nowait(b"")
        self.events.emit(TransportEvent.CLOSE, "fake")

    async def set_signals(self, dtr=None, rts=None, brk=None) -> None:
        change = {}
        if dtr is not None:
            change["dtr"] = dtr
        if rts is not None:
            change["rts"] = rts
        if brk is not None:
            change["brk"] = brk
        self.signals.append(change)

    def feed(self, data: bytes) -> None:
        """Make data available to readers as if the device sent it."""
        self._incoming.put_nowait(data)

    async def read(self) -> bytes:
        if not self._open:
            raise TransportError("Fake transport is not open")
        return await self._incoming.get()

    async def _write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("Fake transport is not open")
        if self.fail_writes:
            raise OSError("write failed")
        self.written.append(data)
        if self.responder is not None:
            reply = self.responder(data)
            if reply:
                self.feed(reply)

    def written_text(self) -> str:
        return b"".join(self.written).decode("utf-8")


class RawReplDevice:
    """
    Scripted raw REPL: answers enter-raw with the banner and EOF with
    "OK", the output for the collected lines, and the Ctrl-D trailer.

    Attributes:
        outputs: Maps a script to its output (default: "<script>-done").
        executed: Scripts in the order they were executed.
    """

    BANNER = b"raw REPL; CTRL-B to exit\r\n>"

    def __init__(self, outputs: Optional[dict] = None, banner: bool = True):
        self.outputs = outputs or {}
        self.banner = banner
        self.executed: list[str] = []
        self._script: list[str] = []

    def __call__(self, data: bytes) -> Optional[bytes]:
        if data == b"\r\x01":
            self._script = []
            return self.BANNER if self.banner else None
        if data == b"\x04":
            script = "".join(self._script)
            self._script = []
            self.executed.append(script)
            output = self.outputs.get(script, f"{script}-done")
            return f"OK{output}\x04\x04>".encode("utf-8")
        if data in (b"\r\x02", b"\r\x03\x03"):
            return None
        self._script.append(data.decode("utf-8"))
        return None


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_transport():
    """Fake transport without a responder."""
    return FakeTransport()


@pytest.fixture
def raw_repl_device():
    """Scripted raw REPL device."""
    return RawReplDevice()


# =============================================================================
# Hardware Marker
# =============================================================================

def pytest_addoption(parser):
    parser.addoption(
        "--hardware",
        action="store_true",
        default=False,
        help="Run tests that need a real device on MCULINK_PORT",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "hardware: test requires a real device"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--hardware"):
        return
    skip_hardware = pytest.mark.skip(reason="Hardware test - run with --hardware flag")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)
