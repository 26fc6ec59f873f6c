"""
Tests for the Bootloader Device Link
====================================

Covers frame reading (single outstanding read, orphan results), commands,
register access, the sync handshake and download-mode signalling. The
device is simulated with FakeTransport.
"""

import asyncio
import logging
import struct
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeTransport
from mcu_link.comms.bootloader import SYNC_PAYLOAD, BootloaderCommand, ResponsePacket
from mcu_link.comms.device import ConnectionMode, DeviceLink
from mcu_link.comms.slip import FrameCodec, encode
from mcu_link.config import LinkConfig
from mcu_link.errors import DeviceProtocolError, FramingError, TimeoutError


def response_frame(opcode: int, value: int = 0, data: bytes = b"\x00\x00", status: int = 1) -> bytes:
    """A framed bootloader response."""
    return encode(struct.pack("<BBHI", status, opcode, len(data), value) + data)


def bootloader(value: int = 0x1234, data: bytes = b"\x00\x00", count: int = 1):
    """Responder answering every command frame `count` times."""
    def respond(packet: bytes):
        frames = FrameCodec().feed(packet)
        if not frames:
            return None
        opcode = frames[0][1]
        return response_frame(opcode, value, data) * count
    return respond


async def open_link(responder=None, **kwargs):
    transport = FakeTransport(responder)
    link = DeviceLink(transport, **kwargs)
    await link.open()
    return link, transport


# =============================================================================
# Frame Reading Tests
# =============================================================================

class TestReadOne:
    """Tests for DeviceLink.read_one()."""

    @pytest.mark.asyncio
    async def test_reads_frame(self):
        link, transport = await open_link()
        transport.feed(encode(b"\x01\xc0\x02"))
        assert await link.read_one(1) == b"\x01\xc0\x02"
        await link.close()

    @pytest.mark.asyncio
    async def test_frames_split_across_chunks(self):
        link, transport = await open_link()
        frame = encode(b"hello")
        transport.feed(frame[:2])
        transport.feed(frame[2:] + encode(b"world"))
        assert await link.read_one(1) == b"hello"
        assert await link.read_one(1) == b"world"
        await link.close()

    @pytest.mark.asyncio
    async def test_concurrent_reads_share_result(self):
        """Two readers waiting on the same read see the same frame."""
        link, transport = await open_link()
        first = asyncio.ensure_future(link.read_one(1))
        second = asyncio.ensure_future(link.read_one(1))
        await asyncio.sleep(0.01)

        transport.feed(encode(b"shared"))

        assert await first == b"shared"
        assert await second == b"shared"
        await link.close()

    @pytest.mark.asyncio
    async def test_timeout_keeps_orphan(self, caplog):
        """A frame arriving after the timeout goes to the next caller."""
        link, transport = await open_link()
        with pytest.raises(TimeoutError):
            await link.read_one(0.05)

        transport.feed(encode(b"late"))
        await asyncio.sleep(0.01)

        with caplog.at_level(logging.WARNING, logger="mcu_link.comms.device"):
            assert await link.read_one(0.05) == b"late"
        assert "Orphaned result" in caplog.text

        # The orphan is consumed exactly once
        with pytest.raises(TimeoutError):
            await link.read_one(0.05)
        await link.close()

    @pytest.mark.asyncio
    async def test_reader_after_timeout_joins_pending_read(self):
        """A caller arriving while the read is still pending waits on it."""
        link, transport = await open_link()
        with pytest.raises(TimeoutError):
            await link.read_one(0.02)

        reading = asyncio.ensure_future(link.read_one(1))
        await asyncio.sleep(0.01)
        transport.feed(encode(b"answer"))
        assert await reading == b"answer"
        await link.close()

    @pytest.mark.asyncio
    async def test_framing_error_propagates(self):
        link, transport = await open_link()
        transport.feed(b"garbage")
        with pytest.raises(FramingError):
            await link.read_one(1)
        await link.close()

    @pytest.mark.asyncio
    async def test_lenient_framing(self):
        link, transport = await open_link(error_on_skip=False)
        transport.feed(b"garbage" + encode(b"ok"))
        assert await link.read_one(1) == b"ok"
        await link.close()


# =============================================================================
# Command Tests
# =============================================================================

class TestCommand:
    """Tests for command(), check_command() and register access."""

    @pytest.mark.asyncio
    async def test_command_round_trip(self):
        link, transport = await open_link(bootloader(value=0xCAFE))
        response = await link.command(BootloaderCommand.ESP_SYNC, SYNC_PAYLOAD)
        assert isinstance(response, ResponsePacket)
        assert response.opcode == BootloaderCommand.ESP_SYNC
        assert response.value == 0xCAFE
        assert transport.written[0][:3] == b"\xc0\x00\x08"
        await link.close()

    @pytest.mark.asyncio
    async def test_probe_writes_nothing(self):
        """command() without an opcode only reads a response."""
        link, transport = await open_link()
        transport.feed(response_frame(0x08, 7))
        response = await link.command()
        assert response.value == 7
        assert transport.written == []
        await link.close()

    @pytest.mark.asyncio
    async def test_no_wait(self):
        link, transport = await open_link()
        assert await link.command(0x0A, b"\x00" * 4, wait_response=False) is None
        assert len(transport.written) == 1
        await link.close()

    @pytest.mark.asyncio
    async def test_failure_status_returns_none(self):
        link, transport = await open_link()
        transport.feed(encode(struct.pack("<BBHI", 0, 0x0A, 2, 0) + b"\x01\x05"))
        assert await link.command() is None
        await link.close()

    @pytest.mark.asyncio
    async def test_command_timeout(self):
        link, _ = await open_link()
        with pytest.raises(TimeoutError):
            await link.command(BootloaderCommand.ESP_READ_REG, b"\x00" * 4, timeout=0.02)
        await link.close()

    @pytest.mark.asyncio
    async def test_read_reg(self):
        link, transport = await open_link(bootloader(value=0x00F01D83))
        assert await link.read_reg(0x3FF5A000) == 0x00F01D83
        packet = FrameCodec().feed(transport.written[0])[0]
        assert packet[1] == BootloaderCommand.ESP_READ_REG
        assert packet[8:] == struct.pack("<I", 0x3FF5A000)
        await link.close()

    @pytest.mark.asyncio
    async def test_read_reg_returns_value_not_data(self):
        """The register is the response value even though the payload is 4 bytes."""
        link, _ = await open_link(bootloader(value=0xDEADBEEF, data=b"\x00\x00"))
        value = await link.read_reg(0x60000000)
        assert isinstance(value, int)
        assert value == 0xDEADBEEF
        await link.close()

    @pytest.mark.asyncio
    async def test_read_reg_failure_status(self):
        link, _ = await open_link(bootloader(data=b"\x01\x05"))
        with pytest.raises(DeviceProtocolError) as exc_info:
            await link.read_reg(0x60000000)
        assert exc_info.value.status_bytes == b"\x01\x05"
        await link.close()

    @pytest.mark.asyncio
    async def test_write_reg_payload(self):
        link, transport = await open_link(bootloader())
        await link.write_reg(0x60000000, 0x1, mask=0xFF, delay_us=10)
        packet = FrameCodec().feed(transport.written[0])[0]
        assert packet[8:] == struct.pack("<IIII", 0x60000000, 1, 0xFF, 10)
        await link.close()

    @pytest.mark.asyncio
    async def test_check_command_failure(self):
        link, _ = await open_link(bootloader(data=b"\x01\x06"))
        with pytest.raises(DeviceProtocolError) as exc_info:
            await link.check_command("erase flash", BootloaderCommand.ESP_ERASE_FLASH)
        assert exc_info.value.status_bytes == b"\x01\x06"
        await link.close()

    @pytest.mark.asyncio
    async def test_check_command_returns_data(self):
        """Long request payloads return the data without status bytes."""
        link, _ = await open_link(bootloader(data=b"\xaa\xbb\x00\x00"))
        result = await link.check_command("read", 0x13, b"\x00" * 16)
        assert result == b"\xaa\xbb"
        await link.close()

    def test_data_checksum(self):
        assert DeviceLink.data_checksum(b"\x10\x20") == 0xEF ^ 0x10 ^ 0x20


# =============================================================================
# Sync Tests
# =============================================================================

class TestSync:
    """Tests for the sync handshake."""

    @pytest.mark.asyncio
    async def test_probe_count_with_failures(self):
        """One sync plus seven probes, whatever the probes do."""
        link = DeviceLink(FakeTransport(), sync_timeout=0.1)
        command = AsyncMock(side_effect=[
            TimeoutError("no answer"),
            ResponsePacket(1, 8, 2, 0, b"\x00\x00"),
            FramingError("bad"),
            RuntimeError("unexpected"),
            None,
            ResponsePacket(1, 8, 2, 0x20120707, b"\x00\x00"),
            TimeoutError("no answer"),
            ResponsePacket(1, 8, 2, 0, b"\x00\x00"),
        ])
        with patch.object(link, "command", command):
            stub = await link.sync()

        assert command.await_count == 8
        first = command.await_args_list[0]
        assert first.args == (BootloaderCommand.ESP_SYNC, SYNC_PAYLOAD)
        assert first.kwargs == {"timeout": 0.1}
        assert all(call.args == () for call in command.await_args_list[1:])
        assert stub is True
        assert link.sync_stub_detected is True

    @pytest.mark.asyncio
    async def test_flag_follows_last_probe(self):
        link = DeviceLink(FakeTransport())
        responses = [ResponsePacket(1, 8, 2, 0, b"\x00\x00")] * 7
        responses.append(None)
        with patch.object(link, "command", AsyncMock(side_effect=responses)):
            assert await link.sync() is False

    @pytest.mark.asyncio
    async def test_rom_sync(self):
        """The ROM answers the sync several times with a non-zero value."""
        link, transport = await open_link(bootloader(value=0x20120707, count=8))
        assert await link.sync() is False
        assert len(transport.written) == 1
        await link.close()

    @pytest.mark.asyncio
    async def test_stub_sync(self):
        link, _ = await open_link(bootloader(value=0, count=8))
        assert await link.sync() is True
        await link.close()


# =============================================================================
# Connection Tests
# =============================================================================

class TestConnection:
    """Tests for opening and download-mode signalling."""

    @pytest.mark.asyncio
    async def test_open_reopens(self):
        link, transport = await open_link()
        await link.open(460800)
        assert transport.open_count == 2
        assert transport.baud_rate == 460800
        assert link.baud_rate == 460800
        assert link.opened
        await link.close()
        assert not link.opened

    @pytest.mark.asyncio
    async def test_reads_after_reopen(self):
        """A new pipeline is attached when the transport reopens."""
        link, transport = await open_link()
        await link.open()
        transport.feed(encode(b"fresh"))
        assert await link.read_one(1) == b"fresh"
        await link.close()

    @pytest.mark.asyncio
    async def test_enter_download_mode(self):
        link, transport = await open_link()
        with patch("mcu_link.comms.device.asyncio.sleep", new=AsyncMock()) as sleep:
            await link.enter_download_mode()
        assert transport.signals == [
            {"dtr": False, "rts": True},
            {"dtr": True, "rts": False},
            {"dtr": False},
        ]
        assert [call.args[0] for call in sleep.await_args_list] == [0.1, 0.05]
        await link.close()

    @pytest.mark.asyncio
    async def test_exit_download_mode(self):
        link, transport = await open_link()
        with patch("mcu_link.comms.device.asyncio.sleep", new=AsyncMock()) as sleep:
            await link.exit_download_mode()
        assert transport.signals == [{"rts": True}, {"rts": False}]
        sleep.assert_awaited_once_with(0.2)
        await link.close()

    def test_connect_no_reset_warns(self, caplog):
        link = DeviceLink(FakeTransport())
        with caplog.at_level(logging.WARNING, logger="mcu_link.comms.device"):
            link.connect(ConnectionMode.NO_RESET)
        assert "no_reset" in caplog.text

    def test_connect_default_is_quiet(self, caplog):
        link = DeviceLink(FakeTransport())
        with caplog.at_level(logging.WARNING, logger="mcu_link.comms.device"):
            link.connect("default_reset")
        assert caplog.text == ""

    def test_from_config(self):
        config = LinkConfig(baud_rate=921600, timeout=3.0, sync_timeout=0.2, error_on_skip=False)
        link = DeviceLink.from_config(FakeTransport(), config)
        assert link.baud_rate == 921600
        assert link.timeout == 3.0
        assert link.sync_timeout == 0.2
        assert link.error_on_skip is False
