"""
Tests for the Bootloader Command Protocol
=========================================

Covers packet serialization, the framed sync command, response parsing,
status-byte validation and the data checksum.
"""

import struct

import pytest

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
from mcu_link.comms.slip import FrameCodec
from mcu_link.errors import DeviceProtocolError, ProtocolError


def make_response(opcode=0x08, value=0, data=b"\x00\x00", status=1) -> bytes:
    """Build an (unframed) response payload."""
    return struct.pack("<BBHI", status, opcode, len(data), value) + data


# =============================================================================
# Opcode Tests
# =============================================================================

class TestBootloaderCommand:
    """Tests for the opcode enumeration."""

    def test_rom_opcodes(self):
        """Opcodes understood by every ROM."""
        assert BootloaderCommand.ESP_FLASH_BEGIN == 0x02
        assert BootloaderCommand.ESP_SYNC == 0x08
        assert BootloaderCommand.ESP_WRITE_REG == 0x09
        assert BootloaderCommand.ESP_READ_REG == 0x0A

    def test_stub_opcodes(self):
        """Stub-only opcodes."""
        assert BootloaderCommand.ESP_ERASE_FLASH == 0xD0
        assert BootloaderCommand.ESP_RUN_USER_CODE == 0xD3


# =============================================================================
# Command Packet Tests
# =============================================================================

class TestCommandPacket:
    """Tests for CommandPacket serialization."""

    def test_length_matches_payload(self):
        """length always equals the payload size."""
        packet = CommandPacket(BootloaderCommand.ESP_READ_REG, b"\x00\x10\x00\x60")
        assert packet.length == 4

    def test_header_layout(self):
        """dir, opcode, u16 length, u32 checksum, little-endian."""
        packet = CommandPacket(0x0A, b"\xaa\xbb", checksum=0x12345678)
        assert packet.to_bytes() == bytes.fromhex("000a020078563412aabb")

    def test_invalid_opcode(self):
        """Opcodes must fit in a byte."""
        with pytest.raises(ValueError):
            CommandPacket(0x100)

    def test_invalid_checksum(self):
        """Checksum must fit in 32 bits."""
        with pytest.raises(ValueError):
            CommandPacket(0x08, checksum=1 << 32)

    def test_repr_uses_opcode_name(self):
        """repr shows the opcode name for known opcodes."""
        assert "ESP_SYNC" in repr(CommandPacket(BootloaderCommand.ESP_SYNC))


class TestBuildCommand:
    """Tests for build_command()."""

    def test_sync_command_literal(self):
        """The canonical sync command frame."""
        expected = bytes.fromhex(
            "c0" "00" "08" "2400" "00000000" "07071220" + "55" * 32 + "c0"
        )
        assert build_command(BootloaderCommand.ESP_SYNC, SYNC_PAYLOAD, 0) == expected

    def test_sync_payload(self):
        """Sync payload is the magic followed by 32 filler bytes."""
        assert SYNC_PAYLOAD == b"\x07\x07\x12\x20" + b"\x55" * 32

    def test_special_bytes_escaped(self):
        """Marker bytes in the header or payload are escaped."""
        frame = build_command(BootloaderCommand.ESP_FLASH_DATA, b"\xc0\xdb")
        assert b"\xdb\xdc\xdb\xdd" in frame
        assert frame.count(b"\xc0") == 2

    def test_decodes_back_to_packet(self):
        """Framed command decodes to the serialized packet."""
        packet = CommandPacket(BootloaderCommand.ESP_WRITE_REG, bytes(range(0xB8, 0xE0)), 0xC0DB)
        frame = build_command(packet.opcode, packet.payload, packet.checksum)
        assert FrameCodec().feed(frame) == [packet.to_bytes()]


# =============================================================================
# Response Tests
# =============================================================================

class TestParseResponse:
    """Tests for parse_response()."""

    def test_success(self):
        """Status 1 yields a ResponsePacket with value and data."""
        response = parse_response(make_response(0x0A, 0xDEADBEEF, b"\x00\x00"))
        assert isinstance(response, ResponsePacket)
        assert response.opcode == 0x0A
        assert response.value == 0xDEADBEEF
        assert response.data == b"\x00\x00"
        assert response.length == 2

    def test_failure_status_is_none(self):
        """Status 0 yields None."""
        assert parse_response(make_response(status=0)) is None

    def test_too_short(self):
        """A frame shorter than the header is a protocol error."""
        with pytest.raises(ProtocolError):
            parse_response(b"\x01\x08\x00")

    def test_header_only(self):
        """A bare header parses with empty data."""
        response = parse_response(make_response(data=b""))
        assert response.data == b""
        assert len(make_response(data=b"")) == HEADER_SIZE

    def test_status_bytes(self):
        """status_bytes are the last two data bytes."""
        response = parse_response(make_response(data=b"\x11\x22\x01\x05"))
        assert response.status_bytes == b"\x01\x05"


class TestCheckResponse:
    """Tests for check_response()."""

    def test_returns_value_for_short_request(self):
        """With a request payload of up to 2 bytes, value is returned."""
        response = parse_response(make_response(value=0x1234))
        assert check_response("read reg", response, b"\x00\x00") == 0x1234

    def test_returns_stripped_data_for_long_request(self):
        """With a longer request payload, data minus status bytes is returned."""
        response = parse_response(make_response(data=b"\xaa\xbb\xcc\x00\x00"))
        result = check_response("read flash", response, b"\x00\x00\x00\x00")
        assert result == b"\xaa\xbb\xcc"

    def test_failure_status_byte(self):
        """A non-zero first status byte raises with the raw status bytes."""
        response = parse_response(make_response(data=b"\x01\x07"))
        with pytest.raises(DeviceProtocolError) as exc_info:
            check_response("write flash", response)
        assert exc_info.value.status_bytes == b"\x01\x07"
        assert "Invalid CRC" in str(exc_info.value)
        assert "write flash" in str(exc_info.value)

    def test_missing_response(self):
        """No successful response is a device error."""
        with pytest.raises(DeviceProtocolError):
            check_response("sync", None)

    def test_short_status(self):
        """Fewer than two status bytes is a device error."""
        response = parse_response(make_response(data=b"\x00"))
        with pytest.raises(DeviceProtocolError) as exc_info:
            check_response("read reg", response)
        assert "1 byte status" in str(exc_info.value)


# =============================================================================
# Checksum Tests
# =============================================================================

class TestDataChecksum:
    """Tests for data_checksum()."""

    def test_empty(self):
        """Empty data gives the seed."""
        assert data_checksum(b"") == CHECKSUM_MAGIC == 0xEF

    def test_xor(self):
        """Checksum is the XOR of all bytes with the seed."""
        assert data_checksum(b"\x01\x02") == 0xEF ^ 0x01 ^ 0x02

    def test_custom_state(self):
        """A different seed can be supplied."""
        assert data_checksum(b"\xff", state=0) == 0xFF

    def test_not_applied_implicitly(self):
        """build_command leaves the checksum field as given."""
        frame = build_command(BootloaderCommand.ESP_FLASH_DATA, b"\x01\x02")
        assert frame[5:9] == b"\x00\x00\x00\x00"
