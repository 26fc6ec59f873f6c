"""
Serial Port Discovery and Setup
===============================

Helpers around pyserial for finding the board's USB-serial bridge and
opening it in the configuration both the bootloader and the REPL expect.

Supported Bridges (in auto-detect priority order)
-------------------------------------------------
- Espressif native USB-JTAG/serial (VID 0x303A)
- Silicon Labs CP210x (VID 0x10C4)
- QinHeng CH340/CH9102 (VID 0x1A86)
- FTDI FT232R (VID 0x0403)

Line Settings
-------------
115200 baud by default (the ROM bootloader auto-bauds), 8 data bits, no
parity, 1 stop bit, no flow control. DTR and RTS are wired to EN/IO0 on
most boards, so they are deasserted before the port opens and are only
driven on purpose (see DeviceLink.enter_download_mode).
"""

import logging
from dataclasses import dataclass
from typing import Final, Iterable, Optional

import serial
import serial.tools.list_ports

from mcu_link.errors import ConnectionError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Baud rates offered by the CLI
VALID_BAUD_RATES: Final[tuple[int, ...]] = (
    9600, 57600, 74880, 115200, 230400, 460800, 921600, 1500000,
)

DEFAULT_BAUD_RATE: Final[int] = 115200

# Poll interval of SerialTransport reads (seconds)
DEFAULT_TIMEOUT: Final[float] = 0.1

# Known bridge vendors; dict order is the auto-detect priority
USB_VENDOR_IDS: Final[dict[int, str]] = {
    0x303A: "Espressif",
    0x10C4: "Silicon Labs",
    0x1A86: "QinHeng",
    0x0403: "FTDI",
}

# pyserial error text -> user hint, checked in order
_OPEN_ERROR_HINTS: Final[tuple[tuple[tuple[str, ...], str], ...]] = (
    (("permission denied",),
     "Permission denied accessing {device}. Add your user to the 'dialout' "
     "group: sudo usermod -a -G dialout $USER"),
    (("no such file", "not found", "filenotfounderror"),
     "Serial port not found: {device}. Run 'mculink ports' to list ports."),
    (("busy", "in use", "access is denied"),
     "Serial port {device} is busy. Close any other serial monitor using it."),
)


# =============================================================================
# Port Information
# =============================================================================

@dataclass(frozen=True)
class PortInfo:
    """
    One serial port as reported by the operating system.

    Attributes:
        device: Device path ('/dev/ttyUSB0', '/dev/cu.usbserial-0001', 'COM5')
        description: Driver description
        manufacturer: USB manufacturer string, if any
        product: USB product string, if any
        serial_number: USB serial number, if any
        vid: USB vendor ID (None for built-in UARTs)
        pid: USB product ID (None for built-in UARTs)
    """

    device: str
    description: str
    manufacturer: Optional[str]
    product: Optional[str]
    serial_number: Optional[str]
    vid: Optional[int]
    pid: Optional[int]

    @classmethod
    def from_list_port_info(cls, port) -> "PortInfo":
        """Build from a pyserial ListPortInfo entry."""
        return cls(
            device=port.device,
            description=port.description or "",
            manufacturer=port.manufacturer,
            product=port.product,
            serial_number=port.serial_number,
            vid=port.vid,
            pid=port.pid,
        )

    @property
    def is_usb(self) -> bool:
        return self.vid is not None

    @property
    def vendor_name(self) -> Optional[str]:
        """Name of a known bridge vendor, else None."""
        return USB_VENDOR_IDS.get(self.vid) if self.vid is not None else None

    @property
    def usb_id(self) -> Optional[str]:
        """'VVVV:PPPP' for USB ports."""
        if self.vid is None:
            return None
        return f"{self.vid:04X}:{self.pid or 0:04X}"

    def __str__(self) -> str:
        text = self.device
        if self.description:
            text += f" - {self.description}"
        if self.vendor_name:
            text += f" ({self.vendor_name})"
        return text


def _detect_priority(port: PortInfo) -> int:
    """Rank of a USB port for auto-detection (lower is better)."""
    vendors = list(USB_VENDOR_IDS)
    if port.vid in USB_VENDOR_IDS:
        return vendors.index(port.vid)
    return len(vendors)


# =============================================================================
# Discovery
# =============================================================================

def list_serial_ports() -> list[PortInfo]:
    """Return every serial port pyserial can see."""
    ports = [
        PortInfo.from_list_port_info(entry)
        for entry in serial.tools.list_ports.comports()
    ]
    for port in ports:
        logger.debug("Found port: %s (usb=%s)", port.device, port.usb_id or "no")
    return ports


def find_device_port(ports: Optional[Iterable[PortInfo]] = None) -> Optional[str]:
    """
    Pick the most likely board port.

    Known bridges win in USB_VENDOR_IDS order; among equals, and for
    unknown USB vendors, the first listed port wins. Non-USB ports are
    never chosen.

    Args:
        ports: Ports to choose from (default: list_serial_ports()).

    Returns:
        Device path, or None if there is no USB serial port.
    """
    if ports is None:
        ports = list_serial_ports()
    candidates = [port for port in ports if port.is_usb]
    if not candidates:
        logger.debug("No USB serial ports found")
        return None

    # sorted() is stable, so listing order breaks ties
    best = sorted(candidates, key=_detect_priority)[0]
    logger.info(
        "Auto-detected port: %s (%s)",
        best.device, best.vendor_name or best.description
    )
    return best.device


def format_port_list(ports: list[PortInfo], verbose: bool = False) -> str:
    """
    Render ports for the terminal, one per line (or one block per port
    when verbose).
    """
    if not ports:
        return "No serial ports found."
    if not verbose:
        return "\n".join(f"  {port}" for port in ports)

    blocks = []
    for port in ports:
        fields = [
            ("Description", port.description),
            ("Manufacturer", port.manufacturer),
            ("Product", port.product),
        ]
        if port.usb_id:
            usb = port.usb_id
            if port.vendor_name:
                usb += f" ({port.vendor_name})"
            fields.append(("USB VID:PID", usb))
        fields.append(("Serial", port.serial_number))
        lines = [f"  {port.device}"]
        lines.extend(f"    {label}: {value}" for label, value in fields if value)
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


# =============================================================================
# Open / Close
# =============================================================================

def _open_error(device: str, error: serial.SerialException) -> ConnectionError:
    text = str(error).lower()
    for needles, hint in _OPEN_ERROR_HINTS:
        if any(needle in text for needle in needles):
            return ConnectionError(hint.format(device=device))
    return ConnectionError(f"Cannot open {device}: {error}")


def open_serial_port(
    device: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
    timeout: float = DEFAULT_TIMEOUT,
) -> serial.Serial:
    """
    Open a port at 8N1 without flow control and without resetting the board.

    Args:
        device: Device path.
        baud_rate: Line speed.
        timeout: Read timeout (the transport's poll interval).

    Returns:
        The open serial.Serial.

    Raises:
        ValueError: If baud_rate is not positive.
        ConnectionError: If the port cannot be opened.
    """
    if baud_rate <= 0:
        raise ValueError(f"Invalid baud rate: {baud_rate}")

    logger.info("Opening %s at %d baud", device, baud_rate)

    # Constructed without a port so DTR/RTS are set before the open
    port = serial.Serial(
        baudrate=baud_rate,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        timeout=timeout,
        xonxoff=False,
        rtscts=False,
        dsrdtr=False,
    )
    port.dtr = False
    port.rts = False
    port.port = device
    try:
        port.open()
    except serial.SerialException as e:
        raise _open_error(device, e) from e

    port.reset_input_buffer()
    port.reset_output_buffer()
    return port


def close_serial_port(port: Optional[serial.Serial]) -> None:
    """Close a port; errors while closing are logged, not raised."""
    if port is None or not port.is_open:
        return
    try:
        port.reset_input_buffer()
        port.reset_output_buffer()
        port.close()
    except (serial.SerialException, OSError) as e:
        logger.warning("Error closing serial port: %s", e)
    else:
        logger.debug("Serial port closed")
