"""
USB Transport for the K230 Mask ROM
===================================

This module provides the thin transfer layer underneath the boot session:

- The abstract Transport interface the session is written against
- UsbTransport, a pyusb implementation over the ROM's bulk endpoint pair
- Enumeration helpers to find K230 devices sitting in mask ROM mode

The boot session never enumerates devices itself. The caller opens a
transport (normally with open_usb_transport()) and hands it over, which is
what lets the protocol engine be tested against a simulated ROM.

USB Details
-----------
- Vendor ID 0x29F1 (Canaan Kendryte), product ID 0x0230 (K230/K230D ROM)
- The ROM exposes a single interface with one bulk OUT and one bulk IN
  endpoint
- The interface can take a moment to become claimable after the device
  enumerates, so claiming is retried for up to one second
- Max packet size follows the bus speed: 64 (full/low), 512 (high),
  1024 (super). A bulk frame that fills its last packet exactly is followed
  by a zero-length packet so the ROM sees where the transfer ends
- Besides the bulk pair, the ROM answers vendor control requests on EP0.
  A 32-bit address is split across wValue (high half) and wIndex (low half)

Linux Permissions
-----------------
Without a udev rule the device is only accessible to root:

    SUBSYSTEM=="usb", ATTR{idVendor}=="29f1", ATTR{idProduct}=="0230", MODE="0666"
"""

import errno
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Final, Optional

import usb.core
import usb.util

from k230_boot.errors import (
    DeviceNotFoundError,
    DisconnectedError,
    TimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

KENDRYTE_VID: Final[int] = 0x29F1
K230_ROM_PID: Final[int] = 0x0230

# Largest single bulk transfer the session will issue
MAX_BULK_TRANSFER_SIZE: Final[int] = 64 * 1024 + 16

# Interface claim retry window (seconds)
CLAIM_INTERFACE_TIMEOUT: Final[float] = 1.0
CLAIM_INTERFACE_PERIOD: Final[float] = 0.0002

# Max packet size per bus speed
PACKET_SIZE_BY_SPEED: Final[dict[int, int]] = {
    usb.util.SPEED_LOW: 64,
    usb.util.SPEED_FULL: 64,
    usb.util.SPEED_HIGH: 512,
    usb.util.SPEED_SUPER: 1024,
}

SPEED_NAMES: Final[dict[int, str]] = {
    usb.util.SPEED_LOW: "low",
    usb.util.SPEED_FULL: "full",
    usb.util.SPEED_HIGH: "high",
    usb.util.SPEED_SUPER: "super",
}

# errno values that mean the device is gone rather than busy
_GONE_ERRNOS: Final[frozenset[int]] = frozenset({errno.ENODEV, errno.ENOENT, errno.ESHUTDOWN})

# Control transfers: vendor request, device recipient
CONTROL_IN_REQUEST_TYPE: Final[int] = usb.util.build_request_type(
    usb.util.CTRL_IN, usb.util.CTRL_TYPE_VENDOR, usb.util.CTRL_RECIPIENT_DEVICE
)
CONTROL_OUT_REQUEST_TYPE: Final[int] = usb.util.build_request_type(
    usb.util.CTRL_OUT, usb.util.CTRL_TYPE_VENDOR, usb.util.CTRL_RECIPIENT_DEVICE
)

CONTROL_TIMEOUT: Final[float] = 5.0

# Size of the GET_CPU_INFO reply
CPU_INFO_SIZE: Final[int] = 0x20


class VendorRequest(IntEnum):
    """EP0 vendor requests understood by the mask ROM."""

    GET_CPU_INFO = 0x00
    SET_DATA_ADDRESS = 0x01
    SET_DATA_LENGTH = 0x02
    FLUSH_CACHES = 0x03
    PROG_START = 0x04


def split_address(address: int) -> tuple[int, int]:
    """Split a 32-bit address into the (wValue, wIndex) pair of a control request."""
    if not 0 <= address <= 0xFFFF_FFFF:
        raise ValueError(f"Address out of range: 0x{address:X}")
    return address >> 16, address & 0xFFFF


# =============================================================================
# Transport Interface
# =============================================================================

class Transport(ABC):
    """
    Synchronous control and bulk transfer primitives.

    The boot session drives the bulk pair. EP0 vendor requests carry the
    CPU info query (read_cpu_info()).

    Every call is blocking and bounded by an explicit timeout in seconds.
    Implementations raise TimeoutError when a transfer does not complete
    in time and DisconnectedError when the device has gone away.
    """

    # Largest frame the transport can move in a single transfer
    max_transfer_size: int = MAX_BULK_TRANSFER_SIZE

    @abstractmethod
    def write(self, data: bytes, timeout: float) -> None:
        """Send one complete frame."""

    @abstractmethod
    def read(self, size: int, timeout: float) -> bytes:
        """Receive up to size bytes from a single transfer."""

    @abstractmethod
    def control_in(self, request: int, value: int, index: int, length: int,
                   timeout: float) -> bytes:
        """Issue a vendor IN control request and return its data stage."""

    @abstractmethod
    def control_out(self, request: int, value: int, index: int,
                    timeout: float) -> None:
        """Issue a vendor OUT control request with no data stage."""

    def close(self) -> None:
        """Release the underlying handle."""

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


# =============================================================================
# Device Information
# =============================================================================

@dataclass(frozen=True)
class DeviceInfo:
    """
    Information about a K230 found in mask ROM mode.

    Attributes:
        bus: USB bus number
        address: Device address on the bus
        vid: USB Vendor ID
        pid: USB Product ID
        manufacturer: Manufacturer string (if readable)
        product: Product string (if readable)
        serial_number: Serial number string (if readable)
        speed: pyusb speed constant
    """

    bus: int
    address: int
    vid: int
    pid: int
    manufacturer: Optional[str]
    product: Optional[str]
    serial_number: Optional[str]
    speed: Optional[int]

    @property
    def location(self) -> str:
        return f"{self.bus:03d}:{self.address:03d}"

    @property
    def speed_name(self) -> str:
        return SPEED_NAMES.get(self.speed, "unknown")

    def __str__(self) -> str:
        parts = [self.location, f"{self.vid:04X}:{self.pid:04X}"]
        if self.manufacturer or self.product:
            parts.append(" ".join(p for p in (self.manufacturer, self.product) if p))
        parts.append(f"({self.speed_name} speed)")
        return " ".join(parts)


# =============================================================================
# USB Transport
# =============================================================================

class UsbTransport(Transport):
    """
    Transport over the mask ROM's bulk endpoint pair and EP0.

    Example:
        device = find_device()
        with UsbTransport(device) as transport:
            session = BootSession(transport)
            ...
    """

    def __init__(self, device: "usb.core.Device", interface: int = 0):
        """
        Claim the ROM interface and locate its bulk endpoints.

        Args:
            device: An opened pyusb device.
            interface: Interface number (the ROM only has interface 0).

        Raises:
            TransportError: If the interface or endpoints cannot be found.
            DisconnectedError: If the device disappears while claiming.
        """
        self.device = device
        self.interface = interface
        self._claimed = False

        try:
            self._open()
        except Exception:
            self._release()
            raise

        speed = getattr(device, "speed", None)
        self.packet_size = PACKET_SIZE_BY_SPEED.get(speed, self.ep_out.wMaxPacketSize)
        logger.info(
            "USB transport ready: %s speed, max packet size %d, OUT 0x%02X IN 0x%02X",
            SPEED_NAMES.get(speed, "unknown"), self.packet_size,
            self.ep_out.bEndpointAddress, self.ep_in.bEndpointAddress,
        )

    def _open(self) -> None:
        device, interface = self.device, self.interface
        try:
            try:
                config = device.get_active_configuration()
            except usb.core.USBError:
                device.set_configuration()
                config = device.get_active_configuration()
            intf = config[(interface, 0)]
        except usb.core.USBError as e:
            raise _translate_usb_error(e, "configure device") from e

        self.ep_out = usb.util.find_descriptor(
            intf,
            custom_match=lambda ep: (
                usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_OUT
                and usb.util.endpoint_type(ep.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
            ),
        )
        self.ep_in = usb.util.find_descriptor(
            intf,
            custom_match=lambda ep: (
                usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_IN
                and usb.util.endpoint_type(ep.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
            ),
        )
        if self.ep_out is None or self.ep_in is None:
            raise TransportError("No bulk IN/OUT endpoint pair found on ROM interface")

        self._claim_interface()

    def _claim_interface(self) -> None:
        deadline = time.monotonic() + CLAIM_INTERFACE_TIMEOUT
        while True:
            try:
                usb.util.claim_interface(self.device, self.interface)
                self._claimed = True
                return
            except usb.core.USBError as e:
                if e.errno in _GONE_ERRNOS:
                    raise DisconnectedError(f"Device disappeared while claiming: {e}") from e
                if time.monotonic() >= deadline:
                    raise TransportError(f"Failure claiming USB interface: {e}") from e
                time.sleep(CLAIM_INTERFACE_PERIOD)

    def write(self, data: bytes, timeout: float) -> None:
        try:
            written = self.ep_out.write(data, timeout=_to_ms(timeout))
        except usb.core.USBError as e:
            raise _translate_usb_error(e, "bulk write") from e
        if written != len(data):
            raise TransportError(f"Short bulk write: {written} of {len(data)} bytes")
        logger.debug("USB OUT %d bytes", written)

        if data and self.packet_size and len(data) % self.packet_size == 0:
            try:
                self.ep_out.write(b"", timeout=_to_ms(timeout))
            except usb.core.USBError as e:
                raise _translate_usb_error(e, "zero-length packet") from e
            logger.debug("USB OUT zero-length packet")

    def read(self, size: int, timeout: float) -> bytes:
        try:
            data = self.ep_in.read(size, timeout=_to_ms(timeout))
        except usb.core.USBError as e:
            raise _translate_usb_error(e, "bulk read") from e
        logger.debug("USB IN %d bytes", len(data))
        return bytes(data)

    def control_in(self, request: int, value: int, index: int, length: int,
                   timeout: float) -> bytes:
        try:
            data = self.device.ctrl_transfer(
                CONTROL_IN_REQUEST_TYPE, request, value, index, length,
                timeout=_to_ms(timeout),
            )
        except usb.core.USBError as e:
            raise _translate_usb_error(e, f"control IN request 0x{request:02X}") from e
        logger.debug("EP0 IN request 0x%02X value 0x%04X index 0x%04X: %d bytes",
                     request, value, index, len(data))
        return bytes(data)

    def control_out(self, request: int, value: int, index: int,
                    timeout: float) -> None:
        try:
            self.device.ctrl_transfer(
                CONTROL_OUT_REQUEST_TYPE, request, value, index,
                timeout=_to_ms(timeout),
            )
        except usb.core.USBError as e:
            raise _translate_usb_error(e, f"control OUT request 0x{request:02X}") from e
        logger.debug("EP0 OUT request 0x%02X value 0x%04X index 0x%04X",
                     request, value, index)

    def close(self) -> None:
        """Release the interface and pyusb resources, ignoring errors."""
        self._release()
        logger.debug("USB transport closed")

    def _release(self) -> None:
        try:
            if self._claimed:
                usb.util.release_interface(self.device, self.interface)
                self._claimed = False
            usb.util.dispose_resources(self.device)
        except usb.core.USBError as e:
            logger.warning("Error closing USB transport: %s", e)


# =============================================================================
# EP0 Requests
# =============================================================================

def read_cpu_info(transport: Transport, timeout: float = CONTROL_TIMEOUT) -> str:
    """
    Ask the ROM for its CPU info block over EP0.

    Returns:
        The info string with NUL padding removed.

    Raises:
        TransportError: If the control transfer fails.
    """
    data = transport.control_in(VendorRequest.GET_CPU_INFO, 0, 0, CPU_INFO_SIZE, timeout)
    return data.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def send_address(transport: Transport, request: int, address: int,
                 timeout: float = CONTROL_TIMEOUT) -> None:
    """Issue an OUT request that carries a 32-bit address, e.g. PROG_START."""
    value, index = split_address(address)
    transport.control_out(request, value, index, timeout)


def _to_ms(timeout: float) -> int:
    return max(1, int(timeout * 1000))


def _translate_usb_error(error: "usb.core.USBError", action: str) -> TransportError:
    """Map a pyusb error onto the transport error hierarchy."""
    if isinstance(error, usb.core.USBTimeoutError) or error.errno == errno.ETIMEDOUT:
        return TimeoutError(f"USB {action} timed out")
    if error.errno in _GONE_ERRNOS:
        return DisconnectedError(f"Device disconnected during {action}: {error}")
    return TransportError(f"USB {action} failed: {error}")


# =============================================================================
# Device Enumeration
# =============================================================================

def _get_string(device: "usb.core.Device", index: int) -> Optional[str]:
    if not index:
        return None
    try:
        return usb.util.get_string(device, index)
    except (usb.core.USBError, ValueError) as e:
        # Strings need device access; without permissions only IDs are known
        logger.debug("Cannot read string descriptor %d: %s", index, e)
        return None


def _find_all(vid: int, pid: int) -> list:
    try:
        return list(usb.core.find(find_all=True, idVendor=vid, idProduct=pid))
    except usb.core.NoBackendError as e:
        raise TransportError(
            "No libusb backend available. Install libusb-1.0 for your platform."
        ) from e


def list_devices(vid: int = KENDRYTE_VID, pid: int = K230_ROM_PID) -> list[DeviceInfo]:
    """
    List every K230 currently in mask ROM mode.

    Returns:
        List of DeviceInfo objects, in bus enumeration order.
    """
    devices = []
    for dev in _find_all(vid, pid):
        info = DeviceInfo(
            bus=dev.bus,
            address=dev.address,
            vid=dev.idVendor,
            pid=dev.idProduct,
            manufacturer=_get_string(dev, dev.iManufacturer),
            product=_get_string(dev, dev.iProduct),
            serial_number=_get_string(dev, dev.iSerialNumber),
            speed=getattr(dev, "speed", None),
        )
        devices.append(info)
        logger.debug("Found device: %s", info)
    return devices


def find_device(
    bus: Optional[int] = None,
    address: Optional[int] = None,
    vid: int = KENDRYTE_VID,
    pid: int = K230_ROM_PID,
) -> "usb.core.Device":
    """
    Find one K230 in mask ROM mode.

    Args:
        bus: Restrict to this bus number.
        address: Restrict to this device address.

    Returns:
        The first matching pyusb device.

    Raises:
        DeviceNotFoundError: If no matching device is on the bus.
    """
    for dev in _find_all(vid, pid):
        if bus is not None and dev.bus != bus:
            continue
        if address is not None and dev.address != address:
            continue
        logger.info("Using device at %03d:%03d", dev.bus, dev.address)
        return dev

    raise DeviceNotFoundError(
        f"No device {vid:04X}:{pid:04X} found. "
        "Is it connected and held in USB boot mode?"
    )


def open_usb_transport(
    bus: Optional[int] = None,
    address: Optional[int] = None,
) -> UsbTransport:
    """Find a ROM-mode device and open a transport on it."""
    return UsbTransport(find_device(bus=bus, address=address))


def format_device_list(devices: list[DeviceInfo], verbose: bool = False) -> str:
    """
    Format a list of devices for display to the user.

    Args:
        devices: List of DeviceInfo objects to format.
        verbose: If True, include string descriptors on separate lines.
    """
    if not devices:
        return "No K230 devices in USB boot mode found."

    lines = []
    for dev in devices:
        if verbose:
            line = f"  {dev.location}"
            line += f"\n    USB VID:PID: {dev.vid:04X}:{dev.pid:04X}"
            line += f"\n    Speed: {dev.speed_name}"
            if dev.manufacturer:
                line += f"\n    Manufacturer: {dev.manufacturer}"
            if dev.product:
                line += f"\n    Product: {dev.product}"
            if dev.serial_number:
                line += f"\n    Serial: {dev.serial_number}"
            lines.append(line)
        else:
            lines.append(f"  {dev}")
    return "\n".join(lines)
