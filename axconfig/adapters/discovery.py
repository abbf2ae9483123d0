"""Device discovery across USB and serial back-ends.

Loggers are found by vendor/product id. pyusb is tried first since it talks
to the bulk endpoints directly; when no USB backend is available (or no
device answers there) the serial ports exposing the same ids are used.

Usage:
    descriptors = discover_devices(config.transport.kind)
    transport = create_transport(descriptors[0], config.transport)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import usb.core
import usb.util
from serial.tools import list_ports

from ..config import TransportConfig
from ..constants import USB_DEVICE_PID, USB_DEVICE_VID
from ..core.errors import ConfigurationError, TransportError
from ..core.protocols import Transport
from .serial_port import SerialTransport
from .usb_bulk import UsbTransport

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DeviceDescriptor:
    """A logger found on the bus, not yet opened."""

    kind: str
    """Transport family, ``"usb"`` or ``"serial"``."""

    serial_number: Optional[str] = None
    """USB serial number string, e.g. ``CWA17_12345``."""

    port: Optional[str] = None
    """Serial device path for the serial back-end."""

    location: Optional[str] = None
    """Bus location, used for display only."""

    handle: Any = None
    """The pyusb device object for the USB back-end."""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "serialNumber": self.serial_number,
            "port": self.port,
            "location": self.location,
        }


def _usb_serial_number(device: Any) -> Optional[str]:
    if not device.iSerialNumber:
        return None
    try:
        return usb.util.get_string(device, device.iSerialNumber)
    except (usb.core.USBError, ValueError, NotImplementedError) as exc:
        LOGGER.debug("Could not read USB serial number: %s", exc)
        return None


def list_usb_devices(
    vid: int = USB_DEVICE_VID, pid: int = USB_DEVICE_PID
) -> List[DeviceDescriptor]:
    """Enumerate matching devices through pyusb.

    Raises:
        usb.core.NoBackendError: If no libusb backend is installed.
    """
    found = usb.core.find(find_all=True, idVendor=vid, idProduct=pid) or []
    descriptors = []
    for device in found:
        descriptors.append(
            DeviceDescriptor(
                kind="usb",
                serial_number=_usb_serial_number(device),
                location=f"bus {device.bus} address {device.address}",
                handle=device,
            )
        )
    LOGGER.debug("USB enumeration found %d device(s)", len(descriptors))
    return descriptors


def list_serial_ports(
    vid: int = USB_DEVICE_VID, pid: int = USB_DEVICE_PID
) -> List[DeviceDescriptor]:
    """Enumerate serial ports belonging to matching devices."""
    descriptors = [
        DeviceDescriptor(
            kind="serial",
            serial_number=info.serial_number,
            port=info.device,
            location=info.location or info.description,
        )
        for info in list_ports.comports()
        if info.vid == vid and info.pid == pid
    ]
    LOGGER.debug("Serial enumeration found %d port(s)", len(descriptors))
    return descriptors


def discover_devices(kind: str = "auto") -> List[DeviceDescriptor]:
    """Find attached loggers using the requested back-end."""
    if kind == "serial":
        return list_serial_ports()
    if kind == "usb":
        try:
            return list_usb_devices()
        except usb.core.NoBackendError as exc:
            raise TransportError(f"No USB backend available: {exc}") from exc
    if kind != "auto":
        raise ConfigurationError(f"Unknown transport kind: {kind}")

    try:
        descriptors = list_usb_devices()
    except usb.core.NoBackendError:
        LOGGER.info("No USB backend available, falling back to serial ports")
        descriptors = []
    if descriptors:
        return descriptors
    return list_serial_ports()


def create_transport(
    descriptor: DeviceDescriptor, config: Optional[TransportConfig] = None
) -> Transport:
    """Build an unopened transport for a discovered device."""
    config = config or TransportConfig()
    if descriptor.kind == "usb":
        if descriptor.handle is None:
            raise ConfigurationError("USB descriptor has no device handle")
        return UsbTransport(
            descriptor.handle,
            serial_number=descriptor.serial_number,
            read_timeout_ms=config.usb_read_timeout_ms,
        )
    if descriptor.kind == "serial":
        if not descriptor.port:
            raise ConfigurationError("Serial descriptor has no port")
        return SerialTransport(
            descriptor.port,
            serial_number=descriptor.serial_number,
            baudrate=config.baudrate,
            poll_interval=config.poll_interval_seconds,
        )
    raise ConfigurationError(f"Unknown transport kind: {descriptor.kind}")


def transport_for_port(port: str, config: Optional[TransportConfig] = None) -> Transport:
    """Serial transport for an explicitly configured port, bypassing discovery."""
    return create_transport(DeviceDescriptor(kind="serial", port=port), config)
