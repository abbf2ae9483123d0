"""Transport back-ends for attached loggers."""

from .discovery import (
    DeviceDescriptor,
    create_transport,
    discover_devices,
    list_serial_ports,
    list_usb_devices,
    transport_for_port,
)
from .serial_port import SerialTransport
from .usb_bulk import UsbTransport

__all__ = [
    "DeviceDescriptor",
    "SerialTransport",
    "UsbTransport",
    "create_transport",
    "discover_devices",
    "list_serial_ports",
    "list_usb_devices",
    "transport_for_port",
]
