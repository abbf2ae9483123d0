"""USB bulk transport built on pyusb.

The logger enumerates either with a vendor-specific interface (class 0xFF)
or as a CDC device whose data interface (class 0x0A) carries the same text
protocol. Either way the device is driven through one bulk IN and one bulk
OUT endpoint with 64-byte packets.
"""

from __future__ import annotations

import asyncio
import errno
import logging
from typing import Any, Optional

import usb.core
import usb.util

from ..core.errors import TransportError

LOGGER = logging.getLogger(__name__)

USB_CLASS_VENDOR = 0xFF
USB_CLASS_CDC_DATA = 0x0A
PACKET_SIZE = 64
DEFAULT_READ_TIMEOUT_MS = 500
WRITE_TIMEOUT_MS = 2000


def sanitize(data: bytes) -> str:
    """Decode received bytes, replacing anything but printable ASCII, CR and LF with spaces."""
    cleaned = bytes(
        0x20 if value >= 0x80 or (value < 0x20 and value not in (0x0D, 0x0A)) else value
        for value in data
    )
    replacements = sum(1 for a, b in zip(data, cleaned) if a != b)
    if replacements:
        LOGGER.debug("Replaced %d of %d received bytes", replacements, len(data))
    return cleaned.decode("ascii")


def find_data_interface(configuration: Any) -> Optional[Any]:
    """Pick the vendor interface if present, otherwise the CDC data interface."""
    fallback = None
    for interface in configuration:
        if interface.bInterfaceClass == USB_CLASS_VENDOR:
            return interface
        if interface.bInterfaceClass == USB_CLASS_CDC_DATA and fallback is None:
            fallback = interface
    return fallback


class UsbTransport:
    """Transport over the bulk endpoints of a pyusb device."""

    kind = "usb"

    def __init__(
        self,
        device: usb.core.Device,
        *,
        serial_number: Optional[str] = None,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
    ) -> None:
        self._device = device
        self.serial_number = serial_number
        self._read_timeout_ms = read_timeout_ms
        self._interface: Optional[int] = None
        self._ep_in: Optional[int] = None
        self._ep_out: Optional[int] = None
        self._detached = False
        self._pending_read: Optional[asyncio.Future[Optional[str]]] = None

    def __repr__(self) -> str:
        return f"UsbTransport(serial_number={self.serial_number!r})"

    def is_busy(self) -> bool:
        return self._interface is not None

    async def open(self) -> None:
        await asyncio.to_thread(self._open_blocking)
        LOGGER.debug(
            "USB opened: interface=%s in=0x%02x out=0x%02x",
            self._interface,
            self._ep_in,
            self._ep_out,
        )

    def _open_blocking(self) -> None:
        if self._interface is not None:
            return
        device = self._device
        try:
            try:
                configuration = device.get_active_configuration()
            except usb.core.USBError:
                device.set_configuration()
                configuration = device.get_active_configuration()

            interface = find_data_interface(configuration)
            if interface is None:
                raise TransportError("No matching USB data interface found")
            number = interface.bInterfaceNumber

            try:
                if device.is_kernel_driver_active(number):
                    device.detach_kernel_driver(number)
                    self._detached = True
            except (NotImplementedError, usb.core.USBError) as exc:
                LOGGER.debug("Kernel driver check skipped for interface %d: %s", number, exc)

            ep_in = usb.util.find_descriptor(
                interface,
                custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
                == usb.util.ENDPOINT_IN
                and usb.util.endpoint_type(e.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK,
            )
            ep_out = usb.util.find_descriptor(
                interface,
                custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
                == usb.util.ENDPOINT_OUT
                and usb.util.endpoint_type(e.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK,
            )
            if ep_in is None or ep_out is None:
                raise TransportError("Bulk IN/OUT endpoints not found on data interface")

            usb.util.claim_interface(device, number)
        except usb.core.USBError as exc:
            raise TransportError(
                f"Could not open USB device (is it claimed by a driver?): {exc}"
            ) from exc

        self._interface = number
        self._ep_in = ep_in.bEndpointAddress
        self._ep_out = ep_out.bEndpointAddress

    async def close(self) -> bool:
        if self._pending_read is not None and not self._pending_read.done():
            # A blocking read cannot be interrupted; let it reach its timeout first
            await asyncio.wait({self._pending_read})
        self._pending_read = None
        return await asyncio.to_thread(self._close_blocking)

    def _close_blocking(self) -> bool:
        if self._interface is None:
            return True
        ok = True
        try:
            usb.util.release_interface(self._device, self._interface)
        except usb.core.USBError as exc:
            LOGGER.warning("Problem releasing interface %d: %s", self._interface, exc)
            ok = False
        if self._detached:
            try:
                self._device.attach_kernel_driver(self._interface)
            except (NotImplementedError, usb.core.USBError) as exc:
                LOGGER.debug("Could not reattach kernel driver: %s", exc)
            self._detached = False
        usb.util.dispose_resources(self._device)
        self._interface = None
        self._ep_in = None
        self._ep_out = None
        return ok

    async def write(self, text: str) -> None:
        if self._ep_out is None:
            raise TransportError("USB device is not open")
        payload = text.encode("cp1252", errors="replace")
        try:
            await asyncio.to_thread(
                self._device.write, self._ep_out, payload, WRITE_TIMEOUT_MS
            )
        except usb.core.USBError as exc:
            raise TransportError(f"USB write failed: {exc}") from exc

    async def read(self) -> Optional[str]:
        if self._ep_in is None:
            raise TransportError("USB device is not open")
        # An interrupted read keeps running in its thread; pick its result up next time
        if self._pending_read is None:
            self._pending_read = asyncio.ensure_future(
                asyncio.to_thread(self._read_blocking)
            )
        future = self._pending_read
        try:
            return await asyncio.shield(future)
        finally:
            if future.done():
                self._pending_read = None

    def _read_blocking(self) -> Optional[str]:
        ep_in = self._ep_in
        if ep_in is None:
            return None
        try:
            data = self._device.read(ep_in, PACKET_SIZE, self._read_timeout_ms)
        except usb.core.USBTimeoutError:
            return None
        except usb.core.USBError as exc:
            if exc.errno == errno.EPIPE:
                LOGGER.debug("Endpoint stalled, clearing halt")
                self._device.clear_halt(ep_in)
                return None
            if exc.errno == errno.ETIMEDOUT:
                return None
            raise TransportError(f"USB read failed: {exc}") from exc
        if not data:
            return None
        return sanitize(bytes(data))

    async def cancel_read(self) -> None:
        ep_in = self._ep_in
        if ep_in is None:
            return
        try:
            await asyncio.to_thread(self._device.clear_halt, ep_in)
        except usb.core.USBError as exc:
            LOGGER.debug("Problem cancelling read: %s", exc)
