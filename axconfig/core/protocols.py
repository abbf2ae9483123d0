"""Protocol definitions for device transports."""

from __future__ import annotations

from typing import Optional, Protocol


class Transport(Protocol):
    """Byte-stream contract shared by the USB bulk and serial back-ends."""

    kind: str
    """Transport family, ``"usb"`` or ``"serial"``."""

    serial_number: Optional[str]
    """Descriptor serial number string, when the platform exposes one."""

    async def open(self) -> None:
        """Open the connection.

        Raises:
            TransportError: If the device cannot be opened.
        """
        ...

    async def close(self) -> bool:
        """Close the connection; returns False if closing reported a problem."""
        ...

    async def write(self, text: str) -> None:
        """Send text to the device.

        Raises:
            TransportError: If the write fails.
        """
        ...

    async def read(self) -> Optional[str]:
        """Return received text, or None when nothing is available yet."""
        ...

    async def cancel_read(self) -> None:
        """Best-effort interruption of an in-flight read."""
        ...

    def is_busy(self) -> bool:
        """Whether the connection is already open for another operation."""
        ...
