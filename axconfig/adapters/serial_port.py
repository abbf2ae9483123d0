"""Serial (CDC ACM) transport built on pyserial.

A background thread drains the port into a buffer so that ``read`` never
blocks the event loop; ``read`` returns whatever has accumulated, or None
after a short poll delay when nothing has.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Deque, Optional

import serial

from ..constants import DEFAULT_SERIAL_BAUDRATE
from ..core.errors import TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05
READ_TIMEOUT_SECONDS = 0.1


class SerialTransport:
    """Transport over a pyserial port."""

    kind = "serial"

    def __init__(
        self,
        port: str,
        *,
        serial_number: Optional[str] = None,
        baudrate: int = DEFAULT_SERIAL_BAUDRATE,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.port = port
        self.serial_number = serial_number
        self._baudrate = baudrate
        self._poll_interval = poll_interval
        self._serial: Optional[serial.Serial] = None
        self._buffer: Deque[str] = deque()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._reader_error: Optional[BaseException] = None

    def __repr__(self) -> str:
        return f"SerialTransport(port={self.port!r}, serial_number={self.serial_number!r})"

    def is_busy(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self) -> None:
        if self.is_busy():
            return
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                self.port,
                self._baudrate,
                timeout=READ_TIMEOUT_SECONDS,
            )
        except serial.SerialException as exc:
            raise TransportError(f"Could not open serial port {self.port}: {exc}") from exc

        self._stop.clear()
        self._reader_error = None
        with self._lock:
            self._buffer.clear()
        self._reader = threading.Thread(
            target=self._read_loop, name=f"axconfig-serial-{self.port}", daemon=True
        )
        self._reader.start()
        LOGGER.debug("Serial port %s opened at %d baud", self.port, self._baudrate)

    def _read_loop(self) -> None:
        port = self._serial
        assert port is not None
        while not self._stop.is_set():
            try:
                data = port.read(port.in_waiting or 1)
            except (serial.SerialException, OSError) as exc:
                if not self._stop.is_set():
                    LOGGER.warning("Serial reader stopped: %s", exc)
                    self._reader_error = exc
                return
            if data:
                with self._lock:
                    self._buffer.append(data.decode("cp1252", errors="replace"))
        LOGGER.debug("Serial reader for %s finished", self.port)

    async def close(self) -> bool:
        port = self._serial
        if port is None:
            return True
        self._stop.set()
        ok = True
        try:
            await asyncio.to_thread(port.close)
        except (serial.SerialException, OSError) as exc:
            LOGGER.warning("Problem closing serial port %s: %s", self.port, exc)
            ok = False
        if self._reader is not None:
            await asyncio.to_thread(self._reader.join, 1.0)
            self._reader = None
        self._serial = None
        return ok

    async def write(self, text: str) -> None:
        port = self._serial
        if port is None:
            raise TransportError("Serial port is not open")
        try:
            await asyncio.to_thread(port.write, text.encode("cp1252", errors="replace"))
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"Serial write failed: {exc}") from exc

    async def read(self) -> Optional[str]:
        if self._reader_error is not None:
            raise TransportError(f"Serial read failed: {self._reader_error}")
        with self._lock:
            chunks = list(self._buffer)
            self._buffer.clear()
        if chunks:
            return "".join(chunks)
        await asyncio.sleep(self._poll_interval)
        return None

    async def cancel_read(self) -> None:
        """Reads never block on the port, so there is nothing to interrupt."""
        return None
