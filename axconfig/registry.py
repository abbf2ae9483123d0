"""In-memory registry of connected devices.

One :class:`DeviceController` exists per connected transport. Entries are
created by :meth:`DeviceRegistry.connect` and torn down by
:meth:`DeviceRegistry.disconnect`; observers registered with
``changed_handler`` are told about both.

Usage:
    registry = DeviceRegistry(commands=config.commands)
    device = registry.connect(transport)
    await device.update_status()
    ...
    await registry.disconnect(registry.key_for(transport))
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, Optional

from .config import CommandConfig
from .core.protocols import Transport
from .device import DeviceController

LOGGER = logging.getLogger(__name__)

ChangedHandler = Callable[[DeviceController, str, str], None]


def describe_device(device: DeviceController) -> Dict[str, Any]:
    entry = device.status.as_dict()
    entry["transport"] = device.transport.kind
    entry["serialNumber"] = device.serial_number
    return entry


class DeviceRegistry:
    """Explicit registry value replacing a module-level device map."""

    def __init__(
        self,
        *,
        commands: Optional[CommandConfig] = None,
        changed_handler: Optional[ChangedHandler] = None,
    ) -> None:
        self._commands = commands
        self._changed_handler = changed_handler
        self._devices: OrderedDict[str, DeviceController] = OrderedDict()

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[DeviceController]:
        return iter(list(self._devices.values()))

    def __contains__(self, key: object) -> bool:
        return key in self._devices

    @staticmethod
    def key_for(transport: Transport) -> str:
        """Stable identity for a transport: serial number when known."""
        identity = transport.serial_number or f"0x{id(transport):x}"
        return f"{transport.kind}:{identity}"

    def connect(self, transport: Transport, *, key: Optional[str] = None) -> DeviceController:
        """Create (or replace) the controller for ``transport``."""
        key = key or self.key_for(transport)
        if key in self._devices:
            LOGGER.warning("Replacing existing device entry %s", key)
        device = DeviceController(transport, commands=self._commands)
        self._devices[key] = device
        LOGGER.info("Device connected: %s", key)
        self._notify(device, key, "connect")
        return device

    async def disconnect(self, key: str) -> Optional[DeviceController]:
        """Remove a device and release its executor; returns the removed entry."""
        device = self._devices.pop(key, None)
        if device is None:
            LOGGER.debug("Disconnect for unknown device %s", key)
            return None
        await device.aclose()
        LOGGER.info("Device disconnected: %s", key)
        self._notify(device, key, "disconnect")
        return device

    async def clear(self) -> None:
        for key in list(self._devices):
            await self.disconnect(key)

    def get(self, key: str) -> Optional[DeviceController]:
        return self._devices.get(key)

    def single_device(self) -> Optional[DeviceController]:
        """The only connected device, or None when there are zero or several."""
        if len(self._devices) != 1:
            return None
        return next(iter(self._devices.values()))

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        payload: Dict[str, Dict[str, Any]] = {}
        for key, device in self._devices.items():
            payload[key] = describe_device(device)
        return payload

    def _notify(self, device: DeviceController, key: str, event: str) -> None:
        if self._changed_handler is None:
            return
        try:
            self._changed_handler(device, key, event)
        except Exception:
            LOGGER.exception("Device %s handler failed for %s", event, key)
