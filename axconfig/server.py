"""Local HTTP endpoint exposing device status.

Routes:
    GET  /healthz                 200 while no device reports an error, else 503
    GET  /devices                 status of every registered device
    GET  /devices/{key}           status of one device
    POST /devices/{key}/refresh   query the device again and return its status
"""

from __future__ import annotations

import contextlib
import logging
from typing import Dict, Optional

from aiohttp import web

from .core.errors import DeviceBusyError, DeviceError
from .registry import DeviceRegistry, describe_device

LOGGER = logging.getLogger(__name__)


def health_snapshot(registry: DeviceRegistry) -> Dict[str, object]:
    devices = registry.snapshot()
    errors = {
        key: entry["errorState"]
        for key, entry in devices.items()
        if entry.get("errorState")
    }
    return {
        "status": "degraded" if errors else "ok",
        "devices": len(devices),
        "errors": errors,
    }


class StatusServer:
    """aiohttp application serving the device registry."""

    def __init__(self, registry: DeviceRegistry, host: str, port: int) -> None:
        self._registry = registry
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/devices", self._handle_devices)
        app.router.add_get("/devices/{key}", self._handle_device)
        app.router.add_post("/devices/{key}/refresh", self._handle_refresh)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Status endpoint listening on %s", self.url)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = health_snapshot(self._registry)
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_devices(self, request: web.Request) -> web.Response:
        return web.json_response(self._registry.snapshot())

    async def _handle_device(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        entry = self._registry.snapshot().get(key)
        if entry is None:
            return web.json_response({"error": f"Unknown device: {key}"}, status=404)
        return web.json_response(entry)

    async def _handle_refresh(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        device = self._registry.get(key)
        if device is None:
            return web.json_response({"error": f"Unknown device: {key}"}, status=404)
        try:
            await device.update_status()
        except DeviceBusyError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except DeviceError as exc:
            LOGGER.warning("Refresh of %s failed: %s", key, exc)
            return web.json_response(
                {"error": str(exc), "kind": exc.kind.value}, status=502
            )
        # The device may have been disconnected while the refresh ran
        return web.json_response(describe_device(device))
