import aiohttp
import pytest

from axconfig.registry import DeviceRegistry
from axconfig.server import StatusServer, health_snapshot


@pytest.mark.asyncio
async def test_health_snapshot_reports_device_errors(fake_transport_cls) -> None:
    registry = DeviceRegistry()
    device = registry.connect(fake_transport_cls())

    assert health_snapshot(registry)["status"] == "ok"

    device.status.error_state = "Error: battery"
    snapshot = health_snapshot(registry)

    assert snapshot["status"] == "degraded"
    assert snapshot["devices"] == 1
    assert list(snapshot["errors"].values()) == ["Error: battery"]
    await registry.clear()


@pytest.mark.asyncio
async def test_status_server_serves_devices(unused_tcp_port, fake_transport_cls) -> None:
    registry = DeviceRegistry()
    registry.connect(fake_transport_cls())

    host = "127.0.0.1"
    port = unused_tcp_port
    server = StatusServer(registry, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"

            async with session.get(f"http://{host}:{port}/devices") as response:
                devices = await response.json()
                assert response.status == 200
                assert devices["usb:CWA17_12345"]["state"] == "Ready"
    finally:
        await server.stop()
        await registry.clear()


@pytest.mark.asyncio
async def test_status_server_degraded_status_code(unused_tcp_port, fake_transport_cls) -> None:
    registry = DeviceRegistry()
    device = registry.connect(fake_transport_cls())
    device.status.error_state = "Device busy"

    host = "127.0.0.1"
    server = StatusServer(registry, host, unused_tcp_port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{unused_tcp_port}/healthz") as response:
                assert response.status == 503
    finally:
        await server.stop()
        await registry.clear()


@pytest.mark.asyncio
async def test_status_server_device_routes(
    unused_tcp_port, fake_transport_cls, simulated_logger_cls, fast_commands
) -> None:
    registry = DeviceRegistry(commands=fast_commands)
    transport = fake_transport_cls(simulated_logger_cls(battery=64))
    registry.connect(transport)
    server = StatusServer(registry, "127.0.0.1", unused_tcp_port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{server.url}/devices/usb:CWA17_12345") as response:
                assert response.status == 200
                assert (await response.json())["battery"]["percent"] is None

            async with session.post(f"{server.url}/devices/usb:CWA17_12345/refresh") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["battery"]["percent"] == 64
                assert payload["id"]["deviceId"] == 12345

            transport.busy = True
            async with session.post(f"{server.url}/devices/usb:CWA17_12345/refresh") as response:
                assert response.status == 409

            async with session.get(f"{server.url}/devices/usb:missing") as response:
                assert response.status == 404
    finally:
        await server.stop()
        await registry.clear()


@pytest.mark.asyncio
async def test_refresh_survives_disconnect_during_update(
    unused_tcp_port, fake_transport_cls, simulated_logger_cls, fast_commands
) -> None:
    registry = DeviceRegistry(commands=fast_commands)
    key = "usb:CWA17_12345"

    class UnpluggedOnClose(fake_transport_cls):
        unplug = True

        async def close(self) -> bool:
            if self.unplug:
                self.unplug = False
                await registry.disconnect(key)
            return await super().close()

    registry.connect(UnpluggedOnClose(simulated_logger_cls(battery=64)))
    server = StatusServer(registry, "127.0.0.1", unused_tcp_port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{server.url}/devices/{key}/refresh") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["battery"]["percent"] == 64
                assert payload["serialNumber"] == "CWA17_12345"

        assert key not in registry
    finally:
        await server.stop()
        await registry.clear()
