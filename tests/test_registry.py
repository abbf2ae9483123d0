import pytest

from axconfig.registry import DeviceRegistry


@pytest.mark.asyncio
async def test_connect_and_disconnect(fake_transport_cls, fast_commands) -> None:
    events = []
    registry = DeviceRegistry(
        commands=fast_commands,
        changed_handler=lambda device, key, event: events.append((key, event)),
    )
    transport = fake_transport_cls()

    device = registry.connect(transport)
    key = registry.key_for(transport)

    assert key == "usb:CWA17_12345"
    assert key in registry
    assert registry.get(key) is device
    assert registry.single_device() is device

    removed = await registry.disconnect(key)

    assert removed is device
    assert len(registry) == 0
    assert events == [(key, "connect"), (key, "disconnect")]
    assert await registry.disconnect(key) is None


@pytest.mark.asyncio
async def test_single_device_requires_exactly_one(fake_transport_cls) -> None:
    registry = DeviceRegistry()
    assert registry.single_device() is None

    registry.connect(fake_transport_cls(serial_number="CWA17_1"))
    registry.connect(fake_transport_cls(serial_number="CWA17_2"))

    assert registry.single_device() is None
    assert len(list(registry)) == 2
    await registry.clear()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_snapshot_and_handler_failures(fake_transport_cls) -> None:
    def broken(device, key, event):
        raise RuntimeError("observer failed")

    registry = DeviceRegistry(changed_handler=broken)
    transport = fake_transport_cls(kind="serial", serial_number=None)

    device = registry.connect(transport)
    key = registry.key_for(transport)
    snapshot = registry.snapshot()

    assert key.startswith("serial:0x")
    assert snapshot[key]["transport"] == "serial"
    assert snapshot[key]["serialNumber"] is None
    assert snapshot[key]["state"] == device.status.state
    await registry.clear()
