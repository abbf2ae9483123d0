import json

import pytest

from axconfig import cli
from axconfig.adapters import DeviceDescriptor
from axconfig.core.errors import ConfigurationError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "axconfig.cfg"
    path.write_text(
        "[commands]\n"
        "retry_attempts = 2\n"
        "retry_interval_seconds = 0\n"
        "nudge_delay_seconds = 0\n"
        "\n"
        "[recording]\n"
        "rate = 50\n"
        "session = 42\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def test_recording_overrides_from_arguments() -> None:
    args = cli.build_parser().parse_args(
        [
            "configure",
            "--rate",
            "25",
            "--range",
            "4",
            "--session",
            "9",
            "--no-data",
            "--meta",
            "SubjectCode=abc",
            "--meta",
            "_se=1",
        ]
    )

    overrides = cli.recording_overrides(args)

    assert overrides == {
        "rate": "25",
        "accel_range": "4",
        "session": "9",
        "no_data": True,
        "metadata": "_sc=abc&_se=1",
    }


def test_recording_overrides_rejects_bad_metadata_entry() -> None:
    args = cli.build_parser().parse_args(["configure", "--meta", "novalue"])

    with pytest.raises(ConfigurationError, match="KEY=VALUE"):
        cli.recording_overrides(args)


def test_show_config_prints_resolved_recording(config_file, capsys) -> None:
    assert cli.main(["-c", str(config_file), "show-config"]) == 0

    output = capsys.readouterr().out
    assert "[recording]" in output
    assert "rate = 50" in output
    assert "session = 42" in output


def test_invalid_config_file_returns_error(tmp_path, capsys) -> None:
    path = tmp_path / "bad.cfg"
    path.write_text("[transport]\nkind = bluetooth\n", encoding="utf-8")

    assert cli.main(["-c", str(path), "show-config"]) == 1
    assert "Invalid configuration" in capsys.readouterr().err


def test_list_prints_discovered_devices(config_file, monkeypatch, capsys) -> None:
    monkeypatch.setattr(
        cli,
        "discover_devices",
        lambda kind: [
            DeviceDescriptor(kind="serial", serial_number="CWA17_1", port="/dev/ttyACM0")
        ],
    )

    assert cli.main(["-c", str(config_file), "list"]) == 0

    output = capsys.readouterr().out
    assert "CWA17_1" in output
    assert "/dev/ttyACM0" in output


def test_status_without_device_fails(config_file, monkeypatch) -> None:
    monkeypatch.setattr(cli, "discover_devices", lambda kind: [])

    assert cli.main(["-c", str(config_file), "status"]) == 1


def test_select_transport_requires_unique_device(config_file, monkeypatch) -> None:
    config = cli.load_config(config_file)
    monkeypatch.setattr(
        cli,
        "discover_devices",
        lambda kind: [
            DeviceDescriptor(kind="serial", serial_number="A", port="/dev/ttyACM0"),
            DeviceDescriptor(kind="serial", serial_number="B", port="/dev/ttyACM1"),
        ],
    )

    with pytest.raises(ConfigurationError, match="Several devices"):
        cli.select_transport(config, None)

    transport = cli.select_transport(config, "B")
    assert transport.port == "/dev/ttyACM1"


def test_status_prints_device_state(
    config_file, monkeypatch, capsys, fake_transport_cls, simulated_logger_cls
) -> None:
    transport = fake_transport_cls(simulated_logger_cls(battery=75))
    monkeypatch.setattr(cli, "select_transport", lambda config, serial: transport)

    assert cli.main(["-c", str(config_file), "status"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["battery"]["percent"] == 75
    assert payload["id"]["deviceId"] == 12345
    assert transport.close_count >= 1
