"""Command-line interface for axconfig."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import constants
from .adapters import (
    DeviceDescriptor,
    create_transport,
    discover_devices,
    transport_for_port,
)
from .config import AxConfig, RecordingConfig, load_config
from .core.errors import ConfigurationError, DeviceError
from .core.protocols import Transport
from .device import DeviceController
from .logging import configure_logging
from .metadata import encode_metadata
from .registry import DeviceRegistry
from .server import StatusServer

LOGGER = logging.getLogger(__name__)

# Command-line flag -> recording setting
_RECORDING_OPTIONS = {
    "rate": "rate",
    "accel_range": "accel_range",
    "gyro_range": "gyro_range",
    "session": "session",
    "max_samples": "max_samples",
    "start": "start",
    "stop": "stop",
    "min_battery": "min_battery",
    "commit": "commit",
    "led": "led",
    "config_led": "config_led",
    "time": "time",
    "device_id": "device_id",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="axconfig", description="Configure and download AX3/AX6 loggers"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    backend = parser.add_mutually_exclusive_group()
    backend.add_argument("--port", help="Use this serial port instead of discovery")
    backend.add_argument(
        "--usb", action="store_true", help="Only look for devices through libusb"
    )
    backend.add_argument(
        "--serial-ports", action="store_true", help="Only look for serial ports"
    )
    parser.add_argument(
        "-s", "--serial-number", help="Select the device with this serial number"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List attached devices")
    subparsers.add_parser("status", help="Query battery and recording status")

    configure_parser = subparsers.add_parser(
        "configure", help="Configure a device for recording"
    )
    configure_parser.add_argument("--rate", help="Sampling frequency in Hz")
    configure_parser.add_argument(
        "--range", dest="accel_range", help="Accelerometer range in g"
    )
    configure_parser.add_argument(
        "--gyro", dest="gyro_range", help="Gyroscope range in dps (0 disables)"
    )
    configure_parser.add_argument("--session", help="Session ID")
    configure_parser.add_argument("--max-samples", help="Sample limit (0 for none)")
    configure_parser.add_argument(
        "--start", help="Recording start time, ISO 8601, or -1 to never start"
    )
    configure_parser.add_argument(
        "--stop", help="Recording stop time, ISO 8601, or 0 to stop immediately"
    )
    configure_parser.add_argument("--time", help="Clock time to set (default: now)")
    configure_parser.add_argument("--metadata", help="Raw metadata text")
    configure_parser.add_argument(
        "--meta",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Metadata entry (repeatable), encoded with the standard short keys",
    )
    configure_parser.add_argument(
        "--commit", choices=("wipe", "erase", "commit"), help="Commit mode"
    )
    configure_parser.add_argument(
        "--min-battery", help="Refuse to configure below this battery percentage"
    )
    configure_parser.add_argument("--led", help="LED colour after configuration")
    configure_parser.add_argument(
        "--config-led", help="LED colour while configuring"
    )
    configure_parser.add_argument("--device-id", help="Write a new device ID")
    configure_parser.add_argument(
        "--no-data",
        action="store_true",
        help="Refuse to configure a device that still holds data",
    )
    configure_parser.add_argument(
        "--debug", action="store_true", help="Enable device debug mode"
    )
    configure_parser.add_argument(
        "--packed", action="store_true", help="Validate for packed sample storage"
    )

    diagnose_parser = subparsers.add_parser(
        "diagnose", help="Collect a diagnostic report"
    )
    diagnose_parser.add_argument(
        "-o", "--output", type=Path, help="Write the report to this file"
    )

    download_parser = subparsers.add_parser(
        "download", help="Copy the data file from a device"
    )
    download_parser.add_argument(
        "-o", "--output", type=Path, help="Destination file (default: <serial>.cwa)"
    )

    subparsers.add_parser("serve", help="Expose device status over HTTP")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def recording_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect the recording settings given on the command line."""
    overrides: Dict[str, Any] = {}
    for option, key in _RECORDING_OPTIONS.items():
        value = getattr(args, option, None)
        if value is not None:
            overrides[key] = value
    for flag in ("no_data", "debug", "packed"):
        if getattr(args, flag, False):
            overrides[flag] = True

    entries = getattr(args, "meta", None) or []
    if entries:
        pairs: Dict[str, str] = {}
        for entry in entries:
            key, separator, value = entry.partition("=")
            if not separator or not key:
                raise ConfigurationError(f"Metadata entries must be KEY=VALUE: {entry}")
            pairs[key] = value
        overrides["metadata"] = encode_metadata(pairs)
    elif getattr(args, "metadata", None) is not None:
        overrides["metadata"] = args.metadata
    return overrides


def _discover(config: AxConfig, serial_number: Optional[str]) -> List[DeviceDescriptor]:
    descriptors = discover_devices(config.transport.kind)
    if serial_number:
        descriptors = [d for d in descriptors if d.serial_number == serial_number]
    return descriptors


def select_transport(config: AxConfig, serial_number: Optional[str]) -> Transport:
    """Resolve exactly one transport from configuration or discovery."""
    if config.transport.port:
        return transport_for_port(config.transport.port, config.transport)

    descriptors = _discover(config, serial_number)
    if not descriptors:
        raise ConfigurationError("No device found")
    if len(descriptors) > 1:
        serials = ", ".join(d.serial_number or "?" for d in descriptors)
        raise ConfigurationError(
            f"Several devices attached ({serials}); choose one with --serial-number"
        )
    return create_transport(descriptors[0], config.transport)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_status(config: AxConfig, args: argparse.Namespace) -> int:
    device = DeviceController(
        select_transport(config, args.serial_number), commands=config.commands
    )
    try:
        status = await device.update_status()
    finally:
        await device.aclose()
    _print_json(status.as_dict())
    return 0


async def _run_configure(config: AxConfig, args: argparse.Namespace) -> int:
    recording = RecordingConfig.from_mapping(
        recording_overrides(args), base=config.recording
    )
    device = DeviceController(
        select_transport(config, args.serial_number), commands=config.commands
    )
    try:
        report = await device.configure(recording)
    finally:
        await device.aclose()
    _print_json(report.as_dict())
    print(device.status.state, file=sys.stderr)
    return 0


async def _run_diagnose(config: AxConfig, args: argparse.Namespace) -> int:
    device = DeviceController(
        select_transport(config, args.serial_number), commands=config.commands
    )
    try:
        report = await device.run_diagnostic()
    finally:
        await device.aclose()
    text = json.dumps(report.as_dict(), indent=2, default=str)
    if args.output:
        args.output.write_text(text + "\n", encoding="utf-8")
        LOGGER.info("Diagnostic report written to %s", args.output)
    else:
        print(text)
    return 1 if report.errors else 0


async def _run_download(config: AxConfig, args: argparse.Namespace) -> int:
    transport = select_transport(config, args.serial_number)
    device = DeviceController(transport, commands=config.commands)
    output = args.output or Path(
        f"{transport.serial_number or Path(constants.DATA_FILENAME).stem}.cwa"
    )

    def progress(done: int, total: int) -> None:
        LOGGER.debug("Downloaded %d/%d bytes", done, total)

    try:
        written = await device.download(output, progress=progress)
    finally:
        await device.aclose()
    print(f"{written} bytes written to {output}")
    return 0


async def _run_serve(config: AxConfig, args: argparse.Namespace) -> int:
    registry = DeviceRegistry(commands=config.commands)
    if config.transport.port:
        transports = [transport_for_port(config.transport.port, config.transport)]
    else:
        transports = [
            create_transport(descriptor, config.transport)
            for descriptor in _discover(config, args.serial_number)
        ]
    for transport in transports:
        device = registry.connect(transport)
        try:
            await device.update_status()
        except DeviceError as exc:
            LOGGER.warning("Initial status for %s failed: %s", device, exc)

    server = StatusServer(
        registry, config.status_server.host, config.status_server.port
    )
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await registry.clear()
    return 0


def _run_list(config: AxConfig, args: argparse.Namespace) -> int:
    descriptors = _discover(config, args.serial_number)
    if not descriptors:
        print("No devices found")
        return 0
    for descriptor in descriptors:
        print(
            f"{descriptor.kind:<7}{descriptor.serial_number or '-':<16}"
            f"{descriptor.port or descriptor.location or ''}"
        )
    return 0


def _show_config(config: AxConfig) -> int:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            print(f"{key} = {value}")
        print()
    print("[resolved recording]")
    for key, value in dataclasses.asdict(config.recording).items():
        print(f"{key} = {value}")
    return 0


_ASYNC_COMMANDS = {
    "status": _run_status,
    "configure": _run_configure,
    "diagnose": _run_diagnose,
    "download": _run_download,
    "serve": _run_serve,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    if args.port:
        config.transport.port = args.port
    elif args.usb:
        config.transport.kind = "usb"
    elif args.serial_ports:
        config.transport.kind = "serial"

    configure_logging(
        "DEBUG" if args.verbose else config.logging.level,
        log_path=config.logging.path,
        log_transport=config.logging.log_transport,
    )

    if args.command == "show-config":
        return _show_config(config)

    try:
        if args.command == "list":
            return _run_list(config, args)
        handler = _ASYNC_COMMANDS.get(args.command)
        if handler is None:
            LOGGER.error("Unknown command: %s", args.command)
            return 1
        return asyncio.run(handler(config, args))
    except KeyboardInterrupt:
        LOGGER.info("axconfig interrupted")
        return 130
    except (DeviceError, FileNotFoundError, OSError) as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
