"""Constants used across the axconfig package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "axconfig"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

USB_DEVICE_VID = 0x04D8
USB_DEVICE_PID = 0x0057

DEFAULT_SERIAL_BAUDRATE = 9600

DEFAULT_STATUS_HOST = "127.0.0.1"
DEFAULT_STATUS_PORT = 8765

DATA_FILENAME = "CWA-DATA.CWA"
