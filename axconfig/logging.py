"""Logging setup for the CLI and the status server."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Loggers carrying raw device traffic (">>>"/"<<<" lines, USB stalls, reader threads)
WIRE_LOGGERS = ("axconfig.executor", "axconfig.adapters")
LIBRARY_LOGGERS = ("usb", "serial", "aiohttp.access")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_transport: bool = False
) -> None:
    """Replace the root handlers with console (and optional file) output.

    ``log_transport`` traces every command and response at DEBUG even when
    ``level`` is higher, and lets pyusb/pyserial log at that level too.
    Otherwise those libraries are held at WARNING.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    root_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=root_level, format=LOG_FORMAT)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    if log_transport:
        root.setLevel(logging.DEBUG)
        for handler in root.handlers:
            handler.setLevel(root_level)
        for name in WIRE_LOGGERS + LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)
        # Handlers filter at the requested level, so wire records need their own path
        wire_handler = logging.StreamHandler()
        wire_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        wire_handler.addFilter(_WireFilter(root_level))
        root.addHandler(wire_handler)
    else:
        for name in WIRE_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)
        for name in LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


class _WireFilter(logging.Filter):
    """Pass wire-logger records that the regular handlers would drop."""

    def __init__(self, threshold: int) -> None:
        super().__init__()
        self._threshold = threshold

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._threshold:
            return False
        return record.name.startswith(WIRE_LOGGERS + LIBRARY_LOGGERS)
