"""Configuration loader for axconfig."""

from __future__ import annotations

import dataclasses
from configparser import ConfigParser
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from . import constants
from .core.errors import ConfigurationError
from .core.models import CommitMode, LedColour
from .core.timestamps import (
    ALWAYS_AFTER,
    ALWAYS_BEFORE,
    MAX_YEAR,
    MIN_YEAR,
    Timestamp,
    decode_timestamp,
)
from .sampling import ACCEL_RANGE_CODES, GYRO_RANGES, RATE_CODES

MAX_SESSION_ID = 0xFFFFFFFF
METADATA_STRIP_SIZE = 32
METADATA_STRIP_COUNT = 14
MAX_METADATA_LENGTH = METADATA_STRIP_SIZE * METADATA_STRIP_COUNT

TRANSPORT_KINDS = ("auto", "usb", "serial")


@dataclass(slots=True)
class TransportConfig:
    kind: str = "auto"
    port: Optional[str] = None
    baudrate: int = constants.DEFAULT_SERIAL_BAUDRATE
    poll_interval_seconds: float = 0.05
    usb_read_timeout_ms: int = 500


@dataclass(slots=True)
class CommandConfig:
    retry_attempts: int = 3
    retry_interval_seconds: float = 1.0
    battery_max_age_seconds: float = 30.0
    nudge_delay_seconds: float = 0.1


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_transport: bool = False


@dataclass(slots=True)
class StatusServerConfig:
    host: str = constants.DEFAULT_STATUS_HOST
    port: int = constants.DEFAULT_STATUS_PORT


def _parse_led(value: Any) -> LedColour:
    if isinstance(value, LedColour):
        return value
    if isinstance(value, str) and not value.strip().isdigit():
        try:
            return LedColour[value.strip().upper()]
        except KeyError:
            raise ConfigurationError(f"Unknown LED colour: {value}") from None
    try:
        return LedColour(int(value))
    except ValueError:
        raise ConfigurationError(f"Unknown LED colour: {value}") from None


def _parse_commit(value: Any) -> CommitMode:
    try:
        return CommitMode(value.lower() if isinstance(value, str) else value)
    except ValueError:
        raise ConfigurationError(f"Unknown commit mode: {value}") from None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "yes", "true", "on"):
            return True
        if lowered in ("0", "no", "false", "off", ""):
            return False
        raise ConfigurationError(f"Invalid boolean value: {value}")
    return bool(value)


def _parse_optional_int(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(value)


def _parse_number(value: Any) -> float:
    number = float(value)
    return int(number) if number.is_integer() else number


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and not value.strip():
        return None
    parsed = _parse_timestamp(value)
    if not isinstance(parsed, datetime):
        raise ConfigurationError(f"Clock time must be an absolute time: {value}")
    return parsed


def _parse_timestamp(value: Any) -> Timestamp:
    """Accept a datetime, a sentinel, an ISO 8601 string or the wire format."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text in ("0", "-1"):
        return int(text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        return decode_timestamp(text)
    except ValueError:
        raise ConfigurationError(f"Invalid timestamp: {value}") from None


_RECORDING_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "min_battery": _parse_optional_int,
    "config_led": _parse_led,
    "time": _parse_time,
    "session": int,
    "max_samples": int,
    "rate": _parse_number,
    "accel_range": int,
    "gyro_range": int,
    "start": _parse_timestamp,
    "stop": _parse_timestamp,
    "metadata": str,
    "led": _parse_led,
    "commit": _parse_commit,
    "no_data": _parse_bool,
    "debug": _parse_bool,
    "device_id": _parse_optional_int,
    "packed": _parse_bool,
}


@dataclass(slots=True)
class RecordingConfig:
    """Settings applied to a device by ``configure``."""

    min_battery: Optional[int] = None
    config_led: LedColour = LedColour.BLUE
    time: Optional[datetime] = None
    session: int = 0
    max_samples: int = 0
    rate: float = 100
    accel_range: int = 8
    gyro_range: int = 0
    start: Timestamp = ALWAYS_AFTER
    stop: Timestamp = ALWAYS_BEFORE
    metadata: str = ""
    led: LedColour = LedColour.MAGENTA
    commit: CommitMode = CommitMode.WIPE
    no_data: bool = False
    debug: bool = False
    device_id: Optional[int] = None
    packed: bool = False

    @classmethod
    def from_mapping(
        cls, values: Mapping[str, Any], *, base: Optional[RecordingConfig] = None
    ) -> RecordingConfig:
        """Build a config from ``values`` layered over ``base`` (or the defaults).

        Raises:
            ConfigurationError: On unknown keys or values that cannot be parsed.
        """
        unknown = sorted(set(values) - set(_RECORDING_PARSERS))
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration value(s): {', '.join(unknown)}"
            )
        overrides: Dict[str, Any] = {}
        for key, value in values.items():
            try:
                overrides[key] = _RECORDING_PARSERS[key](value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value for {key}: {value!r}") from exc
        config = dataclasses.replace(base or cls(), **overrides)
        config.validate()
        return config

    def validate(self) -> None:
        """Check every field against its value domain.

        Hardware-dependent checks (gyroscope presence, rate limits) happen
        when the rate is applied to a device.
        """
        if self.min_battery is not None and not 0 <= self.min_battery <= 100:
            raise ConfigurationError(
                f"Minimum battery must be a percentage: {self.min_battery}"
            )
        if not 0 <= self.session <= MAX_SESSION_ID:
            raise ConfigurationError(f"Session ID invalid value: {self.session}")
        if self.max_samples < 0:
            raise ConfigurationError(f"Max samples invalid value: {self.max_samples}")
        if float(self.rate) not in RATE_CODES:
            raise ConfigurationError(f"Invalid accelerometer frequency: {self.rate}")
        if self.accel_range not in ACCEL_RANGE_CODES:
            raise ConfigurationError(
                f"Invalid accelerometer sensitivity: {self.accel_range}"
            )
        if self.gyro_range and self.gyro_range not in GYRO_RANGES:
            raise ConfigurationError(f"Invalid gyro range: {self.gyro_range}")
        for name in ("start", "stop"):
            value = getattr(self, name)
            if isinstance(value, datetime):
                if not MIN_YEAR <= value.year < MAX_YEAR:
                    raise ConfigurationError(f"{name} time out of range: {value}")
            elif value not in (ALWAYS_BEFORE, ALWAYS_AFTER):
                raise ConfigurationError(f"Invalid {name} time: {value!r}")
        if len(self.metadata) > MAX_METADATA_LENGTH:
            raise ConfigurationError(
                f"Metadata too long: {len(self.metadata)} characters "
                f"(maximum {MAX_METADATA_LENGTH})"
            )
        if self.device_id is not None and not 0 < self.device_id <= MAX_SESSION_ID:
            raise ConfigurationError(f"Device ID invalid value: {self.device_id}")


@dataclass(slots=True)
class AxConfig:
    transport: TransportConfig
    commands: CommandConfig
    recording: RecordingConfig
    logging: LoggingConfig
    status_server: StatusServerConfig
    raw: ConfigParser
    path: Path = field(default=constants.DEFAULT_CONFIG_PATH)


def load_config(path: Optional[Path] = None) -> AxConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "transport": {
                "kind": "auto",
                "baudrate": str(constants.DEFAULT_SERIAL_BAUDRATE),
                "poll_interval_seconds": "0.05",
                "usb_read_timeout_ms": "500",
            },
            "commands": {
                "retry_attempts": "3",
                "retry_interval_seconds": "1.0",
                "battery_max_age_seconds": "30",
                "nudge_delay_seconds": "0.1",
            },
            "recording": {
                "rate": "100",
                "accel_range": "8",
                "gyro_range": "0",
                "session": "0",
                "config_led": "blue",
                "led": "magenta",
                "commit": CommitMode.WIPE.value,
            },
            "logging": {
                "level": "INFO",
                "log_transport": "false",
            },
            "status_server": {
                "host": constants.DEFAULT_STATUS_HOST,
                "port": str(constants.DEFAULT_STATUS_PORT),
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    kind = parser.get("transport", "kind").strip().lower()
    if kind not in TRANSPORT_KINDS:
        raise ConfigurationError(
            f"Unknown transport kind {kind!r} (expected one of {', '.join(TRANSPORT_KINDS)})"
        )

    transport = TransportConfig(
        kind=kind,
        port=parser.get("transport", "port", fallback=None) or None,
        baudrate=parser.getint("transport", "baudrate"),
        poll_interval_seconds=parser.getfloat("transport", "poll_interval_seconds"),
        usb_read_timeout_ms=parser.getint("transport", "usb_read_timeout_ms"),
    )

    commands = CommandConfig(
        retry_attempts=max(1, parser.getint("commands", "retry_attempts")),
        retry_interval_seconds=max(
            0.0, parser.getfloat("commands", "retry_interval_seconds")
        ),
        battery_max_age_seconds=parser.getfloat("commands", "battery_max_age_seconds"),
        nudge_delay_seconds=parser.getfloat("commands", "nudge_delay_seconds"),
    )

    recording = RecordingConfig.from_mapping(dict(parser.items("recording")))

    log_path_value = parser.get("logging", "path", fallback=None)
    logging_config = LoggingConfig(
        level=parser.get("logging", "level"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_transport=parser.getboolean("logging", "log_transport", fallback=False),
    )

    status_server = StatusServerConfig(
        host=parser.get("status_server", "host"),
        port=parser.getint("status_server", "port"),
    )

    return AxConfig(
        transport=transport,
        commands=commands,
        recording=recording,
        logging=logging_config,
        status_server=status_server,
        raw=parser,
        path=config_path,
    )


def save_config(config: AxConfig) -> None:
    config.path.parent.mkdir(parents=True, exist_ok=True)
    with config.path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
