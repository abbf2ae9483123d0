"""Device command vocabulary and the configure/status/diagnostic workflows."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

from .config import CommandConfig, MAX_SESSION_ID, RecordingConfig
from .constants import DATA_FILENAME
from .core.errors import (
    ConfigurationError,
    DeviceBusyError,
    DeviceError,
    IntegrityError,
    ValueMismatch,
)
from .core.models import (
    BatteryStatus,
    Command,
    CommitMode,
    DeviceIdentity,
    DeviceStatus,
    LedColour,
    LogEntry,
    PendingCommand,
    SamplingConfig,
)
from .core.protocols import Transport
from .core.retry import try_and_retry
from .core.timestamps import (
    Timestamp,
    decode_timestamp,
    encode_timestamp,
    timestamp_to_json,
)
from .cwa import decode_data_record, decode_header
from .executor import CommandExecutor
from .filesystem import SECTOR_SIZE, FileEntry, FilesystemReader, parse_sector_dump
from .metadata import metadata_strips
from .sampling import encode_rate, reported_frequency, validate_gyro_range
from .status import apply_recording_status

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

StatusHandler = Callable[["DeviceController", DeviceStatus], None]

DEFAULT_TIMEOUT_MS = 2000
ANNOTATE_TIMEOUT_MS = 1000
READ_SECTOR_TIMEOUT_MS = 10000
LOG_TIMEOUT_MS = 5000
TIME_TOLERANCE_SECONDS = 2.0

# Data file size at or below which the volume counts as empty (header only)
EMPTY_DATA_LENGTH = 1024
DATA_HEADER_SIZE = 1024

COMMIT_COMMANDS: Dict[CommitMode, tuple[str, int, str]] = {
    CommitMode.WIPE: ("FORMAT WC", 10000, "Configuring: Wiping and committing"),
    CommitMode.ERASE: ("FORMAT QC", 8000, "Configuring: Erasing and committing"),
    CommitMode.COMMIT: ("Commit", 5000, "Configuring: Committing"),
}

_LEADING_INT = re.compile(r"^\s*([-+]?\d+)")


def parse_serial_number(serial: Optional[str]) -> Optional[int]:
    """Numeric device ID from a descriptor serial string such as ``CWA17_12345``."""
    if serial is None:
        return None
    serial = serial.strip()
    if not serial.startswith(("AX", "CWA")):
        return None
    digits = re.search(r"(\d+)$", serial)
    if digits is None:
        return None
    return int(digits.group(1))


def device_type_from_serial(serial: Optional[str]) -> Optional[str]:
    if not serial:
        return None
    serial = serial.strip()
    if serial.startswith("CWA"):
        return "AX3"
    if serial.startswith("AX"):
        return serial[:3]
    return None


def _to_int(text: str) -> Optional[int]:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def _value(response: str) -> str:
    return response.split("=", 1)[1] if "=" in response else response


def _int_parts(response: str) -> List[Optional[int]]:
    return [_to_int(part) for part in _value(response).split(",")]


def _printable(text: str) -> str:
    return text.replace("\r", "|").replace("\n", "|")


@dataclass(slots=True)
class ConfigurationReport:
    """Values written to the device by a successful ``configure``."""

    time: datetime
    device_id: Optional[int]
    battery: Optional[int]
    start: Timestamp
    stop: Timestamp
    session: int
    rate: float
    accel_range: int
    gyro_range: int
    metadata: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "time": timestamp_to_json(self.time),
            "deviceId": self.device_id,
            "battery": self.battery,
            "start": timestamp_to_json(self.start),
            "stop": timestamp_to_json(self.stop),
            "session": self.session,
            "rate": self.rate,
            "range": self.accel_range,
            "gyro": self.gyro_range,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class DiagnosticReport:
    """Best-effort snapshot of device state; failures are listed in ``errors``."""

    identity: Dict[str, Any]
    battery: Dict[str, Any]
    start: Union[str, int, None]
    stop: Union[str, int, None]
    rate: Optional[Dict[str, Any]] = None
    time: Union[str, int, None] = None
    session: Optional[int] = None
    max_samples: Optional[int] = None
    device_status: Optional[Dict[str, str]] = None
    log: Optional[List[Dict[str, Any]]] = None
    filesystem: Optional[Dict[str, Any]] = None
    data_file: Optional[Dict[str, Any]] = None
    header: Optional[Dict[str, Any]] = None
    first_data: Optional[Dict[str, Any]] = None
    last_data: Optional[Dict[str, Any]] = None
    sectors: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identity,
            "battery": self.battery,
            "start": self.start,
            "stop": self.stop,
            "rate": self.rate,
            "time": self.time,
            "session": self.session,
            "maxSamples": self.max_samples,
            "status": self.device_status,
            "log": self.log,
            "filesystem": self.filesystem,
            "dataFile": self.data_file,
            "header": self.header,
            "firstData": self.first_data,
            "lastData": self.last_data,
            "sectors": dict(self.sectors),
            "errors": list(self.errors),
        }


class DeviceController:
    """Typed operations on one connected device.

    All I/O goes through a private :class:`CommandExecutor`. The top-level
    workflows (:meth:`configure`, :meth:`update_status`,
    :meth:`run_diagnostic`, :meth:`download`) open the transport, retry each
    step individually and always close the transport again.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        commands: Optional[CommandConfig] = None,
    ) -> None:
        self.transport = transport
        self._commands = commands or CommandConfig()
        self._executor = CommandExecutor(
            transport, nudge_delay=self._commands.nudge_delay_seconds
        )
        self.serial_number = transport.serial_number
        self.serial = parse_serial_number(transport.serial_number)
        self.device_type = device_type_from_serial(transport.serial_number)
        self.has_gyro = self.device_type == "AX6"
        self.status = DeviceStatus()
        self._status_handler: Optional[StatusHandler] = None
        self._busy = False
        self._update_state(apply_recording_status(self.status))

    def __repr__(self) -> str:
        return (
            f"DeviceController(kind={self.transport.kind!r}, "
            f"serial={self.serial_number!r})"
        )

    # ------------------------------------------------------------------
    # Status bookkeeping
    # ------------------------------------------------------------------
    def set_status_handler(self, handler: Optional[StatusHandler]) -> None:
        self._status_handler = handler

    def _update_state(
        self, state: Optional[str], error_state: Optional[str] = None
    ) -> None:
        self.status.state = state
        self.status.error_state = error_state
        if error_state:
            LOGGER.info("State: %s / %s", state, error_state)
        else:
            LOGGER.info("State: %s", state)
        if self._status_handler is not None:
            self._status_handler(self, self.status)

    def _ensure_idle(self) -> None:
        """Claim the device for one top-level workflow or raise DeviceBusyError.

        Runs before the first await so that a concurrent workflow sees the claim.
        """
        if self._busy or self.transport.is_busy():
            self._update_state(None, "Device busy")
            raise DeviceBusyError("Device is busy")
        self._busy = True

    def _check_identity(self, identity: DeviceIdentity) -> None:
        if identity.device_id == self.serial:
            return
        if self.serial is None and self.transport.kind == "serial":
            LOGGER.warning(
                "Serial port did not report a serial number, not verifying reported ID=%s",
                identity.device_id,
            )
            return
        raise ValueMismatch(
            f"Device id mismatch: reported ID={identity.device_id} "
            f"but serial number was {self.serial}"
        )

    async def _retry(self, task: Callable[[], Awaitable[T]]) -> T:
        return await try_and_retry(
            task,
            attempts=self._commands.retry_attempts,
            interval=self._commands.retry_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def open(self) -> None:
        self._executor.reset_buffer()
        await self.transport.open()
        LOGGER.debug("Transport opened")

    async def close(self) -> bool:
        try:
            closed = await self.transport.close()
        except Exception as exc:
            LOGGER.warning("Failed to close transport: %s", exc)
            return False
        if not closed:
            LOGGER.warning("Transport reported a problem while closing")
        return closed

    async def aclose(self) -> None:
        await self._executor.aclose()
        await self.close()

    async def _release(self) -> None:
        try:
            await self.close()
        finally:
            self._busy = False

    async def _execute(
        self,
        output: str,
        terminal_prefix: Union[str, tuple[str, ...]],
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> PendingCommand:
        command = Command(f"\r\n{output}\r\n", terminal_prefix, timeout_ms)
        return await self._executor.execute(command)

    async def _exec(
        self,
        output: str,
        terminal_prefix: Union[str, tuple[str, ...]],
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> str:
        result = await self._execute(output, terminal_prefix, timeout_ms)
        response = result.last_line() or ""
        LOGGER.debug("%s -> %s", _printable(output), response)
        return response

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------
    async def get_id(self) -> DeviceIdentity:
        response = await self._exec("ID", "ID=")
        parts = _value(response).split(",")
        if len(parts) < 4:
            raise ValueMismatch(f"Unexpected ID response: {response}")
        self.has_gyro = parts[0] == "AX6"
        return DeviceIdentity(
            device_type="AX3" if parts[0] == "CWA" else parts[0],
            device_id=_to_int(parts[3]),
            firmware_version=_to_int(parts[2]),
        )

    async def get_battery(self) -> BatteryStatus:
        # $BATT=718,4207,mV,98,1
        response = await self._exec("SAMPLE 1", "$BATT=")
        parts = _int_parts(response)
        if len(parts) < 5 or parts[1] is None:
            raise ValueMismatch(f"Unexpected battery response: {response}")
        return BatteryStatus(
            voltage=parts[1] / 1000.0,
            percent=parts[3],
            charging=bool(parts[4]) if parts[4] is not None else None,
            sampled_at=datetime.now(),
        )

    async def set_led(self, colour: Union[LedColour, int]) -> None:
        value = int(colour)
        response = await self._exec(f"LED {value}", "LED=")
        reported = _int_parts(response)[0]
        if reported != value:
            raise ValueMismatch(f"LED value unexpected: was {reported}, expected {value}")

    async def get_time(self) -> Timestamp:
        response = await self._exec("TIME", "$TIME=")
        return self._parse_timestamp(response)

    async def set_time(self, value: Optional[datetime] = None) -> None:
        self._update_state("Configuring: Setting time")
        requested = value or datetime.now()
        response = await self._exec(f"TIME {encode_timestamp(requested)}", "$TIME=")
        reported = self._parse_timestamp(response)
        if not isinstance(reported, datetime):
            raise ValueMismatch(f"Time value unexpected: was {reported!r}")
        difference = abs((reported - requested).total_seconds())
        if difference > TIME_TOLERANCE_SECONDS:
            raise ValueMismatch(
                f"Time value difference too large: received {reported.isoformat()}, "
                f"expected closer to {requested.isoformat()}"
            )

    async def get_session(self) -> Optional[int]:
        response = await self._exec("SESSION", "SESSION=")
        return _int_parts(response)[0]

    async def set_session(self, session_id: int) -> None:
        self._update_state("Configuring: Setting session ID")
        if not 0 <= session_id <= MAX_SESSION_ID:
            raise ConfigurationError(f"Session ID invalid value: {session_id}")
        response = await self._exec(f"SESSION {session_id}", "SESSION=")
        reported = _int_parts(response)[0]
        if reported != session_id:
            raise ValueMismatch(
                f"SESSION value unexpected: was {reported}, expected {session_id}"
            )

    async def get_max_samples(self) -> Optional[int]:
        response = await self._exec("MAXSAMPLES", "MAXSAMPLES=")
        return _int_parts(response)[0]

    async def set_max_samples(self, max_samples: int) -> None:
        self._update_state("Configuring: Setting max. samples")
        response = await self._exec(f"MAXSAMPLES {max_samples}", "MAXSAMPLES=")
        reported = _int_parts(response)[0]
        if reported != max_samples:
            raise ValueMismatch(
                f"MAXSAMPLES value unexpected: was {reported}, expected {max_samples}"
            )

    async def get_hibernate(self) -> Timestamp:
        response = await self._exec("HIBERNATE", "HIBERNATE=")
        return self._parse_timestamp(response)

    async def set_hibernate(self, value: Timestamp) -> None:
        self._update_state("Configuring: Setting start")
        timestamp = encode_timestamp(value)
        response = await self._exec(f"HIBERNATE {timestamp}", "HIBERNATE=")
        reported = _value(response)
        if reported != timestamp:
            raise ValueMismatch(
                f"HIBERNATE value unexpected: was {reported}, expected {timestamp}"
            )

    async def get_stop(self) -> Timestamp:
        response = await self._exec("STOP", "STOP=")
        return self._parse_timestamp(response)

    async def set_stop(self, value: Timestamp) -> None:
        self._update_state("Configuring: Setting stop")
        timestamp = encode_timestamp(value)
        response = await self._exec(f"STOP {timestamp}", "STOP=")
        reported = _value(response)
        if timestamp not in reported:
            raise ValueMismatch(
                f"STOP value unexpected: was {reported}, expected {timestamp}"
            )

    async def get_rate(self) -> SamplingConfig:
        response = await self._exec("RATE", "RATE=")
        parts = _int_parts(response)
        if len(parts) < 2 or parts[0] is None or parts[1] is None:
            raise ValueMismatch(f"Unexpected RATE response: {response}")
        return SamplingConfig(
            rate_code=parts[0],
            frequency=parts[1],
            accel_range=16 >> (parts[0] >> 6),
            gyro_range=parts[2] if len(parts) > 2 else None,
        )

    async def set_rate(
        self,
        rate: float,
        accel_range: int,
        gyro_range: Optional[int] = None,
        *,
        packed: bool = False,
    ) -> int:
        """Apply sampling settings; returns the composed ``RATE`` byte."""
        self._update_state("Configuring: Setting rate")
        value = encode_rate(
            rate, accel_range, gyro_range, has_gyro=self.has_gyro, packed=packed
        )
        gyro = validate_gyro_range(gyro_range, has_gyro=self.has_gyro)
        output = f"RATE {value},{gyro}" if gyro else f"RATE {value}"
        response = await self._exec(output, "RATE=")
        parts = _int_parts(response)
        parts += [None] * (3 - len(parts))
        if parts[0] != value:
            raise ValueMismatch(f"RATE value unexpected: was {parts[0]}, expected {value}")
        expected_frequency = reported_frequency(rate)
        if parts[1] != expected_frequency:
            raise ValueMismatch(
                f"RATE frequency unexpected: was {parts[1]}, expected {expected_frequency}"
            )
        if gyro and parts[2] != gyro:
            raise ValueMismatch(
                f"RATE gyro range unexpected: was {parts[2]}, expected {gyro}"
            )
        return value

    async def get_debug(self) -> Optional[int]:
        response = await self._exec("DEBUG", "DEBUG=")
        return _int_parts(response)[0]

    async def set_debug(self, debug: Union[bool, int]) -> None:
        value = 3 if debug is True else int(debug)
        self._update_state("Configuring: Setting flash status")
        response = await self._exec(f"DEBUG {value}", "DEBUG=")
        reported = _int_parts(response)[0]
        if reported != value:
            raise ValueMismatch(
                f"DEBUG value unexpected: was {reported}, expected {value}"
            )

    async def set_device_id(self, device_id: int) -> None:
        self._update_state("Configuring: Setting device ID")
        response = await self._exec(f"DEVICE={device_id}", "DEVICE=")
        reported = _int_parts(response)[0]
        if reported != device_id:
            raise ValueMismatch(
                f"DEVICE value unexpected: was {reported}, expected {device_id}"
            )
        self.status.identity.device_id = device_id
        self.serial = device_id

    async def set_metadata(self, metadata: str) -> None:
        """Write all 14 annotation strips, retrying each one independently."""
        strips = metadata_strips(metadata)
        for index, strip in enumerate(strips):
            self._update_state(
                f"Configuring: Setting metadata ({index + 1} / {len(strips)})"
            )
            await self._retry(lambda: self._write_metadata_strip(index, strip))

    async def _write_metadata_strip(self, index: int, strip: str) -> None:
        prefix = f"ANNOTATE{index:02d}="
        response = await self._exec(
            f"Annotate{index:02d}={strip}", prefix, ANNOTATE_TIMEOUT_MS
        )
        reported = _value(response).strip()
        if reported != strip.strip():
            raise ValueMismatch(
                f"{prefix} unexpected value, received {reported!r}, "
                f"expected {strip.strip()!r}"
            )

    async def commit(self, mode: CommitMode = CommitMode.WIPE) -> None:
        output, timeout_ms, label = COMMIT_COMMANDS[CommitMode(mode)]
        self._update_state(label)
        await self._exec(output, "COMMIT", timeout_ms)

    async def read_sector(self, sector_number: int) -> bytes:
        result = await self._execute(
            f"READL {sector_number}", ("OK", "ECHO="), READ_SECTOR_TIMEOUT_MS
        )
        return parse_sector_dump(result.lines)

    async def get_device_status(self) -> Dict[str, str]:
        """Query ``STATUS`` flags (FTL, RESTART, NANDID, ...) as a key/value mapping."""
        result = await self._execute("STATUS\r\nECHO", "ECHO=")
        values: Dict[str, str] = {}
        for line in result.lines:
            if "=" not in line or line.startswith("ECHO="):
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip()
        return values

    async def get_log(self) -> List[LogEntry]:
        result = await self._execute("LOG", "LOG,0", LOG_TIMEOUT_MS)
        entries: List[LogEntry] = []
        for line in result.lines:
            if not line.startswith("LOG,"):
                continue
            parts = line.split(",")
            if len(parts) < 5:
                continue
            index = _to_int(parts[1])
            code = _to_int(parts[2])
            if index is None or code is None:
                continue
            try:
                timestamp: Optional[Timestamp] = decode_timestamp(
                    f"{parts[3]},{parts[4]}"
                )
            except ValueError:
                timestamp = None
            entries.append(
                LogEntry(
                    index=index,
                    code=code,
                    timestamp=timestamp,
                    status=",".join(parts[5:]).strip(),
                )
            )
        return entries

    def _parse_timestamp(self, response: str) -> Timestamp:
        try:
            return decode_timestamp(_value(response))
        except ValueError:
            raise ValueMismatch(f"Unexpected timestamp response: {response}") from None

    def filesystem(self) -> FilesystemReader:
        """A fresh reader whose sector reads are each retried."""
        return FilesystemReader(
            lambda sector: self._retry(lambda: self.read_sector(sector))
        )

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------
    async def update_status(self) -> DeviceStatus:
        self._ensure_idle()
        try:
            self._update_state("Querying status")
            await self._retry(self.open)

            if self.status.identity.device_id is None:
                identity = await self._retry(self.get_id)
                self._check_identity(identity)
                self.status.identity = identity
                LOGGER.debug("ID=%s", identity.as_dict())

            if self.status.battery.is_stale(self._commands.battery_max_age_seconds):
                self.status.battery = await self._retry(self.get_battery)
                LOGGER.debug("BATTERY=%s", self.status.battery.as_dict())

            if self.status.start is None:
                self.status.start = await self._retry(self.get_hibernate)
            if self.status.stop is None:
                self.status.stop = await self._retry(self.get_stop)

            self._update_state(apply_recording_status(self.status))
            return self.status
        except Exception as exc:
            LOGGER.error("Problem during status update: %s", exc)
            self._update_state(None, f"Error getting status: {exc}")
            raise
        finally:
            await self._release()

    async def configure(
        self, config: Union[RecordingConfig, Mapping[str, Any], None] = None
    ) -> ConfigurationReport:
        self._ensure_idle()
        try:
            self._update_state("Configuring...")
            if config is None:
                config = RecordingConfig()
            elif isinstance(config, RecordingConfig):
                config.validate()
            else:
                config = RecordingConfig.from_mapping(config)

            await self._retry(self.open)

            if self.status.identity.device_id is None:
                self.status.identity = await self._retry(self.get_id)
            LOGGER.debug("ID=%s", self.status.identity.as_dict())
            self._check_identity(self.status.identity)

            await self._retry(lambda: self.set_led(config.config_led))

            if config.min_battery is not None:
                if self.status.battery.percent is None:
                    self.status.battery = await self._retry(self.get_battery)
                percent = self.status.battery.percent
                if percent is None or percent < config.min_battery:
                    raise ConfigurationError(
                        f"Device battery level too low: {percent}% "
                        f"(required {config.min_battery}%)"
                    )

            if config.no_data:
                self._update_state("Reading filesystem")
                entry = await self.filesystem().find_file(DATA_FILENAME)
                LOGGER.debug("Data file: %s", entry)
                if entry.exists and entry.length > EMPTY_DATA_LENGTH:
                    raise ConfigurationError("Device has data on it")

            time = config.time or datetime.now()
            await self._retry(lambda: self.set_time(time))
            if config.device_id is not None:
                await self._retry(lambda: self.set_device_id(config.device_id))
            await self._retry(
                lambda: self.set_rate(
                    config.rate,
                    config.accel_range,
                    config.gyro_range,
                    packed=config.packed,
                )
            )
            await self._retry(lambda: self.set_session(config.session))
            await self._retry(lambda: self.set_max_samples(config.max_samples))
            await self._retry(lambda: self.set_debug(3 if config.debug else 0))
            await self._retry(lambda: self.set_hibernate(config.start))
            await self._retry(lambda: self.set_stop(config.stop))
            await self.set_metadata(config.metadata)
            await self._retry(lambda: self.commit(config.commit))

            self.status.start = config.start
            self.status.stop = config.stop
            self._update_state(
                apply_recording_status(self.status, just_configured=True)
            )

            await self._retry(lambda: self.set_led(config.led))

            return ConfigurationReport(
                time=time,
                device_id=self.status.identity.device_id,
                battery=self.status.battery.percent,
                start=config.start,
                stop=config.stop,
                session=config.session,
                rate=config.rate,
                accel_range=config.accel_range,
                gyro_range=config.gyro_range,
                metadata=config.metadata,
            )
        except Exception as exc:
            LOGGER.error("Problem during configuration: %s", exc)
            self._update_state(None, f"Error: {exc}")
            raise
        finally:
            await self._release()

    async def run_diagnostic(self) -> DiagnosticReport:
        self._ensure_idle()
        report = DiagnosticReport(
            identity=self.status.identity.as_dict(),
            battery=self.status.battery.as_dict(),
            start=timestamp_to_json(self.status.start),
            stop=timestamp_to_json(self.status.stop),
        )
        self._update_state("Running diagnostics")
        try:
            try:
                await self._retry(self.open)
            except DeviceError as exc:
                LOGGER.warning("Diagnostics: open failed: %s", exc)
                report.errors.append(f"open: {exc}")
                return report

            rate = await self._collect(report, "rate", self.get_rate)
            report.rate = rate.as_dict() if rate is not None else None
            clock = await self._collect(report, "time", self.get_time)
            report.time = timestamp_to_json(clock)
            report.session = await self._collect(report, "session", self.get_session)
            report.max_samples = await self._collect(
                report, "maxSamples", self.get_max_samples
            )
            report.device_status = await self._collect(
                report, "status", self.get_device_status
            )
            log = await self._collect(report, "log", self.get_log)
            report.log = [entry.as_dict() for entry in log] if log is not None else None

            await self._collect_data_file(report)
        finally:
            await self._release()
            self._update_state(apply_recording_status(self.status))
        return report

    async def _collect(
        self,
        report: DiagnosticReport,
        name: str,
        task: Callable[[], Awaitable[T]],
    ) -> Optional[T]:
        try:
            return await self._retry(task)
        except (DeviceError, FileNotFoundError) as exc:
            LOGGER.warning("Diagnostics: %s failed: %s", name, exc)
            report.errors.append(f"{name}: {exc}")
            return None

    async def _collect_data_file(self, report: DiagnosticReport) -> None:
        reader = self.filesystem()
        layout = await self._collect(report, "filesystem", reader.read_layout)
        if layout is None:
            return
        report.filesystem = layout.as_dict()

        entry = await self._collect(
            report, "dataFile", lambda: reader.find_file(DATA_FILENAME)
        )
        if entry is None:
            return
        report.data_file = entry.as_dict()
        if not entry.exists or entry.length == 0:
            return

        header = await self._read_file_sector(report, entry, "header", 0)
        if header is not None:
            decoded = _decode(report, "header", decode_header, header)
            report.header = decoded.as_dict() if decoded is not None else None

        if entry.length >= DATA_HEADER_SIZE + SECTOR_SIZE:
            first = await self._read_file_sector(
                report, entry, "firstData", DATA_HEADER_SIZE
            )
            if first is not None:
                decoded = _decode(report, "firstData", decode_data_record, first)
                report.first_data = decoded.as_dict() if decoded is not None else None

            last_offset = (entry.length // SECTOR_SIZE - 1) * SECTOR_SIZE
            if last_offset > DATA_HEADER_SIZE:
                last = await self._read_file_sector(
                    report, entry, "lastData", last_offset
                )
                if last is not None:
                    decoded = _decode(report, "lastData", decode_data_record, last)
                    report.last_data = (
                        decoded.as_dict() if decoded is not None else None
                    )

    async def _read_file_sector(
        self, report: DiagnosticReport, entry: FileEntry, name: str, offset: int
    ) -> Optional[bytes]:
        data = await self._collect(report, name, lambda: entry.read(offset, SECTOR_SIZE))
        if data is None:
            return None
        report.sectors[name] = data.hex()
        if len(data) < SECTOR_SIZE:
            report.errors.append(f"{name}: short read ({len(data)} bytes)")
            return None
        return data

    async def download(
        self,
        path: Path,
        *,
        chunk_size: int = 64 * SECTOR_SIZE,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """Copy the data file to ``path``; returns the number of bytes written."""
        self._ensure_idle()
        try:
            self._update_state("Downloading data")
            await self._retry(self.open)
            entry = await self.filesystem().open_file(DATA_FILENAME)
            written = 0
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("wb") as stream:
                async for chunk in entry.iter_chunks(chunk_size):
                    stream.write(chunk)
                    written += len(chunk)
                    if progress is not None:
                        progress(written, entry.length)
            LOGGER.info("Downloaded %d of %d bytes to %s", written, entry.length, path)
            self._update_state(apply_recording_status(self.status))
            return written
        except Exception as exc:
            LOGGER.error("Problem during download: %s", exc)
            self._update_state(None, f"Error: {exc}")
            raise
        finally:
            await self._release()


def _decode(
    report: DiagnosticReport, name: str, decoder: Callable[[bytes], T], data: bytes
) -> Optional[T]:
    try:
        return decoder(data)
    except IntegrityError as exc:
        LOGGER.warning("Diagnostics: decoding %s failed: %s", name, exc)
        report.errors.append(f"{name}: {exc}")
        return None
