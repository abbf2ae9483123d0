"""Domain models for commands and device status."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Union

from .errors import DeviceError
from .timestamps import Timestamp, timestamp_to_json


@dataclass(frozen=True, slots=True)
class Command:
    """A text command and the rule for recognising its final response line."""

    output: str
    terminal_prefix: Union[str, tuple[str, ...]]
    timeout_ms: int = 0

    def is_terminal(self, line: str) -> bool:
        return line.startswith(self.terminal_prefix)


@dataclass(slots=True, eq=False)
class PendingCommand:
    """A queued or in-flight command with its collected response lines."""

    command: Command
    started_at: Optional[float] = None
    lines: List[str] = field(default_factory=list)
    completed: bool = False
    error: Optional[DeviceError] = None
    future: asyncio.Future[PendingCommand] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )

    @property
    def done(self) -> bool:
        return self.completed or self.error is not None

    def start(self) -> None:
        self.started_at = time.monotonic()

    def add_response(self, line: str) -> bool:
        """Record a response line; returns True if it terminates the command."""
        self.lines.append(line)
        return self.command.is_terminal(line)

    def last_line(self) -> Optional[str]:
        if self.completed and self.lines:
            return self.lines[-1]
        return None

    def timed_out(self, now: Optional[float] = None) -> bool:
        if self.done or not self.command.timeout_ms or self.started_at is None:
            return False
        current = time.monotonic() if now is None else now
        return (current - self.started_at) * 1000.0 >= self.command.timeout_ms

    def complete(self, error: Optional[DeviceError] = None) -> bool:
        """Resolve or reject the command; only the first call has any effect."""
        if self.done:
            return False
        if error is not None:
            error.pending = self
            self.error = error
            if not self.future.done():
                self.future.set_exception(error)
        else:
            self.completed = True
            if not self.future.done():
                self.future.set_result(self)
        return True


class LedColour(IntEnum):
    """LED colours, encoded as a 0bRGB bit pattern."""

    OFF = 0
    BLUE = 1
    GREEN = 2
    CYAN = 3
    RED = 4
    MAGENTA = 5
    YELLOW = 6
    WHITE = 7


class CommitMode(str, Enum):
    """How the device filesystem is prepared when committing settings."""

    WIPE = "wipe"
    """Full format before committing."""

    ERASE = "erase"
    """Quick format (rewrite filesystem) before committing."""

    COMMIT = "commit"
    """Commit settings over the existing filesystem."""


@dataclass(slots=True)
class DeviceIdentity:
    device_type: Optional[str] = None
    device_id: Optional[int] = None
    firmware_version: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deviceType": self.device_type,
            "deviceId": self.device_id,
            "firmwareVersion": self.firmware_version,
        }


@dataclass(slots=True)
class BatteryStatus:
    voltage: Optional[float] = None
    percent: Optional[int] = None
    charging: Optional[bool] = None
    sampled_at: Optional[datetime] = None

    def is_stale(self, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
        if self.percent is None or self.sampled_at is None:
            return True
        current = now or datetime.now()
        return (current - self.sampled_at).total_seconds() >= max_age_seconds

    def as_dict(self) -> Dict[str, Any]:
        return {
            "voltage": self.voltage,
            "percent": self.percent,
            "charging": self.charging,
            "sampledAt": (
                self.sampled_at.isoformat(timespec="seconds")
                if self.sampled_at
                else None
            ),
        }


@dataclass(slots=True)
class DeviceStatus:
    identity: DeviceIdentity = field(default_factory=DeviceIdentity)
    battery: BatteryStatus = field(default_factory=BatteryStatus)
    start: Optional[Timestamp] = None
    stop: Optional[Timestamp] = None
    state: Optional[str] = None
    error_state: Optional[str] = None
    recording_configured: bool = False
    recording_started: bool = False
    recording_finished: bool = False
    recording_incomplete: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identity.as_dict(),
            "battery": self.battery.as_dict(),
            "start": timestamp_to_json(self.start),
            "stop": timestamp_to_json(self.stop),
            "state": self.state,
            "errorState": self.error_state,
            "recordingConfigured": self.recording_configured,
            "recordingStarted": self.recording_started,
            "recordingFinished": self.recording_finished,
            "recordingIncomplete": self.recording_incomplete,
        }


@dataclass(frozen=True, slots=True)
class SamplingConfig:
    """Sampling settings as reported by the ``RATE`` command."""

    rate_code: int
    frequency: int
    accel_range: int
    gyro_range: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "rateCode": self.rate_code,
            "frequency": self.frequency,
            "accelRange": self.accel_range,
            "gyroRange": self.gyro_range,
        }


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One row of the device event log (``LOG,index,code,date,time,status``)."""

    index: int
    code: int
    timestamp: Optional[Timestamp]
    status: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "code": self.code,
            "timestamp": timestamp_to_json(self.timestamp),
            "status": self.status,
        }
