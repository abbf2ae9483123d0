"""Core primitives for axconfig."""

from .errors import (
    ConfigurationError,
    DeviceBusyError,
    DeviceError,
    ErrorKind,
    IntegrityError,
    ProtocolTimeout,
    TransportError,
    ValueMismatch,
)
from .models import (
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
from .protocols import Transport
from .retry import try_and_retry
from .timestamps import (
    ALWAYS_AFTER,
    ALWAYS_BEFORE,
    Timestamp,
    decode_timestamp,
    encode_timestamp,
)

__all__ = [
    "ALWAYS_AFTER",
    "ALWAYS_BEFORE",
    "BatteryStatus",
    "Command",
    "CommitMode",
    "ConfigurationError",
    "DeviceBusyError",
    "DeviceError",
    "DeviceIdentity",
    "DeviceStatus",
    "ErrorKind",
    "IntegrityError",
    "LedColour",
    "LogEntry",
    "PendingCommand",
    "ProtocolTimeout",
    "SamplingConfig",
    "Timestamp",
    "Transport",
    "TransportError",
    "ValueMismatch",
    "decode_timestamp",
    "encode_timestamp",
    "try_and_retry",
]
