"""Error taxonomy shared by the protocol, filesystem and codec layers."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import PendingCommand


class ErrorKind(str, Enum):
    """Category of a device failure."""

    TRANSPORT = "transport"
    """Opening, writing to or reading from the transport failed."""

    TIMEOUT = "timeout"
    """No terminal response line arrived within the command budget."""

    VALUE_MISMATCH = "value_mismatch"
    """The device echoed a value different from the one requested."""

    INTEGRITY = "integrity"
    """Raw data (sector dump, filesystem structure, CWA sector) is malformed."""

    CONFIGURATION = "configuration"
    """A requested setting is invalid or not supported by the hardware."""

    BUSY = "busy"
    """The device is already in use by another top-level operation."""


class DeviceError(RuntimeError):
    """Base class for all device failures."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(
        self, message: str, *, pending: Optional[PendingCommand] = None
    ) -> None:
        super().__init__(message)
        self.pending = pending


class TransportError(DeviceError):
    kind = ErrorKind.TRANSPORT


class ProtocolTimeout(DeviceError):
    kind = ErrorKind.TIMEOUT


class ValueMismatch(DeviceError):
    kind = ErrorKind.VALUE_MISMATCH


class IntegrityError(DeviceError):
    kind = ErrorKind.INTEGRITY


class ConfigurationError(DeviceError):
    kind = ErrorKind.CONFIGURATION


class DeviceBusyError(DeviceError):
    kind = ErrorKind.BUSY


# Failures worth another attempt; everything else indicates a data or usage problem.
RETRYABLE_ERRORS: tuple[type[DeviceError], ...] = (
    TransportError,
    ProtocolTimeout,
    ValueMismatch,
)
