"""Timestamp encodings used by the device.

The device keeps local wall-clock time without timezone information, so all
values here are naive ``datetime`` objects. Two sentinels stand in for
unbounded times: ``ALWAYS_BEFORE`` (``0``, infinitely early) and
``ALWAYS_AFTER`` (``-1``, infinitely late).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

ALWAYS_BEFORE = 0
ALWAYS_AFTER = -1

Timestamp = Union[datetime, int]

_TEXT_FORMAT = "%Y/%m/%d,%H:%M:%S"

MIN_YEAR = 2000
MAX_YEAR = 2064  # exclusive; six-bit year field


def encode_timestamp(value: Optional[Timestamp] = None) -> str:
    """Format a timestamp for the wire (``YYYY/MM/DD,hh:mm:ss``).

    ``None`` means "now"; the sentinels encode as ``"0"`` and ``"-1"``.
    """
    if value is None:
        value = datetime.now()
    if isinstance(value, datetime):
        return value.strftime(_TEXT_FORMAT)
    if value == ALWAYS_BEFORE:
        return "0"
    if value == ALWAYS_AFTER:
        return "-1"
    raise ValueError(f"Invalid timestamp sentinel: {value!r}")


def decode_timestamp(text: str) -> Timestamp:
    """Parse a wire timestamp, mapping out-of-range years onto the sentinels.

    Raises:
        ValueError: If the text is not a sentinel and not a valid date/time.
    """
    text = text.strip()
    if text == "0":
        return ALWAYS_BEFORE
    if text == "-1":
        return ALWAYS_AFTER
    value = datetime.strptime(text[:19], _TEXT_FORMAT)
    if value.year < MIN_YEAR:
        return ALWAYS_BEFORE
    if value.year >= MAX_YEAR:
        return ALWAYS_AFTER
    return value


def unpack_timestamp(packed: int) -> Optional[Timestamp]:
    """Decode a packed 32-bit timestamp from a CWA sector.

    Bit pattern: ``YYYYYYMM MMDDDDDh hhhhmmmm mmssssss`` (year offset from 2000).
    Returns ``None`` if the fields do not form a valid date.
    """
    if packed == 0x00000000:
        return ALWAYS_BEFORE
    if packed == 0xFFFFFFFF:
        return ALWAYS_AFTER
    year = ((packed >> 26) & 0x3F) + MIN_YEAR
    month = (packed >> 22) & 0x0F
    day = (packed >> 17) & 0x1F
    hours = (packed >> 12) & 0x1F
    minutes = (packed >> 6) & 0x3F
    seconds = packed & 0x3F
    try:
        return datetime(year, month, day, hours, minutes, seconds)
    except ValueError:
        return None


def pack_timestamp(value: Timestamp) -> int:
    """Inverse of :func:`unpack_timestamp`."""
    if not isinstance(value, datetime):
        if value == ALWAYS_BEFORE:
            return 0x00000000
        if value == ALWAYS_AFTER:
            return 0xFFFFFFFF
        raise ValueError(f"Invalid timestamp sentinel: {value!r}")
    if not MIN_YEAR <= value.year < MAX_YEAR:
        raise ValueError(f"Year out of range for packed timestamp: {value.year}")
    return (
        ((value.year - MIN_YEAR) & 0x3F) << 26
        | (value.month & 0x0F) << 22
        | (value.day & 0x1F) << 17
        | (value.hour & 0x1F) << 12
        | (value.minute & 0x3F) << 6
        | (value.second & 0x3F)
    )


def resolve_bound(value: Optional[Timestamp]) -> datetime:
    """Map a timestamp onto an absolute bound for ordering comparisons."""
    if isinstance(value, datetime):
        return value
    if value == ALWAYS_AFTER:
        return datetime.max
    return datetime.min


def timestamp_to_json(value: Optional[Timestamp]) -> Union[str, int, None]:
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    return value
