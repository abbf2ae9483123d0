"""Sampling rate/range encoding for the ``RATE`` command."""

from __future__ import annotations

import math
from typing import Dict, Optional

from .core.errors import ConfigurationError

RATE_CODES: Dict[float, int] = {
    3200: 0x0F,
    1600: 0x0E,
    800: 0x0D,
    400: 0x0C,
    200: 0x0B,
    100: 0x0A,
    50: 0x09,
    25: 0x08,
    12.5: 0x07,
    12: 0x07,
    6.25: 0x06,
    6: 0x06,
}

# Whole-number spellings of the fractional rates
RATE_ALIASES: Dict[float, float] = {12: 12.5, 6: 6.25}

ACCEL_RANGE_CODES: Dict[int, int] = {
    16: 0x00,
    8: 0x40,
    4: 0x80,
    2: 0xC0,
}

GYRO_RANGES = (2000, 1000, 500, 250)

GYRO_MAX_RATE = 1600
GYRO_MIN_RATE = 25
PACKED_MIN_RATE = 12.5


def canonical_rate(rate: float) -> float:
    """Resolve a whole-number alias to the frequency the device samples at."""
    value = float(rate)
    return RATE_ALIASES.get(value, value)


def rate_code_for(rate: float) -> int:
    try:
        return RATE_CODES[float(rate)]
    except (KeyError, TypeError, ValueError):
        raise ConfigurationError(f"Invalid accelerometer frequency: {rate}") from None


def accel_range_code_for(accel_range: int) -> int:
    try:
        return ACCEL_RANGE_CODES[int(accel_range)]
    except (KeyError, TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid accelerometer sensitivity: {accel_range}"
        ) from None


def encode_rate(
    rate: float,
    accel_range: int,
    gyro_range: Optional[int] = None,
    *,
    has_gyro: bool = False,
    packed: bool = False,
) -> int:
    """Compose the ``RATE`` byte from a frequency and an accelerometer range.

    Raises:
        ConfigurationError: If a value is outside the supported set or the
            combination is not supported by the hardware.
    """
    value = rate_code_for(rate)
    rate = canonical_rate(rate)
    if has_gyro and rate > GYRO_MAX_RATE:
        raise ConfigurationError(
            f"This device has a maximum rate of {GYRO_MAX_RATE}Hz"
        )
    if has_gyro and gyro_range and rate < GYRO_MIN_RATE:
        raise ConfigurationError(f"This device has a minimum rate of {GYRO_MIN_RATE}Hz")
    if not has_gyro and packed and rate < PACKED_MIN_RATE:
        raise ConfigurationError(
            f"Packed sampling has a minimum rate of {PACKED_MIN_RATE}Hz"
        )
    value |= accel_range_code_for(accel_range)
    validate_gyro_range(gyro_range, has_gyro=has_gyro)
    return value


def validate_gyro_range(gyro_range: Optional[int], *, has_gyro: bool) -> Optional[int]:
    """Return the gyro range to request, or None when the gyroscope stays off."""
    if not gyro_range:
        return None
    if not has_gyro:
        raise ConfigurationError(
            "Cannot configure gyroscope on device without gyroscope"
        )
    if int(gyro_range) not in GYRO_RANGES:
        raise ConfigurationError(f"Invalid gyro range: {gyro_range}")
    return int(gyro_range)


def reported_frequency(rate: float) -> int:
    """The frequency as echoed by the device (whole Hz, rounded down)."""
    return math.floor(float(rate))
