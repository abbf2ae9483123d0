"""Decoding of CWA header and data sectors.

Every function here is pure: it takes the raw bytes of one 512-byte sector
and returns a typed record, raising :class:`IntegrityError` when the sector
does not carry the expected structure.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional, Tuple

from .core.errors import IntegrityError
from .core.timestamps import Timestamp, timestamp_to_json, unpack_timestamp

SECTOR_SIZE = 512
HEADER_MAGIC = b"MD"
DATA_MAGIC = b"AX"
DATA_LENGTH = SECTOR_SIZE - 4

METADATA_OFFSET = 64
METADATA_SIZE = 448

SAMPLE_BLOCK_OFFSET = 30
SAMPLE_BLOCK_SIZE = 480

_HEADER = struct.Struct("<2sHBHIHIIIxBxxxxxxxxBBIB")
_DATA = struct.Struct("<2sHHIIIHHBBBBhH")

AX3_HARDWARE_TYPES = frozenset({0x00, 0x17, 0xFF})
AX6_HARDWARE_TYPE = 0x64

Sample = Tuple[float, float, float]


def rate_code_frequency(rate_code: int) -> float:
    """Sampling frequency in Hz for a rate code (low nibble)."""
    return 3200 / (1 << (15 - (rate_code & 0x0F)))


def rate_code_range(rate_code: int) -> int:
    """Accelerometer range in g for a rate code (top two bits)."""
    return 16 >> (rate_code >> 6)


def device_type_for_hardware(hardware_type: int) -> str:
    if hardware_type in AX3_HARDWARE_TYPES:
        return "AX3"
    if hardware_type == AX6_HARDWARE_TYPE:
        return "AX6"
    return "?"


def _trim_metadata(raw: bytes) -> str:
    return raw.rstrip(b"\x00 \xff").decode("utf-8", errors="replace")


def _check_sector(data: bytes) -> None:
    if len(data) < SECTOR_SIZE:
        raise IntegrityError(
            f"Data too short: {len(data)} bytes (expected >= {SECTOR_SIZE})"
        )


@dataclass(frozen=True, slots=True)
class Header:
    """Decoded file header sector (``MD``)."""

    length: int
    hardware_type: int
    device_type: str
    device_id: int
    session_id: int
    logging_start: Optional[Timestamp]
    logging_end: Optional[Timestamp]
    logging_capacity: int
    flash_led: int
    sensor_config: int
    gyro_range: Optional[float]
    rate_code: int
    frequency: float
    accel_range: int
    last_change: Optional[Timestamp]
    firmware_revision: int
    metadata: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "hardwareType": self.hardware_type,
            "deviceType": self.device_type,
            "deviceId": self.device_id,
            "sessionId": self.session_id,
            "loggingStart": timestamp_to_json(self.logging_start),
            "loggingEnd": timestamp_to_json(self.logging_end),
            "loggingCapacity": self.logging_capacity,
            "flashLed": self.flash_led,
            "sensorConfig": self.sensor_config,
            "gyroRange": self.gyro_range,
            "rateCode": self.rate_code,
            "frequency": self.frequency,
            "range": self.accel_range,
            "lastChange": timestamp_to_json(self.last_change),
            "firmwareRevision": self.firmware_revision,
            "metadata": self.metadata,
        }


def decode_header(data: bytes) -> Header:
    """Decode a CWA header sector.

    Raises:
        IntegrityError: If the sector is short, the magic is not ``MD`` or
            the declared length is below 508.
    """
    _check_sector(data)
    (
        magic,
        length,
        hardware_type,
        device_id_low,
        session_id,
        device_id_high,
        logging_start,
        logging_end,
        logging_capacity,
        flash_led,
        sensor_config,
        rate_code,
        last_change,
        firmware_revision,
    ) = _HEADER.unpack_from(data)

    if magic != HEADER_MAGIC:
        raise IntegrityError(f"Invalid header magic: {magic!r}")
    if length < DATA_LENGTH:
        raise IntegrityError(
            f"Invalid header length: {length} (expected >= {DATA_LENGTH})"
        )

    device_id = device_id_low
    if device_id_high != 0xFFFF:
        device_id |= device_id_high << 16

    gyro_range: Optional[float] = None
    if sensor_config not in (0x00, 0xFF):
        gyro_range = 8000 / (2 ** (sensor_config & 0x0F))

    return Header(
        length=length,
        hardware_type=hardware_type,
        device_type=device_type_for_hardware(hardware_type),
        device_id=device_id,
        session_id=session_id,
        logging_start=unpack_timestamp(logging_start),
        logging_end=unpack_timestamp(logging_end),
        logging_capacity=logging_capacity,
        flash_led=flash_led,
        sensor_config=sensor_config,
        gyro_range=gyro_range,
        rate_code=rate_code,
        frequency=rate_code_frequency(rate_code),
        accel_range=rate_code_range(rate_code),
        last_change=unpack_timestamp(last_change),
        firmware_revision=firmware_revision,
        metadata=_trim_metadata(
            bytes(data[METADATA_OFFSET : METADATA_OFFSET + METADATA_SIZE])
        ),
    )


def _sign_extend_16(value: int) -> int:
    value &= 0xFFFF
    return value - 0x10000 if value & 0x8000 else value


def unpack_packed_sample(value: int) -> Tuple[int, int, int]:
    """Split one packed 32-bit sample into three signed axis counts.

    Three 10-bit fields sit at bit offsets 0, 10 and 20; the top two bits
    hold a shared exponent.
    """
    exponent = (value >> 30) & 0x03
    shift = 6 - exponent
    x = _sign_extend_16((value << 6) & 0xFFC0) >> shift
    y = _sign_extend_16((value >> 4) & 0xFFC0) >> shift
    z = _sign_extend_16((value >> 14) & 0xFFC0) >> shift
    return x, y, z


class SampleSequence(Sequence[Sample]):
    """Lazy view over the samples of one data sector.

    Values are decoded on access; iterating again starts from the first
    sample.
    """

    __slots__ = ("_block", "_count", "_stride", "_offset", "_packed", "_scale")

    def __init__(
        self,
        block: bytes,
        count: int,
        *,
        stride: int,
        offset: int = 0,
        packed: bool = False,
        scale: float = 1.0,
    ) -> None:
        self._block = block
        self._count = count
        self._stride = stride
        self._offset = offset
        self._packed = packed
        self._scale = scale

    def __len__(self) -> int:
        return self._count

    def __getitem__(self, index):  # type: ignore[override]
        if isinstance(index, slice):
            return [self._decode(i) for i in range(*index.indices(self._count))]
        if index < 0:
            index += self._count
        if not 0 <= index < self._count:
            raise IndexError("sample index out of range")
        return self._decode(index)

    def __iter__(self) -> Iterator[Sample]:
        for index in range(self._count):
            yield self._decode(index)

    def _decode(self, index: int) -> Sample:
        position = index * self._stride + self._offset
        if self._packed:
            (value,) = struct.unpack_from("<I", self._block, position)
            counts = unpack_packed_sample(value)
        else:
            counts = struct.unpack_from("<hhh", self._block, position)
        return (
            counts[0] * self._scale,
            counts[1] * self._scale,
            counts[2] * self._scale,
        )


@dataclass(frozen=True, slots=True)
class DataRecord:
    """Decoded data sector (``AX``)."""

    length: int
    device_fractional: int
    session_id: int
    sequence_id: int
    timestamp: Optional[Timestamp]
    fractional: int
    light: int
    light_raw: int
    temperature: float
    events: int
    battery_raw: int
    rate_code: int
    frequency: float
    accel_range: int
    channels: int
    bytes_per_axis: int
    packed: bool
    timestamp_offset: float
    sample_count: int
    accel_unit: int
    gyro_range: Optional[float]
    checksum_valid: bool
    accel: SampleSequence
    gyro: Optional[SampleSequence] = None

    @property
    def battery_voltage(self) -> float:
        return (self.battery_raw + 512) * 6 / 1024

    def sample_time(self, index: int) -> Optional[datetime]:
        """Wall-clock time of sample ``index``, or None without an absolute timestamp."""
        if not isinstance(self.timestamp, datetime) or not self.frequency:
            return None
        seconds = (index - self.timestamp_offset) / self.frequency
        return self.timestamp + timedelta(seconds=seconds)

    def as_dict(self, *, include_samples: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "length": self.length,
            "sessionId": self.session_id,
            "sequenceId": self.sequence_id,
            "timestamp": timestamp_to_json(self.timestamp),
            "fractional": self.fractional,
            "light": self.light,
            "temperature": self.temperature,
            "events": self.events,
            "battery": self.battery_voltage,
            "rateCode": self.rate_code,
            "frequency": self.frequency,
            "range": self.accel_range,
            "channels": self.channels,
            "bytesPerAxis": self.bytes_per_axis,
            "timestampOffset": self.timestamp_offset,
            "sampleCount": self.sample_count,
            "accelUnit": self.accel_unit,
            "gyroRange": self.gyro_range,
            "checksumValid": self.checksum_valid,
        }
        if include_samples:
            payload["accel"] = [list(sample) for sample in self.accel]
            if self.gyro is not None:
                payload["gyro"] = [list(sample) for sample in self.gyro]
        return payload


def sector_checksum_valid(data: bytes) -> bool:
    """True when the 16-bit little-endian word sum of the sector is zero."""
    words = struct.unpack_from(f"<{SECTOR_SIZE // 2}H", data)
    return sum(words) & 0xFFFF == 0


def decode_data_record(data: bytes) -> DataRecord:
    """Decode a CWA data sector.

    Raises:
        IntegrityError: If the sector is short, the magic is not ``AX``,
            the declared length is not 508, the channel layout is unknown or
            the declared sample count overruns the sample block.
    """
    _check_sector(data)
    (
        magic,
        length,
        device_fractional,
        session_id,
        sequence_id,
        packed_timestamp,
        light_raw,
        temperature_raw,
        events,
        battery_raw,
        rate_code,
        channel_layout,
        timestamp_offset,
        sample_count,
    ) = _DATA.unpack_from(data)

    if magic != DATA_MAGIC:
        raise IntegrityError(f"Invalid data sector magic: {magic!r}")
    if length != DATA_LENGTH:
        raise IntegrityError(
            f"Invalid data sector length: {length} (expected {DATA_LENGTH})"
        )

    frequency = rate_code_frequency(rate_code)

    # Top bit set: the low 15 bits are a 1/32768 s fraction instead of a device id
    fractional = 0
    offset = float(timestamp_offset)
    if device_fractional & 0x8000:
        fractional = (device_fractional & 0x7FFF) << 1
        offset += fractional * frequency / 65536

    accel_unit = 256 << ((light_raw >> 13) & 0x07)
    gyro_code = (light_raw >> 10) & 0x07
    gyro_range = 8000 / (2**gyro_code) if gyro_code else 2000

    channels = (channel_layout >> 4) & 0x0F
    bytes_per_axis = channel_layout & 0x0F
    block = bytes(data[SAMPLE_BLOCK_OFFSET : SAMPLE_BLOCK_OFFSET + SAMPLE_BLOCK_SIZE])

    gyro: Optional[SampleSequence] = None
    if bytes_per_axis == 0 and channels == 3:
        packed = True
        stride = 4
        accel = SampleSequence(
            block, sample_count, stride=stride, packed=True, scale=1 / accel_unit
        )
        record_gyro_range: Optional[float] = None
    elif bytes_per_axis == 2 and channels >= 3:
        packed = False
        stride = channels * 2
        if channels >= 6:
            gyro = SampleSequence(
                block, sample_count, stride=stride, scale=gyro_range / 32768
            )
            accel = SampleSequence(
                block, sample_count, stride=stride, offset=6, scale=1 / accel_unit
            )
            record_gyro_range = gyro_range
        else:
            accel = SampleSequence(
                block, sample_count, stride=stride, scale=1 / accel_unit
            )
            record_gyro_range = None
    else:
        raise IntegrityError(
            f"Unsupported channel layout: channels={channels}, "
            f"bytes_per_axis={bytes_per_axis}"
        )

    if sample_count * stride > SAMPLE_BLOCK_SIZE:
        raise IntegrityError(
            f"Sample count {sample_count} exceeds the sample block "
            f"({SAMPLE_BLOCK_SIZE // stride} max)"
        )

    return DataRecord(
        length=length,
        device_fractional=device_fractional,
        session_id=session_id,
        sequence_id=sequence_id,
        timestamp=unpack_timestamp(packed_timestamp),
        fractional=fractional,
        light=light_raw & 0x3FF,
        light_raw=light_raw,
        temperature=(temperature_raw & 0x3FF) * 75 / 256 - 50,
        events=events,
        battery_raw=battery_raw,
        rate_code=rate_code,
        frequency=frequency,
        accel_range=rate_code_range(rate_code),
        channels=channels,
        bytes_per_axis=bytes_per_axis,
        packed=packed,
        timestamp_offset=offset,
        sample_count=sample_count,
        accel_unit=accel_unit,
        gyro_range=record_gyro_range,
        checksum_valid=sector_checksum_valid(data),
        accel=accel,
        gyro=gyro,
    )
