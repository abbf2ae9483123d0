import asyncio
import math
import struct
from collections import deque
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytest

from axconfig.config import CommandConfig
from axconfig.core.timestamps import pack_timestamp

Responder = Callable[[str], Optional[str]]


class FakeTransport:
    """In-memory transport answering each written command through ``responder``."""

    def __init__(
        self,
        responder: Optional[Responder] = None,
        *,
        kind: str = "usb",
        serial_number: Optional[str] = "CWA17_12345",
    ) -> None:
        self.kind = kind
        self.serial_number = serial_number
        self.responder = responder or (lambda command: None)
        self.writes: List[str] = []
        self.busy = False
        self.opened = False
        self.open_count = 0
        self.close_count = 0
        self.cancel_count = 0
        self.fail_open: Optional[Exception] = None
        self.fail_writes: Optional[Exception] = None
        self.read_delay = 0.001
        self._incoming: deque[str] = deque()

    @property
    def commands(self) -> List[str]:
        return [text.strip() for text in self.writes if text.strip()]

    def is_busy(self) -> bool:
        return self.busy

    def feed(self, text: str) -> None:
        self._incoming.append(text)

    async def open(self) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.opened = True
        self.open_count += 1

    async def close(self) -> bool:
        self.opened = False
        self.close_count += 1
        return True

    async def write(self, text: str) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        self.writes.append(text)
        command = text.strip()
        if not command:
            return
        response = self.responder(command)
        if response:
            self._incoming.append(response)

    async def read(self) -> Optional[str]:
        if self._incoming:
            return self._incoming.popleft()
        await asyncio.sleep(self.read_delay)
        return None

    async def cancel_read(self) -> None:
        self.cancel_count += 1


def format_sector_dump(data: bytes) -> str:
    lines = []
    for offset in range(0, len(data), 16):
        chunk = data[offset : offset + 16]
        hex_part = " ".join(f"{value:02X}" for value in chunk)
        text = "".join(chr(value) if 32 <= value < 127 else "." for value in chunk)
        lines.append(f"{offset:04X}: {hex_part}  {text}")
    return "\r\n".join(lines) + "\r\n"


class SimulatedLogger:
    """Scripted AX3/AX6 command responses, echoing whatever is set."""

    def __init__(
        self,
        *,
        device_type: str = "CWA",
        device_id: int = 12345,
        battery: int = 98,
        sectors: Optional[Dict[int, bytes]] = None,
    ) -> None:
        self.device_type = device_type
        self.device_id = device_id
        self.battery = battery
        self.sectors = sectors or {}
        self.time = "2024/01/02,03:04:05"
        self.values: Dict[str, str] = {
            "SESSION": "0",
            "MAXSAMPLES": "0",
            "DEBUG": "0",
            "HIBERNATE": "-1",
            "STOP": "0",
            "RATE": "74,100",
        }
        self.silent: set[str] = set()
        self.overrides: Dict[str, str] = {}

    def __call__(self, command: str) -> Optional[str]:
        name, _, argument = command.partition(" ")
        if name in self.silent or command in self.silent:
            return None
        if command in self.overrides:
            return self.overrides[command]
        if command == "ID":
            return f"ID={self.device_type},17,45,{self.device_id},0\r\n"
        if command == "SAMPLE 1":
            return f"$BATT=718,4207,mV,{self.battery},0\r\n"
        if name == "LED":
            return f"LED={argument}\r\n"
        if name == "TIME":
            if argument:
                self.time = argument
            return f"$TIME={self.time}\r\n"
        if name == "RATE":
            if argument:
                code, _, gyro = argument.partition(",")
                frequency = math.floor(3200 / (1 << (15 - (int(code) & 0x0F))))
                self.values["RATE"] = f"{code},{frequency}" + (f",{gyro}" if gyro else "")
            return f"RATE={self.values['RATE']}\r\n"
        if name in self.values:
            if argument:
                self.values[name] = argument
            return f"{name}={self.values[name]}\r\n"
        if command.startswith("Annotate"):
            index, _, value = command[len("Annotate") :].partition("=")
            return f"ANNOTATE{index}={value}\r\n"
        if command.startswith("DEVICE="):
            self.device_id = int(command[len("DEVICE=") :])
            return f"DEVICE={self.device_id}\r\n"
        if command in ("FORMAT WC", "FORMAT QC", "Commit"):
            return "COMMIT\r\n"
        if name == "READL":
            data = self.sectors.get(int(argument), bytes(512))
            return f"READL {argument}\r\n" + format_sector_dump(data) + "OK\r\n"
        if command == "STATUS\r\nECHO":
            return "FTL=0,0\r\nRESTART=3\r\nNANDID=ec,dc\r\nECHO=\r\n"
        if command == "LOG":
            return (
                "LOG,2,4,2024/01/02,03:00:00,Charging\r\n"
                "LOG,1,2,2023/12/31,23:59:00,Restart\r\n"
                "LOG,0,1,0,0,Start\r\n"
            )
        return None


MBR_FIRST_SECTOR = 94
RESERVED_SECTORS = 2
NUM_FATS = 2
SECTORS_PER_FAT = 64
ROOT_ENTRIES = 512


def make_volume(
    contents: bytes,
    chain: List[int],
    *,
    name: bytes = b"CWA-DATACWA",
    sectors_per_cluster: int = 1,
    total_sectors: int = 20000,
    length: Optional[int] = None,
) -> Dict[int, bytes]:
    """Sectors of a FAT16 volume holding one root-directory file along ``chain``."""
    sectors: Dict[int, bytes] = {}

    mbr = bytearray(512)
    struct.pack_into("<II", mbr, 454, MBR_FIRST_SECTOR, total_sectors)
    mbr[510:512] = b"\x55\xaa"
    sectors[0] = bytes(mbr)

    boot = bytearray(512)
    struct.pack_into("<H", boot, 11, 512)
    boot[13] = sectors_per_cluster
    struct.pack_into("<H", boot, 14, RESERVED_SECTORS)
    boot[16] = NUM_FATS
    struct.pack_into("<H", boot, 17, ROOT_ENTRIES)
    struct.pack_into("<H", boot, 22, SECTORS_PER_FAT)
    sectors[MBR_FIRST_SECTOR] = bytes(boot)

    fat_start = MBR_FIRST_SECTOR + RESERVED_SECTORS
    root = fat_start + NUM_FATS * SECTORS_PER_FAT
    file_area = root + ROOT_ENTRIES * 32 // 512

    fat = bytearray(SECTORS_PER_FAT * 512)
    for current, following in zip(chain, chain[1:] + [0xFFFF]):
        struct.pack_into("<H", fat, current * 2, following)
    for page in range(SECTORS_PER_FAT):
        chunk = bytes(fat[page * 512 : (page + 1) * 512])
        if any(chunk):
            sectors[fat_start + page] = chunk

    directory = bytearray(512)
    directory[0:11] = name
    struct.pack_into("<H", directory, 26, chain[0] if chain else 0)
    struct.pack_into("<I", directory, 28, len(contents) if length is None else length)
    sectors[root] = bytes(directory)

    cluster_bytes = sectors_per_cluster * 512
    for index, cluster in enumerate(chain):
        chunk = contents[index * cluster_bytes : (index + 1) * cluster_bytes]
        chunk = chunk.ljust(cluster_bytes, b"\x00")
        for sector in range(sectors_per_cluster):
            number = file_area + (cluster - 2) * sectors_per_cluster + sector
            sectors[number] = chunk[sector * 512 : (sector + 1) * 512]
    return sectors


def make_header(
    *,
    hardware_type: int = 0x17,
    device_id: int = 12345,
    device_id_high: int = 0xFFFF,
    session_id: int = 7,
    rate_code: int = 0x4A,
    sensor_config: int = 0x00,
    start: datetime = datetime(2024, 1, 2, 3, 0, 0),
    end: datetime = datetime(2024, 1, 9, 3, 0, 0),
    metadata: bytes = b"",
) -> bytes:
    data = bytearray(1024)
    struct.pack_into(
        "<2sHBHIHIIIxBxxxxxxxxBBIB",
        data,
        0,
        b"MD",
        1020,
        hardware_type,
        device_id,
        session_id,
        device_id_high,
        pack_timestamp(start),
        pack_timestamp(end),
        0,
        1,
        sensor_config,
        rate_code,
        pack_timestamp(datetime(2024, 1, 1, 12, 0, 0)),
        45,
    )
    data[64 : 64 + 448] = metadata.ljust(448, b" ")
    return bytes(data)


def pack_sample(x: int, y: int, z: int, exponent: int = 0) -> int:
    return (x & 0x3FF) | (y & 0x3FF) << 10 | (z & 0x3FF) << 20 | (exponent & 0x03) << 30


def make_data_sector(
    samples: List,
    *,
    packed: bool = False,
    channels: int = 3,
    rate_code: int = 0x4A,
    session_id: int = 7,
    sequence_id: int = 0,
    timestamp: datetime = datetime(2024, 1, 2, 3, 4, 5),
    light: int = 0,
    temperature_raw: int = 300,
    battery_raw: int = 200,
    device_fractional: int = 0,
    timestamp_offset: int = 0,
    fix_checksum: bool = True,
) -> bytes:
    data = bytearray(512)
    struct.pack_into(
        "<2sHHIIIHHBBBBhH",
        data,
        0,
        b"AX",
        508,
        device_fractional,
        session_id,
        sequence_id,
        pack_timestamp(timestamp),
        light,
        temperature_raw,
        0,
        battery_raw,
        rate_code,
        (channels << 4) | (0 if packed else 2),
        timestamp_offset,
        len(samples),
    )
    for index, sample in enumerate(samples):
        if packed:
            struct.pack_into("<I", data, 30 + index * 4, sample)
        else:
            struct.pack_into(f"<{channels}h", data, 30 + index * channels * 2, *sample)
    if fix_checksum:
        words = struct.unpack_from("<255H", data)
        struct.pack_into("<H", data, 510, (-sum(words)) & 0xFFFF)
    return bytes(data)


@pytest.fixture
def fast_commands() -> CommandConfig:
    return CommandConfig(
        retry_attempts=2,
        retry_interval_seconds=0.0,
        battery_max_age_seconds=30.0,
        nudge_delay_seconds=0.0,
    )


@pytest.fixture
def logger_sim() -> SimulatedLogger:
    return SimulatedLogger()


@pytest.fixture
def transport(logger_sim: SimulatedLogger) -> FakeTransport:
    return FakeTransport(logger_sim)


@pytest.fixture
def fake_transport_cls():
    return FakeTransport


@pytest.fixture
def simulated_logger_cls():
    return SimulatedLogger


@pytest.fixture
def volume_builder():
    return make_volume


@pytest.fixture
def sector_builders():
    return {
        "header": make_header,
        "data": make_data_sector,
        "pack_sample": pack_sample,
        "dump": format_sector_dump,
    }
