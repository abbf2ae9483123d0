import struct

import pytest

from axconfig.core.errors import IntegrityError
from axconfig.filesystem import (
    FileEntry,
    FilesystemReader,
    parse_layout,
    parse_sector_dump,
    short_name,
)


def _reader(sectors):
    reads = []

    async def read_sector(number: int) -> bytes:
        reads.append(number)
        return sectors.get(number, bytes(512))

    reader = FilesystemReader(read_sector)
    return reader, reads


def test_parse_sector_dump(sector_builders) -> None:
    data = bytes(range(256)) * 2
    lines = ["READL 7"] + sector_builders["dump"](data).split("\r\n") + ["OK"]

    assert parse_sector_dump(lines) == data


def test_parse_sector_dump_ignores_ascii_column() -> None:
    lines = [
        f"{offset:04X}: " + " ".join(["41"] * 16) + "  AAAAAAAAAAAAAAAA 00 11"
        for offset in range(0, 512, 16)
    ]

    assert parse_sector_dump(lines) == b"A" * 512


def test_parse_sector_dump_rejects_out_of_order_offsets(sector_builders) -> None:
    lines = sector_builders["dump"](bytes(512)).split("\r\n")
    lines[1], lines[2] = lines[2], lines[1]

    with pytest.raises(IntegrityError, match="offset"):
        parse_sector_dump(lines)


def test_parse_sector_dump_rejects_short_sector(sector_builders) -> None:
    lines = sector_builders["dump"](bytes(512)).split("\r\n")[:-2]

    with pytest.raises(IntegrityError, match="size"):
        parse_sector_dump(lines)


def test_short_name() -> None:
    assert short_name("CWA-DATA.CWA") == b"CWA-DATACWA"
    assert short_name("readme") == b"README     "


def test_parse_layout_fat16_geometry(volume_builder) -> None:
    sectors = volume_builder(b"", [2], sectors_per_cluster=64, total_sectors=1_000_000)

    layout = parse_layout(sectors[0], sectors[94])

    assert layout.first_sector_number == 94
    assert layout.first_fat_sector == 96
    assert layout.root_sector_number == 224
    assert layout.first_sector_of_file_area == 256
    assert layout.cluster_count == (1_000_000 - (256 - 94)) // 64
    assert layout.fat_bit_width == 16
    assert layout.cluster_sector(2, 0) == 256
    assert layout.cluster_sector(3, 65) == 256 + 64 + 1


def test_parse_layout_rejects_bad_signature(volume_builder) -> None:
    sectors = volume_builder(b"", [2])
    mbr = bytearray(sectors[0])
    mbr[511] = 0

    with pytest.raises(IntegrityError, match="signature"):
        parse_layout(bytes(mbr), sectors[94])


def test_parse_layout_rejects_odd_cluster_size(volume_builder) -> None:
    sectors = volume_builder(b"", [2], sectors_per_cluster=3)

    with pytest.raises(IntegrityError, match="power of two"):
        parse_layout(sectors[0], sectors[94])


@pytest.mark.asyncio
async def test_next_cluster_follows_chain(volume_builder) -> None:
    reader, reads = _reader(volume_builder(b"\x00" * 1536, [5, 6, 7]))

    assert await reader.next_cluster(5) == 6
    assert await reader.next_cluster(6) == 7
    assert await reader.next_cluster(7) is None
    # FAT page is fetched once
    assert reads.count(96) == 1


@pytest.mark.asyncio
async def test_find_file(volume_builder) -> None:
    reader, _ = _reader(volume_builder(b"\x01" * 700, [9, 10]))

    entry = await reader.find_file("cwa-data.cwa")
    missing = await reader.find_file("OTHER.TXT")

    assert entry.exists is True
    assert entry.first_cluster == 9
    assert entry.length == 700
    assert missing.exists is False
    with pytest.raises(FileNotFoundError):
        await reader.open_file("OTHER.TXT")


@pytest.mark.asyncio
async def test_read_range_across_clusters(volume_builder) -> None:
    contents = bytes(index % 251 for index in range(1536))
    reader, _ = _reader(volume_builder(contents, [5, 6, 9]))
    entry = await reader.open_file("CWA-DATA.CWA")

    assert await entry.read(500, 30) == contents[500:530]
    assert await entry.read(1100, 1000) == contents[1100:]
    assert await entry.read(0, 10) == contents[:10]
    assert await entry.read(1536, 10) == b""


@pytest.mark.asyncio
async def test_seek_into_third_cluster_reads_only_needed_sectors(volume_builder) -> None:
    contents = bytes(index % 241 for index in range(1536))
    reader, reads = _reader(volume_builder(contents, [5, 6, 7]))
    entry = await reader.open_file("CWA-DATA.CWA")
    reads.clear()

    data = await entry.read(1024 + 100, 20)

    assert data == contents[1124:1144]
    assert entry.first_cluster == 5
    assert reads == [96, reader.layout.cluster_sector(7, 2)]
    assert reads[-1] == 256 + (7 - 2)


@pytest.mark.asyncio
async def test_entry_read_loads_layout_on_demand(volume_builder) -> None:
    contents = bytes(index % 7 for index in range(1024))
    reader, reads = _reader(volume_builder(contents, [5, 6]))
    entry = FileEntry(reader, b"CWA-DATACWA", exists=True, first_cluster=5, length=1024)

    assert await entry.read(600, 8) == contents[600:608]
    assert reads[:2] == [0, 94]
    assert reader.layout is not None


@pytest.mark.asyncio
async def test_iter_chunks_reads_whole_file(volume_builder) -> None:
    contents = bytes(index % 13 for index in range(2000))
    reader, _ = _reader(volume_builder(contents, [2, 3, 4, 5]))
    entry = await reader.open_file("CWA-DATA.CWA")

    chunks = [chunk async for chunk in entry.iter_chunks(512)]

    assert b"".join(chunks) == contents
    assert entry.position == 2000


@pytest.mark.asyncio
async def test_broken_chain_raises(volume_builder) -> None:
    contents = bytes(1024)
    reader, _ = _reader(volume_builder(contents, [5], length=2048))
    entry = await reader.open_file("CWA-DATA.CWA")

    with pytest.raises(IntegrityError, match="chain ended"):
        await entry.read(1024, 512)


@pytest.mark.asyncio
async def test_fat12_is_not_supported(volume_builder) -> None:
    sectors = volume_builder(b"", [2], total_sectors=2000)
    reader, _ = _reader(sectors)

    layout = await reader.read_layout()

    assert layout.fat_bit_width == 12
    with pytest.raises(IntegrityError, match="FAT12"):
        await reader.next_cluster(2)


@pytest.mark.asyncio
async def test_fat32_first_cluster_uses_high_word(volume_builder) -> None:
    sectors = volume_builder(b"", [2], total_sectors=200_000)
    boot = bytearray(sectors[94])
    struct.pack_into("<H", boot, 22, 0)
    struct.pack_into("<I", boot, 36, 8)
    struct.pack_into("<H", boot, 17, 0)
    sectors[94] = bytes(boot)
    file_area = 94 + 2 + 2 * 8
    directory = bytearray(512)
    directory[0:11] = b"CWA-DATACWA"
    struct.pack_into("<H", directory, 20, 1)
    struct.pack_into("<H", directory, 26, 3)
    struct.pack_into("<I", directory, 28, 10)
    sectors[file_area] = bytes(directory)
    reader, _ = _reader(sectors)

    entry = await reader.find_file("CWA-DATA.CWA")

    assert reader.layout.fat_bit_width == 32
    assert reader.layout.root_sector_number == file_area
    assert entry.first_cluster == 0x10003
