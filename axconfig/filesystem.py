"""Read-only access to the device's FAT volume through single-sector reads.

The device exposes its storage only as numbered 512-byte sectors (``READL``).
This module rebuilds enough of the volume layout from the MBR and boot
sector to find one file in the root directory and stream byte ranges out of
it by following its cluster chain.
"""

from __future__ import annotations

import logging
import math
import re
import struct
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

from .core.errors import IntegrityError

LOGGER = logging.getLogger(__name__)

SECTOR_SIZE = 512
BYTES_PER_LINE = 16
DIRECTORY_ENTRY_SIZE = 32
DIRECTORY_ENTRIES_SCANNED = SECTOR_SIZE // DIRECTORY_ENTRY_SIZE

MBR_SIGNATURE = b"\x55\xaa"

FAT12_MAX_CLUSTERS = 4085
FAT16_MAX_CLUSTERS = 65525

FAT16_END_OF_CHAIN = 0xFFF8
FAT32_END_OF_CHAIN = 0x0FFFFFF8
FAT32_CLUSTER_MASK = 0x0FFFFFFF

SectorReader = Callable[[int], Awaitable[bytes]]

_DUMP_LINE = re.compile(r"^([0-9A-Fa-f]+):(.*)$")
_HEX_BYTE = re.compile(r"^[0-9A-Fa-f]{2}$")


def parse_sector_dump(lines: Iterable[str]) -> bytes:
    """Rebuild one sector from ``READL`` hex-dump lines.

    Each data line reads ``"<offset>: <16 hex bytes>  <ascii>"``. Lines that
    do not start with a hex offset (the command echo, ``OK``) are ignored.

    Raises:
        IntegrityError: If offsets are out of sequence, a line does not carry
            exactly 16 bytes or the total is not 512 bytes.
    """
    buffer = bytearray()
    for line in lines:
        match = _DUMP_LINE.match(line.strip())
        if match is None:
            continue
        offset = int(match.group(1), 16)
        if offset != len(buffer):
            raise IntegrityError(
                f"Unexpected sector offset {offset}, expected {len(buffer)}"
            )
        tokens = match.group(2).split()[:BYTES_PER_LINE]
        if len(tokens) != BYTES_PER_LINE or not all(
            _HEX_BYTE.match(token) for token in tokens
        ):
            raise IntegrityError(
                f"Unexpected sector line at offset {offset}: {line.strip()!r}"
            )
        buffer.extend(int(token, 16) for token in tokens)
        if len(buffer) > SECTOR_SIZE:
            break

    if len(buffer) != SECTOR_SIZE:
        raise IntegrityError(
            f"Unexpected sector size {len(buffer)}, expected {SECTOR_SIZE}"
        )
    return bytes(buffer)


def short_name(name: str) -> bytes:
    """Convert ``NAME.EXT`` into the 11-byte space-padded directory form."""
    base, _, extension = name.upper().rpartition(".")
    if not base:
        base, extension = extension, ""
    return (base[:8].ljust(8) + extension[:3].ljust(3)).encode("ascii")


def fat_width_for_clusters(cluster_count: int) -> int:
    if cluster_count < FAT12_MAX_CLUSTERS:
        return 12
    if cluster_count < FAT16_MAX_CLUSTERS:
        return 16
    return 32


@dataclass(slots=True)
class FilesystemLayout:
    """Volume geometry derived from the MBR and the partition boot sector."""

    first_sector_number: int
    total_sectors: int
    sector_size: int
    sectors_per_cluster: int
    num_reserved_sectors: int
    num_fats: int
    num_root_directory_entries: int
    sectors_per_fat: int
    first_fat_sector: int
    root_sector_number: int
    first_sector_of_file_area: int
    cluster_count: int
    fat_bit_width: int
    fat_page_cache: Dict[int, bytes] = field(default_factory=dict, repr=False)

    @property
    def fat_entry_size(self) -> int:
        if self.fat_bit_width == 16:
            return 2
        if self.fat_bit_width == 32:
            return 4
        raise IntegrityError(f"Unsupported FAT width: FAT{self.fat_bit_width}")

    @property
    def entries_per_fat_page(self) -> int:
        return self.sector_size // self.fat_entry_size

    def cluster_sector(self, cluster: int, sector_in_file: int) -> int:
        """Absolute sector number of ``sector_in_file`` held by ``cluster``."""
        return (
            self.first_sector_of_file_area
            + (cluster - 2) * self.sectors_per_cluster
            + sector_in_file % self.sectors_per_cluster
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "firstSectorNumber": self.first_sector_number,
            "totalSectors": self.total_sectors,
            "sectorSize": self.sector_size,
            "sectorsPerCluster": self.sectors_per_cluster,
            "numReservedSectors": self.num_reserved_sectors,
            "numFATs": self.num_fats,
            "numRootDirectoryEntries": self.num_root_directory_entries,
            "sectorsPerFAT": self.sectors_per_fat,
            "firstFatSector": self.first_fat_sector,
            "rootSectorNumber": self.root_sector_number,
            "firstSectorOfFileArea": self.first_sector_of_file_area,
            "clusterCount": self.cluster_count,
            "fatBitWidth": self.fat_bit_width,
        }


def check_mbr(mbr: bytes) -> tuple[int, int]:
    """Validate the boot signature; returns the first partition's start and size."""
    if mbr[510:512] != MBR_SIGNATURE:
        raise IntegrityError(
            f"Invalid MBR signature: {mbr[510:512].hex()} (expected 55aa)"
        )
    return struct.unpack_from("<II", mbr, 454)


def parse_layout(mbr: bytes, boot: bytes) -> FilesystemLayout:
    """Derive the volume geometry from the MBR and boot sector contents.

    Raises:
        IntegrityError: If the MBR signature is missing or a boot-sector
            field is outside its valid domain.
    """
    first_sector_number, total_sectors = check_mbr(mbr)

    sector_size = struct.unpack_from("<H", boot, 11)[0]
    sectors_per_cluster = boot[13]
    num_reserved_sectors = struct.unpack_from("<H", boot, 14)[0]
    num_fats = boot[16]
    num_root_directory_entries = struct.unpack_from("<H", boot, 17)[0]
    sectors_per_fat = struct.unpack_from("<H", boot, 22)[0]
    fat32_style = sectors_per_fat == 0
    if fat32_style:
        sectors_per_fat = struct.unpack_from("<I", boot, 36)[0]

    if sector_size != SECTOR_SIZE:
        raise IntegrityError(
            f"Unsupported sector size {sector_size}, expected {SECTOR_SIZE}"
        )
    if sectors_per_cluster == 0 or sectors_per_cluster & (sectors_per_cluster - 1):
        raise IntegrityError(
            f"Sectors per cluster is not a power of two: {sectors_per_cluster}"
        )
    if num_fats not in (1, 2):
        raise IntegrityError(f"Unexpected number of FATs: {num_fats}")
    if num_root_directory_entries == 0 and not fat32_style:
        raise IntegrityError("Root directory has no entries")
    if sectors_per_fat == 0:
        raise IntegrityError("Sectors per FAT is zero")

    first_fat_sector = first_sector_number + num_reserved_sectors
    root_sector_number = first_fat_sector + num_fats * sectors_per_fat
    first_sector_of_file_area = root_sector_number + math.ceil(
        DIRECTORY_ENTRY_SIZE * num_root_directory_entries / SECTOR_SIZE
    )

    data_sectors = total_sectors - (first_sector_of_file_area - first_sector_number)
    cluster_count = max(0, data_sectors) // sectors_per_cluster
    fat_bit_width = fat_width_for_clusters(cluster_count)
    if fat_bit_width == 32:
        root_sector_number = first_sector_of_file_area

    return FilesystemLayout(
        first_sector_number=first_sector_number,
        total_sectors=total_sectors,
        sector_size=sector_size,
        sectors_per_cluster=sectors_per_cluster,
        num_reserved_sectors=num_reserved_sectors,
        num_fats=num_fats,
        num_root_directory_entries=num_root_directory_entries,
        sectors_per_fat=sectors_per_fat,
        first_fat_sector=first_fat_sector,
        root_sector_number=root_sector_number,
        first_sector_of_file_area=first_sector_of_file_area,
        cluster_count=cluster_count,
        fat_bit_width=fat_bit_width,
    )


class FileEntry:
    """A root-directory file and a read cursor over its cluster chain."""

    def __init__(
        self,
        reader: FilesystemReader,
        name: bytes,
        *,
        exists: bool = False,
        first_cluster: int = 0,
        length: int = 0,
    ) -> None:
        self._reader = reader
        self.short_name = name
        self.exists = exists
        self.first_cluster = first_cluster
        self.length = length
        self._cluster_index = 0
        self._cluster = first_cluster
        self._sector_in_file = 0
        self._offset_in_sector = 0
        self._sector: Optional[bytes] = None

    def __repr__(self) -> str:
        return (
            f"FileEntry(name={self.short_name!r}, exists={self.exists}, "
            f"first_cluster={self.first_cluster}, length={self.length})"
        )

    @property
    def position(self) -> int:
        return self._sector_in_file * SECTOR_SIZE + self._offset_in_sector

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.short_name.decode("ascii", errors="replace"),
            "exists": self.exists,
            "firstCluster": self.first_cluster,
            "length": self.length,
        }

    async def seek(self, offset: int) -> None:
        """Move the cursor to ``offset``, walking the cluster chain as needed."""
        layout = self._reader.layout
        if layout is None:
            raise IntegrityError("Filesystem layout has not been read")

        target_sector = offset // SECTOR_SIZE
        if self._sector is not None and self._sector_in_file == target_sector:
            self._offset_in_sector = offset % SECTOR_SIZE
            return

        target_cluster_index = target_sector // layout.sectors_per_cluster
        if target_cluster_index < self._cluster_index:
            self._cluster_index = 0
            self._cluster = self.first_cluster

        while self._cluster_index < target_cluster_index:
            next_cluster = await self._reader.next_cluster(self._cluster)
            if next_cluster is None:
                raise IntegrityError(
                    f"Cluster chain ended at cluster index {self._cluster_index}, "
                    f"needed {target_cluster_index}"
                )
            self._cluster = next_cluster
            self._cluster_index += 1

        self._sector_in_file = target_sector
        self._offset_in_sector = offset % SECTOR_SIZE
        self._sector = None

    async def read(self, offset: int, max_size: int) -> bytes:
        """Read up to ``max_size`` bytes at ``offset``, capped at the file length."""
        if not self.exists:
            raise IntegrityError(f"File not found: {self.short_name!r}")
        layout = await self._reader.read_layout()

        size = max(0, min(max_size, self.length - offset))
        output = bytearray()
        if size == 0:
            return bytes(output)

        await self.seek(offset)
        while len(output) < size:
            if self._offset_in_sector >= SECTOR_SIZE:
                await self.seek((self._sector_in_file + 1) * SECTOR_SIZE)
            if self._sector is None:
                sector_number = layout.cluster_sector(
                    self._cluster, self._sector_in_file
                )
                self._sector = await self._reader.read_sector(sector_number)
            count = min(SECTOR_SIZE - self._offset_in_sector, size - len(output))
            if count <= 0:
                break
            output.extend(
                self._sector[self._offset_in_sector : self._offset_in_sector + count]
            )
            self._offset_in_sector += count

        if len(output) < size:
            LOGGER.warning(
                "Short read at offset %d: got %d of %d bytes", offset, len(output), size
            )
        return bytes(output)

    async def iter_chunks(self, chunk_size: int = 16 * SECTOR_SIZE) -> AsyncIterator[bytes]:
        """Yield the whole file in sequential chunks."""
        offset = 0
        while offset < self.length:
            chunk = await self.read(offset, chunk_size)
            if not chunk:
                break
            yield chunk
            offset += len(chunk)


class FilesystemReader:
    """Interprets raw sectors as a FAT volume.

    The layout is read once and reused for the lifetime of the reader,
    along with every FAT page fetched while following cluster chains.
    """

    def __init__(self, read_sector: SectorReader) -> None:
        self._read_sector = read_sector
        self.layout: Optional[FilesystemLayout] = None

    async def read_sector(self, sector_number: int) -> bytes:
        data = await self._read_sector(sector_number)
        if len(data) != SECTOR_SIZE:
            raise IntegrityError(
                f"Sector {sector_number} has {len(data)} bytes, expected {SECTOR_SIZE}"
            )
        return data

    async def read_layout(self) -> FilesystemLayout:
        if self.layout is None:
            mbr = await self.read_sector(0)
            first_sector_number, _ = check_mbr(mbr)
            boot = await self.read_sector(first_sector_number)
            self.layout = parse_layout(mbr, boot)
            LOGGER.debug("Filesystem layout: %s", self.layout.as_dict())
        return self.layout

    async def find_file(self, name: str) -> FileEntry:
        """Look up ``name`` in the first sector of the root directory.

        Only the first 16 directory entries are examined.
        """
        layout = await self.read_layout()
        wanted = short_name(name)
        directory = await self.read_sector(layout.root_sector_number)
        for index in range(DIRECTORY_ENTRIES_SCANNED):
            offset = index * DIRECTORY_ENTRY_SIZE
            if directory[offset : offset + 11] != wanted:
                continue
            first_cluster_low = struct.unpack_from("<H", directory, offset + 26)[0]
            length = struct.unpack_from("<I", directory, offset + 28)[0]
            first_cluster = first_cluster_low
            if layout.fat_bit_width == 32:
                first_cluster_high = struct.unpack_from("<H", directory, offset + 20)[0]
                first_cluster |= first_cluster_high << 16
            return FileEntry(
                self,
                wanted,
                exists=True,
                first_cluster=first_cluster,
                length=length,
            )
        return FileEntry(self, wanted)

    async def open_file(self, name: str) -> FileEntry:
        entry = await self.find_file(name)
        if not entry.exists:
            raise FileNotFoundError(name)
        return entry

    async def next_cluster(self, cluster: int) -> Optional[int]:
        """Follow the FAT entry for ``cluster``; None marks the end of the chain."""
        layout = await self.read_layout()
        if layout.fat_bit_width == 12:
            raise IntegrityError("FAT12 cluster chains are not supported")

        entry_size = layout.fat_entry_size
        page_index, entry_index = divmod(cluster, layout.entries_per_fat_page)
        page = layout.fat_page_cache.get(page_index)
        if page is None:
            page = await self.read_sector(layout.first_fat_sector + page_index)
            layout.fat_page_cache[page_index] = page

        if entry_size == 2:
            value = struct.unpack_from("<H", page, entry_index * 2)[0]
            end_of_chain = value >= FAT16_END_OF_CHAIN
        else:
            value = struct.unpack_from("<I", page, entry_index * 4)[0]
            value &= FAT32_CLUSTER_MASK
            end_of_chain = value >= FAT32_END_OF_CHAIN
        if end_of_chain or value < 2:
            return None
        return value
