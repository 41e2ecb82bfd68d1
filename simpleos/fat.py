"""FAT16 volume access restricted to the root directory."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, Protocol

from simpleos.blockdev import SECTOR_SIZE, BlockDeviceError

DIR_ENTRY_SIZE = 32
ROOT_SCAN_ENTRIES = 16
NAME_LENGTH = 11

ATTR_ARCHIVE = 0x20
ENTRY_END = 0x00
ENTRY_DELETED = 0xE5
FAT16_EOC = 0xFFF8
FAT16_BAD_READ = 0xFFFF

_BPB_FORMAT = struct.Struct("<3s8sHBHBHHBHHHII")
_DIR_FORMAT = struct.Struct("<11sBBBHHHHHHHI")


class FatError(Exception):
    """Raised when the volume cannot be read or a file operation fails."""


class SectorDevice(Protocol):
    def read_sector(self, sector: int) -> bytes: ...

    def write_sector(self, sector: int, data: bytes) -> None: ...


@dataclass(frozen=True)
class BiosParameterBlock:
    """Leading fields of a FAT boot sector."""

    jmp: bytes
    oem: bytes
    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_sectors: int
    num_fats: int
    root_entries: int
    total_sectors_short: int
    media_descriptor: int
    sectors_per_fat: int
    sectors_per_track: int
    num_heads: int
    hidden_sectors: int
    total_sectors_long: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "BiosParameterBlock":
        """Parse the parameter block at the start of ``data``."""
        if len(data) < _BPB_FORMAT.size:
            raise FatError(f"boot sector too short: {len(data)} bytes")
        return cls(*_BPB_FORMAT.unpack_from(data))


@dataclass
class DirEntry:
    """A 32-byte short-name directory entry."""

    name: bytes
    attr: int = 0
    reserved: int = 0
    ctime_ms: int = 0
    ctime: int = 0
    cdate: int = 0
    adate: int = 0
    first_cluster_high: int = 0
    mtime: int = 0
    mdate: int = 0
    first_cluster_low: int = 0
    size: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "DirEntry":
        """Parse one directory entry."""
        if len(data) < DIR_ENTRY_SIZE:
            raise FatError(f"directory entry too short: {len(data)} bytes")
        return cls(*_DIR_FORMAT.unpack_from(data))

    def to_bytes(self) -> bytes:
        """Encode the entry as its 32 on-disk bytes."""
        return _DIR_FORMAT.pack(
            self.name,
            self.attr,
            self.reserved,
            self.ctime_ms,
            self.ctime,
            self.cdate,
            self.adate,
            self.first_cluster_high,
            self.mtime,
            self.mdate,
            self.first_cluster_low,
            self.size,
        )

    @property
    def first_cluster(self) -> int:
        return (self.first_cluster_high << 16) | self.first_cluster_low

    def display_name(self) -> str:
        """Return the name in 8.3 form, padding kept: ``'TEST1   .TXT'``."""
        raw = self.name.ljust(NAME_LENGTH, b"\x00")
        return f"{raw[:8].decode('latin-1')}.{raw[8:11].decode('latin-1')}"

    def is_free(self) -> bool:
        """True for an unused or deleted slot."""
        return not self.name or self.name[0] in (ENTRY_END, ENTRY_DELETED)


def _name_key(name: str | bytes) -> bytes:
    key = name.encode("ascii") if isinstance(name, str) else bytes(name)
    if len(key) != NAME_LENGTH:
        raise ValueError(f"FAT names are {NAME_LENGTH} bytes, got {len(key)}")
    return key


class FatVolume:
    """FAT16 file system whose files live in the first root-directory sector.

    ``offset`` and ``path`` arguments are accepted for interface symmetry;
    transfers always start at a file's first byte and listings always cover
    the root directory.
    """

    def __init__(self, device: SectorDevice) -> None:
        self.device = device
        self.bpb = BiosParameterBlock.from_bytes(self._read(0))
        self.bytes_per_sector = self.bpb.bytes_per_sector
        if self.bytes_per_sector == 0:
            raise FatError("boot sector declares zero bytes per sector")
        self.sectors_per_cluster = self.bpb.sectors_per_cluster
        self.sectors_per_fat = self.bpb.sectors_per_fat
        self.num_fats = self.bpb.num_fats
        self.fat_start_sector = self.bpb.reserved_sectors
        self.root_dir_sectors = (
            self.bpb.root_entries * DIR_ENTRY_SIZE + self.bytes_per_sector - 1
        ) // self.bytes_per_sector
        self.root_dir_sector = self.fat_start_sector + self.num_fats * self.sectors_per_fat
        self.data_start_sector = self.root_dir_sector + self.root_dir_sectors

    def _read(self, sector: int) -> bytes:
        try:
            return self.device.read_sector(sector)
        except (BlockDeviceError, ValueError) as exc:
            raise FatError(f"cannot read sector {sector}: {exc}") from exc

    def _write(self, sector: int, data: bytes) -> None:
        try:
            self.device.write_sector(sector, data)
        except (BlockDeviceError, ValueError) as exc:
            raise FatError(f"cannot write sector {sector}: {exc}") from exc

    def _fat_location(self, cluster: int) -> tuple[int, int]:
        offset = cluster * 2
        return (
            self.fat_start_sector + offset // self.bytes_per_sector,
            offset % self.bytes_per_sector,
        )

    def _fat_entry(self, cluster: int) -> int:
        sector, pos = self._fat_location(cluster)
        try:
            buf = self._read(sector)
        except FatError:
            return FAT16_BAD_READ
        return int.from_bytes(buf[pos : pos + 2], "little")

    def _set_fat_entry(self, cluster: int, value: int) -> None:
        sector, pos = self._fat_location(cluster)
        buf = bytearray(self._read(sector))
        buf[pos : pos + 2] = value.to_bytes(2, "little")
        self._write(sector, bytes(buf))

    def _root_slots(self) -> list[DirEntry]:
        buf = self._read(self.root_dir_sector)
        return [
            DirEntry.from_bytes(buf[i * DIR_ENTRY_SIZE : (i + 1) * DIR_ENTRY_SIZE])
            for i in range(ROOT_SCAN_ENTRIES)
        ]

    def _find(self, key: bytes) -> DirEntry | None:
        return next((e for e in self._root_slots() if e.name == key), None)

    def _find_free_slot(self) -> int | None:
        return next((i for i, e in enumerate(self._root_slots()) if e.is_free()), None)

    def _find_free_cluster(self) -> int | None:
        limit = self.sectors_per_fat * self.bytes_per_sector * 8 // 16
        for cluster in range(2, limit):
            sector, pos = self._fat_location(cluster)
            buf = self._read(sector)
            if int.from_bytes(buf[pos : pos + 2], "little") == 0:
                return cluster
        return None

    def _cluster_first_sector(self, cluster: int) -> int:
        return self.data_start_sector + (cluster - 2) * self.sectors_per_cluster

    def _create(self, key: bytes) -> DirEntry:
        slot = self._find_free_slot()
        if slot is None:
            raise FatError("root directory is full")
        cluster = self._find_free_cluster()
        if cluster is None:
            raise FatError("no free cluster")
        self._set_fat_entry(cluster, FAT16_EOC)
        entry = DirEntry(
            name=key,
            attr=ATTR_ARCHIVE,
            first_cluster_high=(cluster >> 16) & 0xFFFF,
            first_cluster_low=cluster & 0xFFFF,
        )
        buf = bytearray(self._read(self.root_dir_sector))
        start = slot * DIR_ENTRY_SIZE
        buf[start : start + DIR_ENTRY_SIZE] = entry.to_bytes()
        self._write(self.root_dir_sector, bytes(buf))
        zero = bytes(SECTOR_SIZE)
        first = self._cluster_first_sector(cluster)
        for sector in range(first, first + self.sectors_per_cluster):
            self._write(sector, zero)
        return entry

    def _chain_sectors(self, cluster: int) -> Iterator[int]:
        while 2 <= cluster < FAT16_EOC:
            first = self._cluster_first_sector(cluster)
            yield from range(first, first + self.sectors_per_cluster)
            cluster = self._fat_entry(cluster)

    def read_file(self, name: str | bytes, size: int, offset: int = 0) -> bytes:
        """Read up to ``size`` bytes along the file's cluster chain."""
        key = _name_key(name)
        entry = self._find(key)
        if entry is None:
            raise FatError(f"file not found: {key.decode('latin-1')!r}")
        out = bytearray()
        for sector in self._chain_sectors(entry.first_cluster):
            if len(out) >= size:
                break
            chunk = self._read(sector)
            out += chunk[: min(size - len(out), SECTOR_SIZE)]
        return bytes(out)

    def write_file(self, name: str | bytes, data: bytes, offset: int = 0) -> int:
        """Write ``data`` into the file, creating it if needed.

        Only the space of the existing cluster chain is used; the number of
        bytes actually stored is returned, while the recorded size is
        ``len(data)``.
        """
        key = _name_key(name)
        data = bytes(data)
        entry = self._find(key) or self._create(key)
        sector_buf = bytearray(SECTOR_SIZE)
        written = 0
        for sector in self._chain_sectors(entry.first_cluster):
            if written >= len(data):
                break
            chunk = data[written : written + SECTOR_SIZE]
            sector_buf[: len(chunk)] = chunk
            self._write(sector, bytes(sector_buf))
            written += len(chunk)

        buf = bytearray(self._read(self.root_dir_sector))
        for slot in range(ROOT_SCAN_ENTRIES):
            start = slot * DIR_ENTRY_SIZE
            if bytes(buf[start : start + NAME_LENGTH]) == key:
                updated = DirEntry.from_bytes(bytes(buf[start : start + DIR_ENTRY_SIZE]))
                updated.size = len(data) & 0xFFFFFFFF
                buf[start : start + DIR_ENTRY_SIZE] = updated.to_bytes()
                break
        self._write(self.root_dir_sector, bytes(buf))
        return written

    def list_dir(self, path: str = "/", max_entries: int = ROOT_SCAN_ENTRIES) -> list[DirEntry]:
        """Return up to ``max_entries`` raw root-directory slots, free ones included."""
        entries: list[DirEntry] = []
        for index in range(self.root_dir_sectors):
            try:
                buf = self._read(self.root_dir_sector + index)
            except FatError:
                break
            per_sector = min(self.bytes_per_sector, len(buf)) // DIR_ENTRY_SIZE
            for slot in range(per_sector):
                if len(entries) >= max_entries:
                    break
                start = slot * DIR_ENTRY_SIZE
                entries.append(DirEntry.from_bytes(buf[start : start + DIR_ENTRY_SIZE]))
        return entries