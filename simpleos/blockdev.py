"""Virtio-style block device backed by a disk image."""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from typing import Any, BinaryIO

SECTOR_SIZE = 512
VIRTIO_NUM_DESC = 8

VRING_DESC_F_NEXT = 1
VRING_DESC_F_WRITE = 2

VIRTIO_BLK_T_IN = 0
VIRTIO_BLK_T_OUT = 1

VIRTIO_BLK_S_OK = 0
VIRTIO_BLK_S_IOERR = 1
VIRTIO_BLK_S_UNSUPP = 2

VIRTIO_MMIO_MAGIC = 0x74726976
VIRTIO_MMIO_VENDOR = 0x554D4551

_REQUEST_FORMAT = struct.Struct("<IIQ")
_U16_MASK = 0xFFFF
_MAX_SECTOR = 0xFFFFFFFF


class BlockDeviceError(Exception):
    """Raised when a descriptor or disk operation fails."""


@dataclass
class Descriptor:
    """One entry of the descriptor table."""

    buffer: Any = None
    length: int = 0
    flags: int = 0
    next: int = 0


@dataclass
class BlockRequest:
    """Request header placed in the first descriptor of a chain."""

    type: int
    sector: int
    reserved: int = 0

    def to_bytes(self) -> bytes:
        return _REQUEST_FORMAT.pack(self.type, self.reserved, self.sector)

    @classmethod
    def from_bytes(cls, data: bytes) -> "BlockRequest":
        req_type, reserved, sector = _REQUEST_FORMAT.unpack(data)
        return cls(req_type, sector, reserved)


class DescriptorPool:
    """Fixed-size descriptor table with a free flag per entry."""

    def __init__(self, size: int = VIRTIO_NUM_DESC) -> None:
        if size <= 0:
            raise ValueError("descriptor pool size must be positive")
        self.descriptors = [Descriptor() for _ in range(size)]
        self._free = [True] * size

    def __len__(self) -> int:
        return len(self._free)

    @property
    def free_count(self) -> int:
        return sum(self._free)

    def is_free(self, index: int) -> bool:
        self._check_index(index)
        return self._free[index]

    def alloc(self) -> int:
        """Take the lowest free descriptor and return its index."""
        for index, free in enumerate(self._free):
            if free:
                self._free[index] = False
                return index
        raise BlockDeviceError("no free descriptor")

    def alloc3(self) -> tuple[int, int, int]:
        """Take three descriptors, or none at all."""
        taken: list[int] = []
        try:
            for _ in range(3):
                taken.append(self.alloc())
        except BlockDeviceError:
            for index in taken:
                self.free(index)
            raise BlockDeviceError("failed to allocate descriptors") from None
        return taken[0], taken[1], taken[2]

    def free(self, index: int) -> None:
        """Clear a descriptor and mark it free."""
        self._check_index(index)
        if self._free[index]:
            raise BlockDeviceError(f"free_desc: descriptor {index} already free")
        self.descriptors[index] = Descriptor()
        self._free[index] = True

    def free_chain(self, head: int) -> None:
        """Free a descriptor and every descriptor linked after it."""
        index = head
        while True:
            self._check_index(index)
            descriptor = self.descriptors[index]
            flags, following = descriptor.flags, descriptor.next
            self.free(index)
            if not flags & VRING_DESC_F_NEXT:
                break
            index = following

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._free):
            raise BlockDeviceError(f"free_desc: invalid index {index}")


class VirtioBlockDevice:
    """Sector-addressed disk that moves requests through a descriptor queue.

    ``image`` is either a ``bytearray`` changed in place or a seekable binary
    file opened for reading and writing.
    """

    def __init__(self, image: bytearray | BinaryIO) -> None:
        if isinstance(image, (bytes, memoryview)):
            raise TypeError("image must be a bytearray or a binary file")
        self._image = image
        self.pool = DescriptorPool(VIRTIO_NUM_DESC)
        self._avail_ring = [0] * VIRTIO_NUM_DESC
        self._avail_idx = 0
        self._device_avail_idx = 0
        self._used_ring: list[tuple[int, int]] = [(0, 0)] * VIRTIO_NUM_DESC
        self._used_idx = 0
        self._last_used_idx = 0

    @property
    def sector_count(self) -> int:
        if isinstance(self._image, bytearray):
            return len(self._image) // SECTOR_SIZE
        position = self._image.tell()
        size = self._image.seek(0, io.SEEK_END)
        self._image.seek(position)
        return size // SECTOR_SIZE

    def read_sector(self, sector: int) -> bytes:
        """Return the 512 bytes stored at ``sector``."""
        buffer = bytearray(SECTOR_SIZE)
        self._transfer(buffer, sector, write=False)
        return bytes(buffer)

    def write_sector(self, sector: int, data: bytes) -> None:
        """Store exactly 512 bytes at ``sector``."""
        payload = bytearray(data)
        if len(payload) != SECTOR_SIZE:
            raise ValueError(f"sector data must be {SECTOR_SIZE} bytes, got {len(payload)}")
        self._transfer(payload, sector, write=True)

    def _transfer(self, buffer: bytearray, sector: int, write: bool) -> None:
        if not 0 <= sector <= _MAX_SECTOR:
            raise ValueError(f"sector {sector} out of range")
        head, data_index, status_index = self.pool.alloc3()
        status = bytearray(b"\xff")
        request = BlockRequest(VIRTIO_BLK_T_OUT if write else VIRTIO_BLK_T_IN, sector)
        descriptors = self.pool.descriptors
        descriptors[head] = Descriptor(request, _REQUEST_FORMAT.size, VRING_DESC_F_NEXT, data_index)
        data_flags = VRING_DESC_F_NEXT | (0 if write else VRING_DESC_F_WRITE)
        descriptors[data_index] = Descriptor(buffer, SECTOR_SIZE, data_flags, status_index)
        descriptors[status_index] = Descriptor(status, 1, VRING_DESC_F_WRITE, 0)

        ring_size = len(self._avail_ring)
        self._avail_ring[self._avail_idx % ring_size] = head
        self._avail_idx = (self._avail_idx + 1) & _U16_MASK
        self._notify()

        while self._last_used_idx != self._used_idx:
            chain_head, _ = self._used_ring[self._last_used_idx % ring_size]
            self.pool.free_chain(chain_head)
            self._last_used_idx = (self._last_used_idx + 1) & _U16_MASK

        if status[0] != VIRTIO_BLK_S_OK:
            raise BlockDeviceError(f"disk operation failed with status {status[0]:#04x}")

    def _notify(self) -> None:
        """Device side: serve every request placed on the available ring."""
        ring_size = len(self._avail_ring)
        while self._device_avail_idx != self._avail_idx:
            head = self._avail_ring[self._device_avail_idx % ring_size]
            self._device_avail_idx = (self._device_avail_idx + 1) & _U16_MASK
            written = self._execute(head)
            self._used_ring[self._used_idx % ring_size] = (head, written)
            self._used_idx = (self._used_idx + 1) & _U16_MASK

    def _execute(self, head: int) -> int:
        descriptors = self.pool.descriptors
        header = descriptors[head]
        data = descriptors[header.next]
        status = descriptors[data.next]
        request: BlockRequest = header.buffer
        written = 0
        if request.type == VIRTIO_BLK_T_IN:
            chunk = self._load(request.sector)
            if chunk is None:
                code = VIRTIO_BLK_S_IOERR
            else:
                data.buffer[: data.length] = chunk[: data.length]
                written = data.length
                code = VIRTIO_BLK_S_OK
        elif request.type == VIRTIO_BLK_T_OUT:
            ok = self._store(request.sector, bytes(data.buffer[: data.length]))
            code = VIRTIO_BLK_S_OK if ok else VIRTIO_BLK_S_IOERR
        else:
            code = VIRTIO_BLK_S_UNSUPP
        status.buffer[0] = code
        return written + 1

    def _load(self, sector: int) -> bytes | None:
        if sector >= self.sector_count:
            return None
        offset = sector * SECTOR_SIZE
        if isinstance(self._image, bytearray):
            return bytes(self._image[offset : offset + SECTOR_SIZE])
        self._image.seek(offset)
        chunk = self._image.read(SECTOR_SIZE)
        return chunk if len(chunk) == SECTOR_SIZE else None

    def _store(self, sector: int, data: bytes) -> bool:
        if sector >= self.sector_count:
            return False
        offset = sector * SECTOR_SIZE
        if isinstance(self._image, bytearray):
            self._image[offset : offset + len(data)] = data
        else:
            self._image.seek(offset)
            self._image.write(data)
            self._image.flush()
        return True