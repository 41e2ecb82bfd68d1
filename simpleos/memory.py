"""Physical memory layout and a bitmap page allocator."""

from __future__ import annotations

MEM_START = 0x40000000
MEM_END = MEM_START + 128 * 1024 * 1024
TOTAL_MEM = MEM_END - MEM_START

UART0 = 0x09000000
VIRTIO0 = 0x0A000000

PAGE_SIZE = 4096
TOTAL_PAGES = TOTAL_MEM // PAGE_SIZE
BITMAP_SIZE = TOTAL_PAGES // 8


class OutOfMemoryError(MemoryError):
    """Raised when no run of free pages is long enough."""


class PageAllocator:
    """First-fit allocator of contiguous physical pages tracked in a bitmap."""

    def __init__(self, reserved_pages: int = 0) -> None:
        if not 0 <= reserved_pages <= TOTAL_PAGES:
            raise ValueError(f"reserved_pages must be between 0 and {TOTAL_PAGES}")
        self._bitmap = bytearray(BITMAP_SIZE)
        for index in range(reserved_pages):
            self._set(index)

    def _set(self, index: int) -> None:
        self._bitmap[index // 8] |= 1 << (index % 8)

    def _clear(self, index: int) -> None:
        self._bitmap[index // 8] &= ~(1 << (index % 8)) & 0xFF

    def _test(self, index: int) -> bool:
        return bool((self._bitmap[index // 8] >> (index % 8)) & 1)

    def is_allocated(self, index: int) -> bool:
        """Report whether page ``index`` is in use."""
        if not 0 <= index < TOTAL_PAGES:
            raise IndexError(f"page index {index} out of range")
        return self._test(index)

    def alloc_pages(self, count: int) -> int:
        """Mark the first run of ``count`` free pages used and return its address."""
        if count <= 0 or count > TOTAL_PAGES:
            raise ValueError(f"cannot allocate {count} pages")
        start = 0
        while start <= TOTAL_PAGES - count:
            busy = next((offset for offset in range(count) if self._test(start + offset)), None)
            if busy is None:
                for index in range(start, start + count):
                    self._set(index)
                return MEM_START + start * PAGE_SIZE
            start += busy + 1
        raise OutOfMemoryError(f"no run of {count} free pages")

    def free_pages(self, addr: int, count: int) -> None:
        """Mark ``count`` pages starting at ``addr`` free."""
        if addr < MEM_START or addr >= MEM_END or (addr - MEM_START) % PAGE_SIZE:
            raise ValueError(f"invalid page address {addr:#x}")
        if count < 0:
            raise ValueError("page count must not be negative")
        first = (addr - MEM_START) // PAGE_SIZE
        if first + count > TOTAL_PAGES:
            raise ValueError("page range runs past the end of memory")
        for index in range(first, first + count):
            self._clear(index)