"""Kernel start-up: bring the devices up and run the built-in demonstrations."""

from __future__ import annotations

import argparse
from typing import Callable, Iterator, Optional, Sequence

from simpleos.blockdev import SECTOR_SIZE, BlockDeviceError, VirtioBlockDevice
from simpleos.console import Console
from simpleos.fat import ROOT_SCAN_ENTRIES, FatError, FatVolume
from simpleos.memory import OutOfMemoryError, PageAllocator
from simpleos.proc import Context, Process, ProcessTable, ProcState

STACK_PAGES = 4
STACK_SIZE = 16 * 1024
DEMO_PROCESSES = 3

_ENTER_KEYS = ("\r", "\n")


def _make_echo_process(console: Console, number: int) -> Callable[[], Iterator[None]]:
    """Build a process body that echoes one input line per turn, then yields."""

    def body() -> Iterator[None]:
        while True:
            console.puts(f"进程{number}正在运行...\n")
            console.puts(f"进程{number}等待输入（回车确认）：\n")
            try:
                while True:
                    c = console.getc()
                    console.putc(c)
                    if c in _ENTER_KEYS:
                        break
            except EOFError:
                return
            console.puts("\n")
            yield

    body.__name__ = f"proc{number}_func"
    return body


def print_context_info(console: Console, context: Context, name: str) -> None:
    """Print the return address and stack pointer held in ``context``."""
    console.puts("\n上下文信息：")
    console.puts(name)
    console.puts(":\n")
    console.puts("x30（返回地址） = 0x")
    console.put_hex(context.x30)
    console.puts("\n")
    console.puts("sp = 0x")
    console.put_hex(context.sp)
    console.puts("\n")


def init_proc_stack(
    console: Console,
    proc: Process,
    func: Callable[[], Optional[Iterator[object]]],
    stack: int,
    stack_size: int,
) -> None:
    """Point ``proc`` at a fresh downward-growing stack and at ``func`` as its entry."""
    stack_top = stack + stack_size
    proc.kstack = stack_top
    proc.context = Context(sp=stack_top, x30=id(func))
    proc.entry = func

    console.puts("\n正在初始化进程 ")
    console.putc(chr(ord("0") + proc.pid))
    console.puts("\n")
    console.puts("栈基址 = 0x")
    console.put_hex(stack)
    console.puts("\n")
    console.puts("栈顶 = 0x")
    console.put_hex(stack_top)
    console.puts("\n")
    console.puts("函数地址 = 0x")
    console.put_hex(id(func))
    console.puts("\n")
    print_context_info(console, proc.context, "初始上下文")


def run_block_device_check(console: Console, device: VirtioBlockDevice) -> bool:
    """Write a pattern to sector 0, read it back and report whether it matches."""
    console.puts("正在测试virtio块设备...\n")
    pattern = bytes(i & 0xFF for i in range(SECTOR_SIZE))

    console.puts("正在写入测试数据到扇区0...\n")
    try:
        device.write_sector(0, pattern)
    except (BlockDeviceError, ValueError):
        console.puts("写入失败\n")
        return False
    console.puts("写入成功\n")

    console.puts("正在从扇区0读取...\n")
    try:
        data = device.read_sector(0)
    except (BlockDeviceError, ValueError):
        console.puts("读取失败\n")
        return False
    console.puts("读取成功\n")

    if data == pattern:
        console.puts("数据校验成功！\n")
        return True
    console.puts("数据校验失败！\n")
    return False


def _c_string(data: bytes) -> str:
    return data.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def _write(volume: FatVolume, name: str, text: bytes, length: int) -> int:
    try:
        return volume.write_file(name, text.ljust(32, b"\x00")[:length], 0)
    except FatError:
        return -1


def _read(volume: FatVolume, name: str, size: int) -> tuple[int, str]:
    try:
        data = volume.read_file(name, size, 0)
    except FatError:
        return -1, ""
    return len(data), _c_string(data)


def run_fat_demo(console: Console, volume: FatVolume) -> dict:
    """Create, overwrite, read and list files on ``volume``, reporting each step.

    Returns the byte counts written, the texts read, the result for a missing
    file and the ``(name, size)`` pairs of the used root-directory slots.
    """
    console.puts("\nFAT 文件系统测试开始\n")
    fn1 = "TEST1   TXT"
    fn2 = "TEST2   TXT"

    w1 = _write(volume, fn1, b"Hello, this is file 1!", 23)
    w2 = _write(volume, fn2, b"File 2, first content.", 22)
    console.puts("新建并写入TEST1.TXT字节数: ")
    console.put_hex(w1)
    console.puts("\n")
    console.puts("新建并写入TEST2.TXT字节数: ")
    console.put_hex(w2)
    console.puts("\n")

    w1b = _write(volume, fn1, b"Overwrite file 1!", 18)
    console.puts("覆盖写入TEST1.TXT字节数: ")
    console.put_hex(w1b)
    console.puts("\n")

    _, text1 = _read(volume, fn1, 23)
    console.puts("读取TEST1.TXT内容: ")
    console.puts(text1)
    console.puts("\n")
    _, text2 = _read(volume, fn2, 22)
    console.puts("读取TEST2.TXT内容: ")
    console.puts(text2)
    console.puts("\n")

    r3, _ = _read(volume, "NOFILE  TXT", 20)
    console.puts("读取NOFILE.TXT返回: ")
    console.put_hex(r3)
    console.puts(" (应为-1)\n")

    console.puts("根目录文件列表:\n")
    listing: list[tuple[str, int]] = []
    for entry in volume.list_dir("/", ROOT_SCAN_ENTRIES):
        if entry.is_free():
            continue
        name = entry.display_name()
        listing.append((name, entry.size))
        console.puts("  ")
        console.puts(name)
        console.puts(" size: ")
        console.put_hex(entry.size)
        console.puts("\n")
    console.puts("[TEST] FAT 文件系统测试结束\n\n")

    return {
        "written": [w1, w2, w1b],
        "read": [text1, text2],
        "missing": r3,
        "listing": listing,
    }


def run_process_demo(
    console: Console,
    table: ProcessTable,
    allocator: PageAllocator,
    max_switches: Optional[int] = None,
) -> int:
    """Start three echo processes on their own stacks and run the scheduler.

    Returns the number of context switches made, or 0 if the processes or
    their stacks could not be allocated.
    """
    procs: list[Process] = []
    try:
        for _ in range(DEMO_PROCESSES):
            procs.append(table.alloc())
    except RuntimeError:
        for proc in procs:
            table.free(proc)
        console.puts("进程分配失败！\n")
        return 0

    try:
        stacks = [allocator.alloc_pages(STACK_PAGES) for _ in procs]
    except OutOfMemoryError:
        for proc in procs:
            table.free(proc)
        console.puts("栈分配失败！\n")
        return 0

    for number, (proc, stack) in enumerate(zip(procs, stacks), start=1):
        init_proc_stack(console, proc, _make_echo_process(console, number), stack, STACK_SIZE)
    for proc in procs:
        proc.state = ProcState.RUNNABLE

    return table.scheduler(max_switches)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Boot against a FAT16 disk image and run the demonstrations."""
    parser = argparse.ArgumentParser(prog="simpleos", description="Run the kernel demonstrations.")
    parser.add_argument("image", help="raw FAT16 disk image")
    parser.add_argument("--reserved-pages", type=int, default=0, help="pages held by the kernel")
    parser.add_argument("--max-switches", type=int, default=None, help="stop after this many switches")
    args = parser.parse_args(argv)

    console = Console()
    console.puts("UART initialized\n")
    table = ProcessTable()
    try:
        allocator = PageAllocator(args.reserved_pages)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        image = open(args.image, "r+b")
    except OSError:
        console.puts("ERROR: could not find virtio disk\n")
        return 1

    with image:
        device = VirtioBlockDevice(image)
        console.puts("Virtio block device initialized\n")
        try:
            volume: Optional[FatVolume] = FatVolume(device)
        except FatError as exc:
            console.puts(f"ERROR: {exc}\n")
            volume = None
        if volume is not None:
            run_fat_demo(console, volume)
        run_process_demo(console, table, allocator, args.max_switches)

    console.puts("主函数返回，系统已停止。\n")
    return 0