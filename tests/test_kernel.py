import io
import struct

import pytest

from simpleos.blockdev import SECTOR_SIZE, VirtioBlockDevice
from simpleos.console import Console
from simpleos.fat import FatVolume
from simpleos.kernel import (
    init_proc_stack,
    main,
    print_context_info,
    run_block_device_check,
    run_fat_demo,
    run_process_demo,
)
from simpleos.memory import MEM_START, PageAllocator
from simpleos.proc import NPROC, Context, ProcessTable, ProcState

TOTAL_SECTORS = 100


def make_fat16_image() -> bytearray:
    image = bytearray(TOTAL_SECTORS * SECTOR_SIZE)
    bpb = struct.pack(
        "<3s8sHBHBHHBHHHII",
        b"\xeb\x3c\x90",
        b"MKFSFAT ",
        512,
        1,
        1,
        2,
        512,
        TOTAL_SECTORS,
        0xF8,
        1,
        32,
        2,
        0,
        0,
    )
    image[: len(bpb)] = bpb
    image[510:512] = b"\x55\xaa"
    for fat in range(2):
        start = (1 + fat) * SECTOR_SIZE
        image[start : start + 4] = b"\xf8\xff\xff\xff"
    return image


def make_console(text: str = ""):
    out = io.StringIO()
    return Console(output=out, input=io.StringIO(text)), out


def _idle_entry():
    yield


def test_print_context_info_exact_output():
    console, out = make_console()
    print_context_info(console, Context(sp=MEM_START, x30=0x1234), "ctx")
    assert out.getvalue() == (
        "\r\n上下文信息：ctx:\r\n"
        "x30（返回地址） = 0x0000000000001234\r\n"
        "sp = 0x0000000040000000\r\n"
    )


def test_init_proc_stack_sets_stack_and_entry():
    console, out = make_console()
    table = ProcessTable()
    proc = table.alloc()

    init_proc_stack(console, proc, _idle_entry, MEM_START, 16 * 1024)
    assert proc.kstack == MEM_START + 16 * 1024
    assert proc.context.sp == proc.kstack
    assert proc.context.x30 == id(_idle_entry)
    assert proc.context.x19 == 0 and proc.context.x29 == 0
    assert proc.entry is _idle_entry
    text = out.getvalue()
    assert "正在初始化进程 1\r\n" in text
    assert "栈基址 = 0x0000000040000000" in text
    assert "初始上下文" in text


def test_block_device_check_succeeds_and_writes_pattern():
    console, out = make_console()
    image = bytearray(4 * SECTOR_SIZE)
    assert run_block_device_check(console, VirtioBlockDevice(image)) is True
    assert bytes(image[:SECTOR_SIZE]) == bytes(range(256)) * 2
    assert "数据校验成功！" in out.getvalue()


def test_block_device_check_reports_write_failure():
    console, out = make_console()
    assert run_block_device_check(console, VirtioBlockDevice(bytearray())) is False
    assert "写入失败" in out.getvalue()
    assert "读取成功" not in out.getvalue()


def test_fat_demo_results():
    console, out = make_console()
    volume = FatVolume(VirtioBlockDevice(make_fat16_image()))
    report = run_fat_demo(console, volume)
    assert report["written"] == [23, 22, 18]
    assert report["read"] == ["Overwrite file 1!", "File 2, first content."]
    assert report["missing"] == -1
    assert report["listing"] == [("TEST1   .TXT", 18), ("TEST2   .TXT", 22)]
    text = out.getvalue()
    assert "读取TEST1.TXT内容: Overwrite file 1!\r\n" in text
    assert "FFFFFFFFFFFFFFFF (应为-1)" in text
    assert "新建并写入TEST1.TXT字节数: 0000000000000017" in text


def test_fat_demo_persists_to_volume():
    console, _ = make_console()
    image = make_fat16_image()
    run_fat_demo(console, FatVolume(VirtioBlockDevice(image)))
    reopened = FatVolume(VirtioBlockDevice(image))
    assert reopened.read_file("TEST2   TXT", 22) == b"File 2, first content."


def test_process_demo_runs_until_input_ends():
    console, out = make_console("a\rb\rc\r")
    table = ProcessTable()
    allocator = PageAllocator()
    switches = run_process_demo(console, table, allocator, None)
    assert switches == 6
    assert [p.state for p in table.procs[:3]] == [ProcState.ZOMBIE] * 3
    assert all(allocator.is_allocated(i) for i in range(12))
    assert not allocator.is_allocated(12)
    text = out.getvalue()
    assert text.index("进程1正在运行") < text.index("进程2正在运行") < text.index("进程3正在运行")
    assert "a\r" in text and "c\r" in text


def test_process_demo_respects_switch_limit():
    console, _ = make_console("x\ry\rz\r")
    table = ProcessTable()
    switches = run_process_demo(console, table, PageAllocator(), 2)
    assert switches == 2
    assert table.procs[2].state == ProcState.RUNNABLE


def test_process_demo_reports_full_table():
    console, out = make_console()
    table = ProcessTable()
    for _ in range(NPROC - 1):
        table.alloc()
    assert run_process_demo(console, table, PageAllocator(), None) == 0
    assert "进程分配失败！" in out.getvalue()
    assert table.procs[-1].state == ProcState.UNUSED


def test_main_runs_demo_on_image(tmp_path, monkeypatch, capsys):
    path = tmp_path / "disk.img"
    path.write_bytes(bytes(make_fat16_image()))
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    assert main([str(path)]) == 0
    captured = capsys.readouterr().out
    assert captured.startswith("UART initialized\r\n")
    assert "Virtio block device initialized" in captured
    assert captured.endswith("主函数返回，系统已停止。\r\n")
    data = path.read_bytes()
    assert b"TEST1   TXT" in data


def test_main_missing_image(tmp_path, capsys):
    assert main([str(tmp_path / "absent.img")]) == 1
    assert "could not find virtio disk" in capsys.readouterr().out


def test_main_rejects_bad_reserved_pages(tmp_path):
    with pytest.raises(SystemExit):
        main([str(tmp_path / "disk.img"), "--reserved-pages", "-1"])