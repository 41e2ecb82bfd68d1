# simpleos

`simpleos` models a small kernel in software. It has no dependencies outside the standard library. It is made of five parts:

- `simpleos.console.Console` is a character console over a pair of text streams, which default to stdout and stdin. `putc` writes one character and `getc` reads one, raising `EOFError` when input runs out. `puts` writes a string and sends `\r` before every `\n`. `put_hex` writes a number as sixteen upper-case hex digits.
- `simpleos.blockdev.VirtioBlockDevice` is a block device of 512-byte sectors. Its backing store is either a `bytearray` or a seekable binary file opened for reading and writing. It has `read_sector(sector)` and `write_sector(sector, data)`. Every request travels as a three-descriptor chain taken from a `DescriptorPool`, which has `alloc`, `alloc3`, `free` and `free_chain`.
- `simpleos.memory.PageAllocator` is a first-fit bitmap allocator for 128 MiB of memory that starts at `0x40000000`, in 4096-byte pages. It has `alloc_pages(count)`, `free_pages(addr, count)` and `is_allocated(index)`.
- `simpleos.fat.FatVolume` is a FAT16 volume that works only in the root directory. It has `read_file`, `write_file` and `list_dir`. Files are named by their 11-byte 8.3 name, for example `"TEST1   TXT"`. `BiosParameterBlock` and `DirEntry` parse the on-disk structures.
- `simpleos.proc.ProcessTable` is a table of 16 processes with a cooperative round-robin scheduler. It has `alloc`, `free`, `describe`, `current` and `scheduler(max_switches)`.

## Installation

```
pip install .
```

To install with the test dependencies and run the tests:

```
pip install ".[test]"
pytest
```

## Running the demo

```
simpleos disk.img
```

`disk.img` must be an existing FAT16-formatted raw disk image. The image is opened for writing, so the command changes it.

The command does the following, in order:

1. It runs the FAT demo (`run_fat_demo`) on the image. The demo creates `TEST1.TXT` and `TEST2.TXT`, overwrites the first, reads both back, tries a missing file and lists the root directory.
2. It starts three echo processes (`run_process_demo`). Each process gets a 16 KiB stack from the page allocator. On its turn, a process echoes one line of console input and then yields to the scheduler.
3. When input ends, each process finishes and the scheduler returns.

The progress messages are printed in Chinese.

Options:

- `--reserved-pages N` marks the first `N` pages as in use before any allocation is made.
- `--max-switches N` stops the scheduler after `N` context switches.

If the image cannot be opened, the command prints `ERROR: could not find virtio disk` and exits with status 1.

The functions in `simpleos.kernel` can also be called directly:

- `run_block_device_check(console, device)` writes a byte pattern to sector 0, reads it back and returns whether the two match.
- `init_proc_stack` sets up the stack and entry point of a process and prints them.
- `print_context_info` prints the registers saved in a process context.

## Using the pieces

```python
from simpleos.blockdev import VirtioBlockDevice
from simpleos.fat import FatVolume

device = VirtioBlockDevice(image)        # image: a FAT16-formatted bytearray
volume = FatVolume(device)

stored = volume.write_file("TEST1   TXT", b"Hello, this is file 1!\0", 0)
print(volume.read_file("TEST1   TXT", 23, 0))
for entry in volume.list_dir("/", 16):
    if not entry.is_free():
        print(entry.display_name(), entry.size)
```

```python
from simpleos.memory import PageAllocator

allocator = PageAllocator(reserved_pages=16)
stack = allocator.alloc_pages(4)         # address of a 16 KiB region
allocator.free_pages(stack, 4)
```

Process bodies are generator functions, and each bare `yield` hands the CPU back to the scheduler:

```python
from simpleos.proc import ProcessTable, ProcState

def body():
    for _ in range(3):
        yield

table = ProcessTable()
proc = table.alloc()
proc.entry = body
proc.state = ProcState.RUNNABLE
table.scheduler()                        # returns the number of switches, here 4
```

## Errors

Each part raises its own exception when an operation fails:

- The block device raises `BlockDeviceError`, for example for a sector past the end of the image or when no descriptors are free.
- The allocator raises `OutOfMemoryError` when no run of free pages is long enough. It raises `ValueError` for a bad count or address.
- The FAT volume raises `FatError` for a missing file, a full root directory, no free cluster or an unreadable sector. It raises `ValueError` for a name that is not 11 bytes long.
- The process table raises `RuntimeError` when all of its slots are in use.

## Limits

- The package does not create or format disk images. Make one with an external tool first.
- `FatVolume` sees only the root directory. It looks up files, and creates new ones, in the first root-directory sector alone. It has no subdirectories.
- A new file gets one cluster, and writes never extend a cluster chain. `write_file` stores only what fits in the existing chain and returns that byte count, yet records `len(data)` as the file's size.
- The `offset` argument of `read_file` and `write_file` is ignored, and so is the `path` argument of `list_dir`. Transfers always start at the first byte of a file.
- The scheduler is cooperative and runs on a single CPU. It has no interrupts and no preemption.