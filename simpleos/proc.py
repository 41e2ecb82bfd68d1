"""Process table and a cooperative round-robin scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Iterator, Optional

NCPU = 1
NPROC = 16


class ProcState(IntEnum):
    UNUSED = 0
    USED = 1
    BLOCKED = 2
    RUNNABLE = 3
    RUNNING = 4
    ZOMBIE = 5


@dataclass
class Context:
    """Callee-saved registers kept across a context switch."""

    sp: int = 0
    x18: int = 0
    x19: int = 0
    x20: int = 0
    x21: int = 0
    x22: int = 0
    x23: int = 0
    x24: int = 0
    x25: int = 0
    x26: int = 0
    x27: int = 0
    x28: int = 0
    x29: int = 0
    x30: int = 0


EntryPoint = Callable[[], Optional[Iterator[object]]]


@dataclass
class Process:
    """Process control block.

    ``entry`` is a generator function; each bare ``yield`` in it gives the
    CPU back to the scheduler.
    """

    state: ProcState = ProcState.UNUSED
    pid: int = 0
    kstack: int = 0
    context: Context = field(default_factory=Context)
    entry: Optional[EntryPoint] = None
    _body: Optional[Iterator[object]] = field(default=None, init=False, repr=False)


@dataclass
class Cpu:
    """Per-CPU state: the running process and the scheduler's context."""

    proc: Optional[Process] = None
    context: Context = field(default_factory=Context)


def _cpuid() -> int:
    return 0


class ProcessTable:
    """Fixed table of processes scheduled on a single CPU."""

    def __init__(self) -> None:
        self.procs = [Process() for _ in range(NPROC)]
        self.cpus = [Cpu() for _ in range(NCPU)]
        self.next_pid = 1
        self.cpu.proc = None

    @property
    def cpu(self) -> Cpu:
        return self.cpus[_cpuid()]

    def current(self) -> Optional[Process]:
        """Return the process running on this CPU, if any."""
        return self.cpu.proc

    def alloc(self) -> Process:
        """Claim the first unused slot and give it a fresh pid."""
        for proc in self.procs:
            if proc.state == ProcState.UNUSED:
                proc.state = ProcState.USED
                proc.pid = self.next_pid
                self.next_pid += 1
                return proc
        raise RuntimeError("process table full")

    def free(self, proc: Process) -> None:
        """Return a process slot to the unused pool."""
        proc.pid = 0
        proc.state = ProcState.UNUSED
        proc.entry = None
        proc._body = None

    def describe(self, proc: Optional[Process]) -> str:
        """Return ``'Process <pid>: state=<NAME>'``, or an empty string for no process."""
        if proc is None:
            return ""
        try:
            name = ProcState(proc.state).name
        except ValueError:
            name = "UNKNOWN"
        return f"Process {proc.pid}: state={name}"

    def _switch_to(self, proc: Process) -> None:
        if proc._body is None:
            if proc.entry is None:
                raise RuntimeError(f"process {proc.pid} has no entry point")
            body = proc.entry()
            if body is None:
                proc.state = ProcState.ZOMBIE
                return
            proc._body = iter(body)
        try:
            next(proc._body)
        except StopIteration:
            proc.state = ProcState.ZOMBIE
            proc._body = None
        else:
            proc.state = ProcState.RUNNABLE

    def scheduler(self, max_switches: Optional[int] = None) -> int:
        """Run runnable processes round-robin and return the number of switches.

        Stops after ``max_switches`` switches, or once a full pass over the
        table finds nothing runnable.
        """
        cpu = self.cpu
        cpu.proc = None
        switches = 0
        while max_switches is None or switches < max_switches:
            ran = False
            for proc in self.procs:
                if max_switches is not None and switches >= max_switches:
                    break
                if proc.state != ProcState.RUNNABLE:
                    continue
                proc.state = ProcState.RUNNING
                cpu.proc = proc
                try:
                    self._switch_to(proc)
                finally:
                    cpu.proc = None
                switches += 1
                ran = True
            if not ran:
                break
        return switches