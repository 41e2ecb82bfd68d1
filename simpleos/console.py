"""Character console that follows serial-terminal output conventions."""

from __future__ import annotations

import sys
from typing import TextIO

HEX_DIGITS = 16
_U64_MASK = (1 << 64) - 1


class Console:
    """Reads and writes characters on a pair of text streams.

    ``puts`` sends a carriage return before every newline, as a serial
    terminal expects; ``putc`` writes exactly the character it is given.
    """

    def __init__(self, output: TextIO | None = None, input: TextIO | None = None) -> None:
        self.output = sys.stdout if output is None else output
        self.input = sys.stdin if input is None else input

    def putc(self, c: str) -> None:
        """Write a single character."""
        if len(c) != 1:
            raise ValueError(f"putc expects one character, got {len(c)}")
        self.output.write(c)

    def getc(self) -> str:
        """Read a single character; raise EOFError when input is exhausted."""
        c = self.input.read(1)
        if not c:
            raise EOFError("console input exhausted")
        return c

    def puts(self, s: str) -> None:
        """Write a string, turning each newline into a CR LF pair."""
        for c in s:
            if c == "\n":
                self.putc("\r")
            self.putc(c)

    def put_hex(self, n: int) -> None:
        """Write ``n`` as sixteen upper-case hex digits (two's complement for negatives)."""
        self.puts(f"{n & _U64_MASK:0{HEX_DIGITS}X}")