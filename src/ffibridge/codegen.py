"""
Source Text Writer
==================

Line-oriented writer used by every emitter. Generated text is built one
line at a time with explicit indentation; rendering normalises blank
lines so output is byte-stable across runs.

Usage
-----
>>> w = CodeWriter()
>>> with w.block("class Point:"):
...     w.emit("x: float")
>>> w.render()
'class Point:\\n    x: float\\n'
"""

from contextlib import contextmanager
from typing import Iterable, Iterator, Optional


class CodeWriter:
    """
    Accumulates indented source lines.

    Attributes:
        indent_unit: Text for one indentation level
    """

    def __init__(self, indent_unit: str = "    "):
        self.indent_unit = indent_unit
        self._lines: list[str] = []
        self._level = 0

    def emit(self, line: str = "") -> None:
        """Emit one line at the current indentation."""
        if line:
            self._lines.append(self.indent_unit * self._level + line)
        else:
            self._lines.append("")

    def emit_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.emit(line)

    def emit_raw(self, text: str) -> None:
        """Emit pre-formatted text, re-indented to the current level."""
        for line in text.splitlines():
            self.emit(line)

    def emit_doc(self, text: Optional[str], prefix: str) -> None:
        """Emit a documentation comment, one prefixed line per text line."""
        if not text:
            return
        for line in text.strip().splitlines():
            self.emit(f"{prefix}{line}".rstrip())

    def blank(self) -> None:
        self._lines.append("")

    @contextmanager
    def indented(self) -> Iterator[None]:
        self._level += 1
        try:
            yield
        finally:
            self._level -= 1

    @contextmanager
    def block(self, opener: str, closer: Optional[str] = None) -> Iterator[None]:
        """
        Emit opener, an indented body, then closer.

        Python-style blocks pass no closer; brace languages pass "}".
        """
        self.emit(opener)
        with self.indented():
            yield
        if closer is not None:
            self.emit(closer)

    def render(self) -> str:
        """Joined text with runs of blank lines collapsed to two and one trailing newline."""
        out: list[str] = []
        blank_run = 0
        for line in self._lines:
            if line.strip():
                blank_run = 0
                out.append(line.rstrip())
            else:
                blank_run += 1
                if blank_run <= 2 and out:
                    out.append("")
        while out and not out[-1]:
            out.pop()
        return "\n".join(out) + "\n"
