from __future__ import annotations
from typing import Callable, Optional
import re

# `\n` and `\r\n` are both terminators; a lone `\r` is ordinary text.
_TERMINATOR = re.compile(r"\r?\n")


class LineBuffer:
    """
    Turns arbitrary text fragments into complete lines.

    Every `push` emits the lines completed so far through `on_line` and keeps
    the trailing incomplete segment in `pending`. `done` hands whatever is
    left (possibly "") to `on_done` so the caller decides whether it is a
    real line.
    """

    def __init__(
        self,
        on_line: Callable[[str], None],
        on_done: Optional[Callable[[str], None]] = None,
        *,
        seed: str = "",
    ) -> None:
        self.on_line = on_line
        self.on_done = on_done
        self.pending = seed

    def push(self, text: str) -> None:
        if not text:
            return
        buf = self.pending + text
        parts = _TERMINATOR.split(buf)
        tail = parts.pop()
        # "\r" may be the first half of a "\r\n" arriving with the next push
        self.pending = tail
        for line in parts:
            self.on_line(line)

    def done(self) -> str:
        tail = self.pending
        self.pending = ""
        if self.on_done is not None:
            self.on_done(tail)
        return tail
