"""Line splitting shared by the log sink, progress tracker and classifier."""

from __future__ import annotations


def split_lines(text: str) -> list[str]:
    """Split a chunk on line boundaries, dropping blank lines."""

    lines: list[str] = []
    for raw in text.splitlines():
        line = raw.rstrip()
        if line.strip():
            lines.append(line)
    return lines


class LineAssembler:
    """Reassemble complete lines from arbitrarily cut output chunks.

    Process pipes deliver bytes in whatever slices the OS hands over, so a
    line can arrive split across two chunks. `feed` keeps the unterminated
    tail until the next chunk (or `flush`) completes it.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        buffer = self._pending + text
        # \r alone is how tools redraw progress in place; treat it as a break.
        buffer = buffer.replace("\r\n", "\n").replace("\r", "\n")
        head, sep, tail = buffer.rpartition("\n")
        if not sep:
            self._pending = buffer
            return []
        self._pending = tail
        return split_lines(head)

    def flush(self) -> list[str]:
        pending, self._pending = self._pending, ""
        return split_lines(pending)

    @property
    def pending(self) -> str:
        return self._pending
