"""Fenced JSON block extraction over a growing assistant-text buffer.

A block is a ```` ```json ```` fence, whitespace up to the end of that line,
a body, then a newline and the closing ```` ``` ````. The first closing fence
after the opener ends the block; nested fences are not supported. A closing
fence must start its own line: ```` {...}``` ```` on the body line does not
close the block, so the body runs on to the next line that starts with
```` ``` ````, possibly the opener of a following block. Such a body is not
valid JSON and both calls stay as plain text.

``extract_json_blocks`` is the stateless form used on a complete snapshot.
``FenceScanner`` is what the relay drives while text streams in: it keeps the
accumulated text plus a cursor, so text behind the cursor is never scanned
again, and it hands out prose as soon as it cannot belong to a fence.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Literal

FENCE_OPEN = "```json"

_FENCE_RE = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)


def extract_json_blocks(text: str) -> list[str]:
    """Return the trimmed body of every complete fenced json block, in order."""
    return [m.group(1).strip() for m in _FENCE_RE.finditer(text)]


@dataclass
class Segment:
    """A piece of scanned text.

    kind   - "text" for prose, "block" for a complete fence
    text   - the literal text, including the fences for a block
    body   - trimmed block body ("" for prose)
    start  - offset of ``text`` in the scanner's buffer when it was yielded
    """

    kind: Literal["text", "block"]
    text: str
    body: str = ""
    start: int = 0


class FenceScanner:
    """Accumulator for one assistant turn, scanned incrementally."""

    def __init__(self) -> None:
        self.text = ""
        self._cursor = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def feed(self, delta: str) -> Iterator[Segment]:
        """Append ``delta`` and yield every segment that is now settled.

        Callers may ``excise`` a yielded block before resuming the iterator.
        """
        self.text += delta
        yield from self._scan()

    def excise(self, segment: Segment) -> None:
        """Remove a dispatched block's literal text from the accumulator."""
        end = segment.start + len(segment.text)
        if self.text[segment.start:end] != segment.text:
            raise ValueError("segment is not at its recorded offset")
        self.text = self.text[: segment.start] + self.text[end:]
        if self._cursor >= end:
            self._cursor -= len(segment.text)
        elif self._cursor > segment.start:
            self._cursor = segment.start

    def flush(self) -> str:
        """Release everything past the cursor, including an unclosed fence."""
        rest = self.text[self._cursor :]
        self._cursor = len(self.text)
        return rest

    def _scan(self) -> Iterator[Segment]:
        while True:
            start = self.text.find(FENCE_OPEN, self._cursor)

            if start == -1:
                # Hold back a tail that could still grow into an opener.
                end = len(self.text) - self._partial_opener_len()
                if end > self._cursor:
                    segment = Segment("text", self.text[self._cursor : end], start=self._cursor)
                    self._cursor = end
                    yield segment
                return

            if start > self._cursor:
                segment = Segment("text", self.text[self._cursor : start], start=self._cursor)
                self._cursor = start
                yield segment
                continue

            header = self._header_state(start)
            if header == "pending":
                return
            if header == "invalid":
                # "```jsonc" or "```json {...}" is ordinary text.
                self._cursor = start + len(FENCE_OPEN)
                yield Segment("text", FENCE_OPEN, start=start)
                continue

            match = _FENCE_RE.match(self.text, start)
            if match is None:
                return  # unclosed

            self._cursor = match.end()
            yield Segment("block", match.group(0), match.group(1).strip(), start)

    def _header_state(self, start: int) -> Literal["valid", "invalid", "pending"]:
        header_start = start + len(FENCE_OPEN)
        newline = self.text.find("\n", header_start)
        header = self.text[header_start:] if newline == -1 else self.text[header_start:newline]
        if header.strip():
            return "invalid"
        return "pending" if newline == -1 else "valid"

    def _partial_opener_len(self) -> int:
        tail = self.text[self._cursor :]
        for k in range(min(len(FENCE_OPEN) - 1, len(tail)), 0, -1):
            if tail.endswith(FENCE_OPEN[:k]):
                return k
        return 0
