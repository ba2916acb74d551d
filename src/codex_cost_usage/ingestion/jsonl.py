"""Resumable byte-offset reader for append-only JSONL files."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

MAX_LINE_BYTES = 256 * 1024


@dataclass(frozen=True)
class JsonlLine:
    """One newline-terminated line; truncated lines carry no content."""

    data: bytes
    truncated: bool


class JsonlReader:
    """Yield complete lines from `start_offset` and track the bytes fully consumed.

    A trailing line without a newline is left unconsumed so that the next pass
    picks it up once the writer finishes it.
    """

    def __init__(self, handle: BinaryIO, start_offset: int = 0, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        if start_offset < 0:
            raise ValueError(f"start_offset must be >= 0, got {start_offset}.")
        if max_line_bytes <= 0:
            raise ValueError(f"max_line_bytes must be > 0, got {max_line_bytes}.")
        self._handle = handle
        self._start_offset = start_offset
        self._max_line_bytes = max_line_bytes
        self._end_offset = start_offset

    @property
    def end_offset(self) -> int:
        """Return the offset just past the last fully consumed line."""
        return self._end_offset

    def __iter__(self) -> Iterator[JsonlLine]:
        self._handle.seek(self._start_offset)
        limit = self._max_line_bytes + 1
        while True:
            chunk = self._handle.readline(limit)
            if not chunk:
                return

            if chunk.endswith(b"\n"):
                self._end_offset += len(chunk)
                yield JsonlLine(data=chunk.rstrip(b"\r\n"), truncated=False)
                continue

            if len(chunk) < limit:
                return

            consumed = len(chunk)
            while True:
                part = self._handle.readline(limit)
                if not part:
                    return
                consumed += len(part)
                if part.endswith(b"\n"):
                    break
            self._end_offset += consumed
            yield JsonlLine(data=b"", truncated=True)
