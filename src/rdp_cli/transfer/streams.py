"""
Byte-stream helpers for chunked transfers.

These are the primitives both transfer protocols are built from: positioning a
source stream at a resume offset, carving a bounded chunk out of it while
counting what was actually consumed, and reading a full buffer that tolerates
a short final read.
"""
from __future__ import annotations

import io
from typing import BinaryIO, Iterator

from .progress import ProgressSink

__all__ = ["READ_BLOCK", "skip_to_offset", "read_full", "LimitedReader", "ProgressReader"]

READ_BLOCK = 64 * 1024


def _is_seekable(stream: BinaryIO) -> bool:
    seekable = getattr(stream, "seekable", None)
    try:
        return bool(seekable and seekable())
    except (OSError, ValueError):
        return False


def skip_to_offset(stream: BinaryIO, offset: int) -> None:
    """
    Advance *stream* by *offset* bytes from its current position.

    Seekable streams are repositioned; others (pipes, stdin) are read and the
    bytes discarded.

    Raises:
        EOFError: If a non-seekable stream ends before the offset is reached
    """
    if offset <= 0:
        return
    if _is_seekable(stream):
        stream.seek(offset, io.SEEK_CUR)
        return

    remaining = offset
    while remaining > 0:
        block = stream.read(min(remaining, READ_BLOCK))
        if not block:
            raise EOFError(f"stream ended {remaining} bytes short of offset {offset}")
        remaining -= len(block)


def read_full(stream: BinaryIO, size: int) -> bytes:
    """
    Read up to *size* bytes, looping over short reads.

    Returns fewer than *size* bytes only at end of stream; an empty result
    means the stream is exhausted. End of stream is never an error here.
    """
    parts = []
    got = 0
    while got < size:
        block = stream.read(size - got)
        if not block:
            break
        parts.append(block)
        got += len(block)
    return b"".join(parts)


class LimitedReader:
    """
    Reader over at most *limit* bytes of an underlying stream.

    ``remaining`` counts the bytes not yet handed out, so the amount actually
    consumed is ``limit - remaining`` even when the source ends early.
    Iterating yields blocks, which lets the reader be used directly as a
    streamed request body.
    """

    def __init__(self, stream: BinaryIO, limit: int):
        self.stream = stream
        self.limit = limit
        self.remaining = limit

    @property
    def consumed(self) -> int:
        return self.limit - self.remaining

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b""
        if size < 0 or size > self.remaining:
            size = self.remaining
        data = self.stream.read(size)
        self.remaining -= len(data)
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            block = self.read(READ_BLOCK)
            if not block:
                return
            yield block


class ProgressReader:
    """Tee reader: every byte read from *stream* is also reported to *progress*."""

    def __init__(self, stream: BinaryIO, progress: ProgressSink):
        self.stream = stream
        self.progress = progress

    def read(self, size: int = -1) -> bytes:
        data = self.stream.read(size)
        if data:
            self.progress.advance(len(data))
        return data

    def seekable(self) -> bool:
        return False
