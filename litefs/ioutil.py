"""Small file and I/O helpers."""

from __future__ import annotations

import os
from typing import Any

_IGNORED_CLOSE_ERRORS = (
    "use of closed network connection",
    "http: Server closed",
)


class _ShortReadError(EOFError):
    """Raised when fewer bytes than requested could be read.

    ``partial`` holds whatever was read before the end was reached.
    """

    def __init__(self, partial: bytes) -> None:
        super().__init__("unexpected EOF" if partial else "EOF")
        self.partial = partial


def sync_path(path: str | os.PathLike) -> None:
    """Flush ``path`` (typically a directory) to stable storage."""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _read_at(reader: Any, size: int, offset: int) -> bytes:
    if isinstance(reader, int):
        return os.pread(reader, size, offset)
    reader.seek(offset)
    return reader.read(size)


def read_full_at(reader: Any, size: int, offset: int) -> bytes:
    """Read exactly ``size`` bytes at ``offset`` from a seekable reader or fd.

    Raises an EOFError if the data ends early; its ``partial`` attribute
    holds the bytes that were read.
    """
    buf = bytearray()
    while len(buf) < size:
        part = _read_at(reader, size - len(buf), offset + len(buf))
        if not part:
            break
        buf += part
    if len(buf) >= size:
        return bytes(buf)
    raise _ShortReadError(bytes(buf))


def close_quietly(closer: Any) -> None:
    """Close ``closer``, ignoring errors that only mean it is already closed."""
    if closer is None:
        return
    try:
        closer.close()
    except Exception as exc:
        message = str(exc)
        if any(text in message for text in _IGNORED_CLOSE_ERRORS):
            return
        raise