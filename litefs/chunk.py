"""Chunked byte streams for payloads whose length is not known up front.

Each chunk is a 2-byte big-endian length followed by that many bytes.
A zero length marks the end of the stream.
"""

from __future__ import annotations

import struct
from typing import BinaryIO

EOF_MARKER = 0x0000
MAX_CHUNK_SIZE = 0xFFFF

_HEADER = struct.Struct(">H")


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        part = stream.read(size - len(data))
        if not part:
            break
        data += part
    return bytes(data)


class ChunkReader:
    """Reads the payload out of a chunked byte stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._buf = b""
        self._eof = False

    def _fill(self) -> bool:
        """Load the next chunk into the buffer; return False at the end marker."""
        header = _read_exact(self._stream, _HEADER.size)
        if len(header) < _HEADER.size:
            raise EOFError("unexpected EOF")

        (size,) = _HEADER.unpack(header)
        if size == EOF_MARKER:
            self._eof = True
            return False

        data = _read_exact(self._stream, size)
        if len(data) < size:
            raise EOFError("unexpected EOF")
        self._buf = data
        return True

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` bytes, or everything left when size is negative."""
        if size is None or size < 0:
            parts = [self._buf]
            self._buf = b""
            while not self._eof and self._fill():
                parts.append(self._buf)
                self._buf = b""
            return b"".join(parts)

        if not self._buf:
            if self._eof or not self._fill():
                return b""

        out, self._buf = self._buf[:size], self._buf[size:]
        return out

    def __iter__(self):
        while True:
            data = self.read(MAX_CHUNK_SIZE)
            if not data:
                return
            yield data


class ChunkWriter:
    """Writes data to an underlying stream as a chunked byte stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.closed = False

    def write(self, data: bytes) -> int:
        """Write ``data`` as one or more chunks and return the bytes written."""
        view = memoryview(data)
        written = 0
        while view:
            chunk, view = view[:MAX_CHUNK_SIZE], view[MAX_CHUNK_SIZE:]
            self._stream.write(_HEADER.pack(len(chunk)))
            self._stream.write(chunk)
            written += len(chunk)
        return written

    def close(self) -> None:
        """Write the closing end marker. Closing twice is a no-op."""
        if self.closed:
            return
        self.closed = True
        self._stream.write(_HEADER.pack(EOF_MARKER))

    def __enter__(self) -> ChunkWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()