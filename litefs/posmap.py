"""Replication positions and their binary map encoding, plus path wildcards."""

from __future__ import annotations

import dataclasses
import io
import re
import struct
from typing import BinaryIO, Mapping

_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")
_MAX_INT32 = 2**31 - 1
_HEX16 = re.compile(r"[0-9a-fA-F]{16}")


def format_txid(txid: int) -> str:
    """Format a transaction ID as 16 lower-case hex digits."""
    return f"{txid:016x}"


def parse_txid(text: str) -> int:
    """Parse a 16-digit hex transaction ID."""
    if len(text) != 16:
        raise ValueError(f"invalid formatted transaction id length: {text!r}")
    if not _HEX16.fullmatch(text):
        raise ValueError(f"invalid transaction id format: {text!r}")
    return int(text, 16)


def format_node_id(node_id: int) -> str:
    """Format a node ID as 16 upper-case hex digits."""
    return f"{node_id:016X}"


def parse_node_id(text: str) -> int:
    """Parse a 16-digit hex node ID."""
    if len(text) != 16:
        raise ValueError(f"invalid formatted node id length: {text!r}")
    if not _HEX16.fullmatch(text):
        raise ValueError(f"invalid node id format: {text!r}")
    return int(text, 16)


@dataclasses.dataclass(frozen=True)
class Pos:
    """Replication position: a transaction ID and the checksum after applying it."""

    txid: int = 0
    post_apply_checksum: int = 0

    def __str__(self) -> str:
        return f"{format_txid(self.txid)}/{self.post_apply_checksum:016x}"

    def to_json(self) -> dict:
        return {
            "txid": format_txid(self.txid),
            "postApplyChecksum": f"{self.post_apply_checksum:016x}",
        }

    @classmethod
    def from_json(cls, obj: Mapping | None) -> Pos:
        if not obj:
            return cls()
        txid = obj.get("txid", 0)
        checksum = obj.get("postApplyChecksum", 0)
        if isinstance(txid, str):
            txid = parse_txid(txid) if txid else 0
        if isinstance(checksum, str):
            checksum = int(checksum, 16) if checksum else 0
        return cls(int(txid), int(checksum))


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        part = stream.read(size - len(data))
        if not part:
            raise EOFError("unexpected EOF" if data else "EOF")
        data += part
    return bytes(data)


def read_pos_map(stream: BinaryIO) -> dict[str, Pos]:
    """Decode a position map written by :func:`write_pos_map`."""
    (count,) = _U32.unpack(_read_exact(stream, _U32.size))
    result: dict[str, Pos] = {}
    for _ in range(count):
        (name_len,) = _U32.unpack(_read_exact(stream, _U32.size))
        name = _read_exact(stream, name_len).decode()
        (txid,) = _U64.unpack(_read_exact(stream, _U64.size))
        (checksum,) = _U64.unpack(_read_exact(stream, _U64.size))
        result[name] = Pos(txid, checksum)
    return result


def write_pos_map(stream: BinaryIO, pos_map: Mapping[str, Pos]) -> None:
    """Encode ``pos_map`` to ``stream`` with names in sorted order."""
    buf = io.BytesIO()
    buf.write(_U32.pack(len(pos_map)))
    for name in sorted(pos_map):
        pos = pos_map[name]
        encoded = name.encode()
        if len(encoded) > _MAX_INT32:
            raise ValueError("database name too long")
        buf.write(_U32.pack(len(encoded)))
        buf.write(encoded)
        buf.write(_U64.pack(pos.txid))
        buf.write(_U64.pack(pos.post_apply_checksum))
    stream.write(buf.getvalue())


def compile_match(pattern: str) -> re.Pattern:
    """Compile an asterisk-only wildcard into a regex matching the whole path."""
    escaped = re.escape(pattern).replace(r"\*", ".*")
    return re.compile("^" + escaped + r"\Z")