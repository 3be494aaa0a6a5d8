"""File naming and the contents of the virtual lag, position and primary files."""

from __future__ import annotations

import enum
import errno
import time
from datetime import datetime, timezone

LAG_FILENAME = ".lag"
LAG_SIZE = 11
PRIMARY_FILENAME = ".primary"
POS_FILE_SIZE = 34

_MAX_INT32 = 2**31 - 1


class FileType(enum.IntEnum):
    DATABASE = 0
    JOURNAL = 1
    WAL = 2
    SHM = 3
    POS = 4
    LOCK = 5


_FILENAMES = {
    FileType.DATABASE: "database",
    FileType.JOURNAL: "journal",
    FileType.WAL: "wal",
    FileType.SHM: "shm",
    FileType.POS: "pos",
    FileType.LOCK: "lock",
}

_SUFFIXES = (
    ("-journal", FileType.JOURNAL),
    ("-wal", FileType.WAL),
    ("-shm", FileType.SHM),
    ("-pos", FileType.POS),
    ("-lock", FileType.LOCK),
)


class ReadOnlyReplicaError(Exception):
    """A write was attempted on a read-only replica."""

    def __init__(self, message: str = "read only replica") -> None:
        super().__init__(message)


class FuseError(Exception):
    """Wraps an error together with the errno to report to the file system."""

    def __init__(self, err: BaseException, code: int) -> None:
        super().__init__(str(err))
        self.err = err
        self.errno = code

    def __str__(self) -> str:
        return str(self.err)


def file_type_filename(file_type: int) -> str:
    """Return the base name of the internal data file for ``file_type``."""
    try:
        return _FILENAMES[FileType(file_type)]
    except ValueError:
        raise ValueError(f"invalid file type: {int(file_type)}") from None


def parse_filename(name: str) -> tuple[str, FileType]:
    """Split a base name into the database name and file type."""
    for suffix, file_type in _SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)], file_type
    return name, FileType.DATABASE


def to_error(err: BaseException) -> BaseException:
    """Attach a file-system errno to errors that have one; pass others through."""
    if isinstance(err, FileNotFoundError) or (
        isinstance(err, OSError) and err.errno == errno.ENOENT
    ):
        return FuseError(err, errno.ENOENT)
    if isinstance(err, ReadOnlyReplicaError):
        return FuseError(err, errno.EACCES)
    return err


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def format_lag(primary_timestamp: int, now_ms: int | None = None) -> bytes:
    """Contents of the lag file: signed, zero-padded milliseconds behind the primary.

    A timestamp of 0 means this node is the primary; -1 means initial
    replication has not finished.
    """
    if primary_timestamp == 0:
        lag = 0
    elif primary_timestamp == -1:
        lag = _MAX_INT32
    else:
        lag = (_now_ms() if now_ms is None else now_ms) - primary_timestamp
    return f"{lag:+010d}\n".encode()


def lag_mtime(primary_timestamp: int, now_ms: int | None = None) -> datetime:
    """Modification time reported for the lag file."""
    if primary_timestamp == 0:
        ms = _now_ms() if now_ms is None else now_ms
    elif primary_timestamp == -1:
        ms = 0
    else:
        ms = primary_timestamp
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def format_pos(txid: int, post_apply_checksum: int) -> str:
    """Contents of a database's position file."""
    return f"{txid:016x}/{post_apply_checksum:016x}\n"


def read_pos(txid: int, post_apply_checksum: int, offset: int, size: int) -> bytes:
    """Read ``size`` bytes of the position file from ``offset``."""
    data = format_pos(txid, post_apply_checksum).encode()
    if offset >= len(data):
        raise EOFError("EOF")
    return data[offset : offset + size]


def format_primary(hostname: str | None) -> bytes:
    """Contents of the primary file; raises ENOENT when no primary is known."""
    if hostname is None:
        return _raise_no_primary()
    return (hostname + "\n").encode()


def _raise_no_primary() -> bytes:
    raise FuseError(FileNotFoundError("no primary"), errno.ENOENT)