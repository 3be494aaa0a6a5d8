"""File-system nodes and handles for a database and its journal, WAL and SHM files.

Nodes work against two collaborators. The file system supplies ``uid``,
``gid``, ``root`` (with ``forget_node``) and ``store`` (with ``is_primary``).
The database supplies the file paths and the open, read, write, sync,
truncate and lock operations that each node calls.
"""

from __future__ import annotations

import dataclasses
import enum
import errno
import logging
import os
from datetime import datetime
from typing import Any, Sequence

from litefs.files import to_error

_log = logging.getLogger(__name__)

MUTEX_STATE_EXCLUSIVE = "exclusive"


@dataclasses.dataclass
class Attr:
    """Attributes reported for a file."""

    mode: int = 0
    size: int = 0
    uid: int = 0
    gid: int = 0
    valid: int = 0
    inode: int = 0
    mtime: datetime | None = None


class LockKind(enum.Enum):
    """Type of a POSIX advisory lock."""

    UNLOCK = "unlock"
    READ = "read"
    WRITE = "write"


@dataclasses.dataclass(frozen=True)
class FileLock:
    """A conflicting lock reported back from a lock query."""

    start: int
    end: int
    kind: LockKind
    pid: int = -1


def _not_found(path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), path)


def _stat_attr(fsys: Any, path: str, mode: int) -> Attr:
    try:
        size = os.stat(path).st_size
    except FileNotFoundError:
        raise _not_found(path) from None
    return Attr(mode=mode, size=size, uid=fsys.uid, gid=fsys.gid, valid=0)


def _read(read_at: Any, file: Any, size: int, offset: int, owner: int) -> bytes:
    try:
        data = read_at(file, size, offset, owner)
    except EOFError as exc:
        return bytes(getattr(exc, "partial", b""))[:size]
    return bytes(data)[:size]


def _lock(db: Any, owner: int, kind: LockKind, lock_types: Sequence[Any]) -> None:
    """Acquire locks without waiting; raise EAGAIN if they are held elsewhere."""
    if kind is LockKind.UNLOCK:
        return
    if kind is LockKind.WRITE:
        try:
            ok = db.try_locks(owner, lock_types)
        except Exception as exc:
            _log.error("fuse lock error: %s", exc)
            raise
        if not ok:
            raise BlockingIOError(errno.EAGAIN, os.strerror(errno.EAGAIN))
        return
    if kind is LockKind.READ:
        if not db.try_rlocks(owner, lock_types):
            raise BlockingIOError(errno.EAGAIN, os.strerror(errno.EAGAIN))
        return
    raise ValueError("invalid POSIX lock type")


def _query_lock(
    db: Any,
    owner: int,
    kind: LockKind,
    start: int,
    end: int,
    lock_types: Sequence[Any],
) -> FileLock | None:
    """Return the lock that would block ``kind``, or None if it could be taken."""
    if kind is LockKind.READ:
        if not db.can_rlock(owner, lock_types):
            return FileLock(start, end, LockKind.WRITE, -1)
    elif kind is LockKind.WRITE:
        can_lock, state = db.can_lock(owner, lock_types)
        if not can_lock:
            blocking = (
                LockKind.WRITE if state == MUTEX_STATE_EXCLUSIVE else LockKind.READ
            )
            return FileLock(start, end, blocking, -1)
    return None


class _Node:
    def __init__(self, fsys: Any, db: Any) -> None:
        self.fsys = fsys
        self.db = db


class DatabaseNode(_Node):
    """A SQLite database file."""

    def attr(self) -> Attr:
        mode = 0o666 if self.fsys.store.is_primary() else 0o444
        return _stat_attr(self.fsys, self.db.database_path(), mode)

    def setattr(self, size: int | None = None) -> Attr:
        if size is not None:
            self.db.truncate_database(size)
        return self.attr()

    def open(self) -> DatabaseHandle:
        return DatabaseHandle(self, self.db.open_database())

    def fsync(self) -> None:
        self.db.sync_database()

    def forget(self) -> None:
        """Drop this node from the root's cache."""
        self.fsys.root.forget_node(self)


class DatabaseHandle:
    """An open handle to a database file."""

    def __init__(self, node: DatabaseNode, file: Any) -> None:
        self.node = node
        self.file = file

    def read(self, size: int, offset: int, owner: int) -> bytes:
        return _read(self.node.db.read_database_at, self.file, size, offset, owner)

    def write(self, data: bytes, offset: int, owner: int) -> int:
        try:
            self.node.db.write_database_at(self.file, data, offset, owner)
        except Exception as exc:
            _log.error("fuse: write(): database error: %s", exc)
            raise
        return len(data)

    def flush(self, owner: int) -> None:
        self.node.db.unlock_database(owner)

    def release(self, owner: int) -> None:
        self.node.db.close_database(self.file, owner)

    def lock(self, owner: int, kind: LockKind, lock_types: Sequence[Any]) -> None:
        _lock(self.node.db, owner, kind, lock_types)

    def unlock(self, owner: int, lock_types: Sequence[Any]) -> None:
        self.node.db.unlock(owner, lock_types)

    def query_lock(
        self,
        owner: int,
        kind: LockKind,
        start: int,
        end: int,
        lock_types: Sequence[Any],
    ) -> FileLock | None:
        return _query_lock(self.node.db, owner, kind, start, end, lock_types)


class JournalNode(_Node):
    """A SQLite rollback journal file."""

    def attr(self) -> Attr:
        return _stat_attr(self.fsys, self.db.journal_path(), 0o666)

    def setattr(self, size: int | None = None) -> Attr:
        """Only truncation to zero is allowed."""
        if size is not None:
            if size != 0:
                raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
            try:
                self.db.truncate_journal()
            except Exception as exc:
                raise RuntimeError(f"truncate journal: {exc}") from exc
        return self.attr()

    def open(self) -> JournalHandle:
        try:
            file = self.db.open_journal()
        except FileNotFoundError:
            raise _not_found(self.db.journal_path()) from None
        return JournalHandle(self, file)

    def fsync(self) -> None:
        self.db.sync_journal()

    def forget(self) -> None:
        """Drop this node from the root's cache."""
        self.fsys.root.forget_node(self)


class JournalHandle:
    """An open handle to a journal file."""

    def __init__(self, node: JournalNode, file: Any) -> None:
        self.node = node
        self.file = file

    def read(self, size: int, offset: int, owner: int) -> bytes:
        return _read(self.node.db.read_journal_at, self.file, size, offset, owner)

    def write(self, data: bytes, offset: int, owner: int) -> int:
        try:
            self.node.db.write_journal_at(self.file, data, offset, owner)
        except Exception as exc:
            _log.error("fuse: write(): journal error: %s", exc)
            raise to_error(exc) from exc
        return len(data)

    def release(self, owner: int) -> None:
        """Close the journal; errors on close are ignored."""
        try:
            self.node.db.close_journal(self.file, owner)
        except Exception as exc:
            _log.debug("fuse: release(): journal close error: %s", exc)


class SHMNode(_Node):
    """A SQLite shared-memory index file."""

    def attr(self) -> Attr:
        return _stat_attr(self.fsys, self.db.shm_path(), 0o666)

    def setattr(self, size: int | None = None) -> Attr:
        if size is not None:
            self.db.truncate_shm(size)
        return self.attr()

    def open(self) -> SHMHandle:
        return SHMHandle(self, self.db.open_shm())

    def fsync(self) -> None:
        self.db.sync_shm()

    def forget(self) -> None:
        """Drop this node from the root's cache."""
        self.fsys.root.forget_node(self)


class SHMHandle:
    """An open handle to a shared-memory file."""

    def __init__(self, node: SHMNode, file: Any) -> None:
        self.node = node
        self.file = file

    def read(self, size: int, offset: int, owner: int) -> bytes:
        return _read(self.node.db.read_shm_at, self.file, size, offset, owner)

    def write(self, data: bytes, offset: int, owner: int) -> int:
        try:
            return self.node.db.write_shm_at(self.file, data, offset, owner)
        except Exception as exc:
            _log.error("fuse: write(): shm error: %s", exc)
            raise

    def flush(self, owner: int) -> None:
        self.node.db.unlock_shm(owner)

    def release(self, owner: int) -> None:
        self.node.db.close_shm(self.file, owner)

    def lock(self, owner: int, kind: LockKind, lock_types: Sequence[Any]) -> None:
        _lock(self.node.db, owner, kind, lock_types)

    def unlock(self, owner: int, lock_types: Sequence[Any]) -> None:
        self.node.db.unlock(owner, lock_types)

    def query_lock(
        self,
        owner: int,
        kind: LockKind,
        start: int,
        end: int,
        lock_types: Sequence[Any],
    ) -> FileLock | None:
        return _query_lock(self.node.db, owner, kind, start, end, lock_types)


class WALNode(_Node):
    """A SQLite write-ahead log file."""

    def attr(self) -> Attr:
        return _stat_attr(self.fsys, self.db.wal_path(), 0o666)

    def setattr(self, size: int | None = None) -> Attr:
        if size is not None:
            self.db.truncate_wal(size)
        return self.attr()

    def open(self) -> WALHandle:
        return WALHandle(self, self.db.open_wal())

    def fsync(self) -> None:
        self.db.sync_wal()

    def forget(self) -> None:
        """Drop this node from the root's cache."""
        self.fsys.root.forget_node(self)


class WALHandle:
    """An open handle to a WAL file."""

    def __init__(self, node: WALNode, file: Any) -> None:
        self.node = node
        self.file = file

    def read(self, size: int, offset: int, owner: int) -> bytes:
        return _read(self.node.db.read_wal_at, self.file, size, offset, owner)

    def write(self, data: bytes, offset: int, owner: int) -> int:
        try:
            self.node.db.write_wal_at(self.file, data, offset, owner)
        except Exception as exc:
            _log.error("fuse: write(): wal error: %s", exc)
            raise to_error(exc) from exc
        return len(data)

    def release(self, owner: int) -> None:
        self.node.db.close_wal(self.file, owner)