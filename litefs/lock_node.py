"""The per-database lock file, used to hold a halt lock on the primary.

The database object supplies ``acquire_remote_halt_lock(lock_id, cancel)``,
``release_remote_halt_lock(lock_id)`` and ``has_remote_halt_lock()``.
``acquire_remote_halt_lock`` returns None when this node is itself the
primary, and raises ``concurrent.futures.CancelledError`` when the wait
is abandoned.
"""

from __future__ import annotations

import errno
import logging
import os
import random
import threading
from concurrent.futures import CancelledError
from typing import Any

from litefs.nodes import Attr, FileLock, LockKind

LOCK_TYPE_HALT = 72

_log = logging.getLogger(__name__)


def _errno(code: int) -> OSError:
    return OSError(code, os.strerror(code))


class LockNode:
    """A file used for locks that must outlive SQLite's own file handles."""

    def __init__(self, fsys: Any, db: Any) -> None:
        self.fsys = fsys
        self.db = db

    def attr(self) -> Attr:
        return Attr(mode=0o444, size=0, uid=self.fsys.uid, gid=self.fsys.gid, valid=0)

    def open(self) -> LockHandle:
        return LockHandle(self)

    def forget(self) -> None:
        """Drop this node from the root's cache."""
        self.fsys.root.forget_node(self)


class LockHandle:
    """An open handle to a lock file; holds at most one halt lock."""

    def __init__(self, node: LockNode) -> None:
        self.node = node
        self.halt_lock_id = random.getrandbits(63)
        self.halt_lock: Any = None
        self._halt_lock_mu = threading.Lock()
        self._halt_lock_cancel = threading.Event()

    def read(self, size: int, offset: int) -> bytes:
        return b""

    def write(self, data: bytes, offset: int) -> int:
        _log.error("fuse write error: cannot write to lock file")
        raise _errno(errno.EIO)

    def flush(self) -> None:
        self._unlock_halt()

    def release(self) -> None:
        """Nothing to release; locks are dropped on flush."""

    @staticmethod
    def _check_single(action: str, start: int, end: int) -> None:
        if start != end:
            _log.error(
                "fuse %s error: only one lock can be used on the lock file at a time (%d..%d)",
                action,
                start,
                end,
            )
            raise _errno(errno.EINVAL)
        if start != LOCK_TYPE_HALT:
            _log.error("fuse %s error: invalid lock file byte: %d", action, start)
            raise _errno(errno.EINVAL)

    def lock_wait(self, kind: LockKind, start: int, end: int) -> None:
        """Wait for a lock on a single byte of the lock file."""
        self._check_single("lock", start, end)
        self._lock_wait_halt(kind)

    def _lock_wait_halt(self, kind: LockKind) -> None:
        if not self._halt_lock_mu.acquire(blocking=False):
            _log.error("lock wait error: handle is already waiting for halt lock")
            raise _errno(errno.ENOLCK)
        cancel = threading.Event()
        try:
            if self.halt_lock is not None:
                _log.error("lock wait error: handle already acquired halt lock")
                raise _errno(errno.ENOLCK)

            self._halt_lock_cancel = cancel

            if kind is LockKind.WRITE:
                try:
                    self.halt_lock = self.node.db.acquire_remote_halt_lock(
                        self.halt_lock_id, cancel
                    )
                except CancelledError:
                    if cancel.is_set():
                        raise _errno(errno.EINTR) from None
                    raise _errno(errno.EAGAIN) from None
                return
            if kind is LockKind.READ:
                raise _errno(errno.ENOSYS)
            if kind is LockKind.UNLOCK:
                return
            raise ValueError("invalid POSIX lock type")
        finally:
            cancel.set()
            self._halt_lock_mu.release()

    def unlock(self, start: int, end: int) -> None:
        """Release a lock on a single byte of the lock file."""
        self._check_single("unlock", start, end)
        self._unlock_halt()

    def _unlock_halt(self) -> None:
        self._halt_lock_cancel.set()
        with self._halt_lock_mu:
            if self.halt_lock is None:
                return
            try:
                self.node.db.release_remote_halt_lock(self.halt_lock_id)
            except CancelledError:
                raise _errno(errno.EINTR) from None
            finally:
                pass
            self.halt_lock = None

    def query_lock(self, start: int, end: int) -> FileLock | None:
        """Return the conflicting lock, if any, on a single byte."""
        self._check_single("query lock", start, end)
        if self.node.db.has_remote_halt_lock():
            return FileLock(start, end, LockKind.WRITE, -1)
        return None