"""Lease types for leader election, including a fixed-primary leaser."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_STATIC_LEASE_EXPIRES_AT = datetime(3000, 1, 1, tzinfo=timezone.utc)


class NoPrimaryError(Exception):
    """No primary currently holds the lease."""

    def __init__(self, message: str = "no primary") -> None:
        super().__init__(message)


class PrimaryExistsError(Exception):
    """Another node already holds the primary lease."""

    def __init__(self, message: str = "primary exists") -> None:
        super().__init__(message)


class _HandoffUnsupportedError(RuntimeError):
    """Handoff was requested from a lease type that cannot hand off."""

    def __init__(self, message: str, target: object) -> None:
        super().__init__(message)
        self.target = target


@dataclasses.dataclass
class PrimaryInfo:
    """Information about the current primary node."""

    hostname: str = ""
    advertise_url: str = ""

    def clone(self) -> PrimaryInfo:
        return dataclasses.replace(self)


class StaticLeaser:
    """A leaser whose primary is fixed by configuration."""

    def __init__(self, is_primary: bool, hostname: str, advertise_url: str) -> None:
        self._is_primary = is_primary
        self._hostname = hostname
        self._advertise_url = advertise_url
        self._requested_cluster_id = ""
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Mark the leaser closed; there is nothing to release."""
        self._closed = True

    def __enter__(self) -> StaticLeaser:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def lease_type(self) -> str:
        return "static"

    def advertise_url(self) -> str:
        """The primary URL if this node is the primary, otherwise blank."""
        return self._advertise_url if self._is_primary else ""

    def acquire(self) -> StaticLease:
        """Return a lease if this node is the primary."""
        if not self._is_primary:
            raise PrimaryExistsError()
        return StaticLease(self)

    def acquire_existing(self, lease_id: str) -> StaticLease:
        """Static leasing cannot take over a handed-off lease."""
        error = _HandoffUnsupportedError("static lease handoff not supported", lease_id)
        raise error

    def primary_info(self) -> PrimaryInfo:
        """Return the primary's info; raises NoPrimaryError on the primary itself."""
        if self._is_primary:
            raise NoPrimaryError()
        return PrimaryInfo(hostname=self._hostname, advertise_url=self._advertise_url)

    def is_primary(self) -> bool:
        return self._is_primary

    def cluster_id(self) -> str:
        """The static leaser never reports a cluster ID."""
        return ""

    def set_cluster_id(self, cluster_id: str) -> None:
        """Remember the requested ID; the static leaser still reports none."""
        self._requested_cluster_id = cluster_id


class StaticLease:
    """A lease held by a fixed primary; it never expires in practice."""

    def __init__(self, leaser: StaticLeaser) -> None:
        self.leaser = leaser
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def id(self) -> str:
        return ""

    def renewed_at(self) -> datetime:
        return _EPOCH

    def ttl(self) -> timedelta:
        return _STATIC_LEASE_EXPIRES_AT - self.renewed_at()

    def renew(self) -> timedelta:
        """Static leases need no renewal; returns the unchanged TTL."""
        return self.ttl()

    def handoff(self, node_id: int) -> None:
        """Static leases cannot be handed off."""
        error = _HandoffUnsupportedError("static lease does not support handoff", node_id)
        raise error

    def close(self) -> None:
        """Mark the lease closed; there is nothing to release."""
        self._closed = True

    def __enter__(self) -> StaticLease:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()