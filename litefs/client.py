"""HTTP client for talking to other nodes of the cluster."""

from __future__ import annotations

import contextlib
import dataclasses
import io
import struct
from datetime import datetime
from typing import Any, BinaryIO, Iterator, Mapping
from urllib.parse import urlencode, urlsplit

import requests

from litefs.chunk import ChunkWriter
from litefs.posmap import Pos, format_node_id, parse_node_id, write_pos_map

HEADER_NODE_ID = "Litefs-Id"
HEADER_CLUSTER_ID = "Litefs-Cluster-Id"

_COPY_SIZE = 32 * 1024


class NotEligibleError(Exception):
    """The node is not eligible to become primary."""

    def __init__(self, message: str = "not eligible") -> None:
        super().__init__(message)


class DatabaseNotFoundError(Exception):
    """The requested database does not exist."""

    def __init__(self, message: str = "database not found") -> None:
        super().__init__(message)


class _ResponseError(RuntimeError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"invalid response: code={status_code}")
        self.status_code = status_code


@dataclasses.dataclass
class NodeInfo:
    """Basic information reported by a node."""

    id: int = 0
    cluster_id: str = ""
    primary: bool = False
    candidate: bool = False
    path: str = ""

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> NodeInfo:
        node_id = obj.get("id", 0)
        if isinstance(node_id, str):
            node_id = parse_node_id(node_id) if node_id else 0
        return cls(
            id=int(node_id),
            cluster_id=obj.get("clusterID", "") or "",
            primary=bool(obj.get("primary", False)),
            candidate=bool(obj.get("candidate", False)),
            path=obj.get("path", "") or "",
        )


@dataclasses.dataclass
class HaltLock:
    """A halt lock held on the primary on behalf of a remote node."""

    id: int = 0
    pos: Pos = dataclasses.field(default_factory=Pos)
    expires: datetime | None = None

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> HaltLock:
        expires = obj.get("expires")
        if isinstance(expires, str) and expires:
            expires = datetime.fromisoformat(expires.replace("Z", "+00:00"))
        else:
            expires = None
        return cls(
            id=int(obj.get("id", 0)),
            pos=Pos.from_json(obj.get("pos")),
            expires=expires,
        )


def _base_url(url: str, label: str = "client") -> str:
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise ValueError(f"invalid {label} URL: {exc}") from exc
    if parts.scheme not in ("http", "https"):
        raise ValueError("invalid URL scheme")
    host = parts.netloc.rpartition("@")[2]
    if not host:
        raise ValueError("URL host required")
    return f"{parts.scheme}://{host}"


def _endpoint(base: str, path: str, params: Mapping[str, str] | None = None) -> str:
    url = base + path
    if params:
        url += "?" + urlencode(sorted(params.items()))
    return url


def _check_ok(resp: requests.Response) -> None:
    if resp.status_code != 200:
        raise _ResponseError(resp.status_code)


def _iter_blocks(data: bytes | BinaryIO) -> Iterator[bytes]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        if data:
            yield bytes(data)
        return
    while True:
        block = data.read(_COPY_SIZE)
        if not block:
            return
        yield block


class Stream:
    """A readable response body, with the cluster ID the server reported."""

    def __init__(self, body: Any, cluster_id: str = "") -> None:
        self._body = body
        self.cluster_id = cluster_id

    def read(self, size: int = -1) -> bytes:
        return self._body.read(None if size is None or size < 0 else size)

    def close(self) -> None:
        self._body.close()

    def __enter__(self) -> Stream:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Client:
    """Client for the node-to-node HTTP API."""

    def __init__(self, http_client: requests.Session | None = None) -> None:
        self.http_client = http_client or requests.Session()

    def _request(
        self,
        method: str,
        url: str,
        *,
        node_id: int | None = None,
        data: Any = None,
        stream: bool = False,
    ) -> requests.Response:
        headers = {}
        if node_id is not None:
            headers[HEADER_NODE_ID] = format_node_id(node_id)
        return self.http_client.request(
            method, url, headers=headers, data=data, stream=stream
        )

    def promote(self, base_url: str) -> None:
        """Ask the node at ``base_url`` to become the primary."""
        url = _endpoint(_base_url(base_url), "/promote")
        with self._request("POST", url) as resp:
            if resp.status_code == 409:
                raise NotEligibleError()
            _check_ok(resp)

    def handoff(self, primary_url: str, node_id: int) -> None:
        """Ask the primary to hand off leadership to ``node_id``."""
        url = _endpoint(
            _base_url(primary_url), "/handoff", {"nodeID": format_node_id(node_id)}
        )
        with self._request("POST", url) as resp:
            if resp.status_code == 409:
                raise NotEligibleError()
            _check_ok(resp)

    def import_db(self, primary_url: str, name: str, data: bytes | BinaryIO) -> None:
        """Create or replace database ``name`` on the remote node."""
        url = _endpoint(_base_url(primary_url), "/import", {"name": name})
        with self._request("POST", url, data=data) as resp:
            _check_ok(resp)

    def export_db(self, primary_url: str, name: str) -> Stream:
        """Download database ``name``; the caller must close the result."""
        url = _endpoint(_base_url(primary_url), "/export", {"name": name})
        resp = self._request("GET", url, stream=True)
        if resp.status_code == 200:
            return Stream(resp.raw, resp.headers.get(HEADER_CLUSTER_ID, ""))
        resp.close()
        if resp.status_code == 404:
            raise DatabaseNotFoundError()
        raise _ResponseError(resp.status_code)

    def info(self, base_url: str) -> NodeInfo:
        """Return basic information about the node."""
        url = _endpoint(_base_url(base_url), "/info")
        with self._request("GET", url) as resp:
            _check_ok(resp)
            try:
                return NodeInfo.from_dict(resp.json())
            except ValueError as exc:
                raise ValueError(f"decode body: {exc}") from exc

    def acquire_halt_lock(
        self, primary_url: str, node_id: int, name: str, lock_id: int
    ) -> HaltLock:
        """Acquire a halt lock on the primary on behalf of ``node_id``."""
        url = _endpoint(
            _base_url(primary_url, "primary"),
            "/halt",
            {"name": name, "id": str(lock_id)},
        )
        with self._request("POST", url, node_id=node_id) as resp:
            _check_ok(resp)
            return HaltLock.from_dict(resp.json())

    def release_halt_lock(
        self, primary_url: str, node_id: int, name: str, lock_id: int
    ) -> None:
        """Release a halt lock previously acquired on the primary."""
        url = _endpoint(
            _base_url(primary_url, "primary"),
            "/halt",
            {"name": name, "id": str(lock_id)},
        )
        with self._request("DELETE", url, node_id=node_id) as resp:
            _check_ok(resp)

    def commit(
        self,
        primary_url: str,
        node_id: int,
        name: str,
        lock_id: int,
        data: bytes | BinaryIO,
    ) -> None:
        """Send a transaction file to the primary to be applied."""
        url = _endpoint(
            _base_url(primary_url, "primary"),
            "/tx",
            {"name": name, "lockID": str(lock_id)},
        )
        with self._request("POST", url, node_id=node_id, data=data) as resp:
            _check_ok(resp)

    def stream(
        self, primary_url: str, node_id: int, pos_map: Mapping[str, Pos]
    ) -> Stream:
        """Open the replication stream from the primary."""
        url = _endpoint(_base_url(primary_url), "/stream")
        buf = io.BytesIO()
        try:
            write_pos_map(buf, pos_map)
        except ValueError as exc:
            raise ValueError(f"cannot write pos map: {exc}") from exc

        resp = self._request(
            "POST", url, node_id=node_id, data=buf.getvalue(), stream=True
        )
        if resp.status_code != 200:
            resp.close()
            raise _ResponseError(resp.status_code)
        return Stream(resp.raw, resp.headers.get(HEADER_CLUSTER_ID, ""))


class RemoteTx:
    """A transaction sent to a remote primary over an open request."""

    def __init__(
        self, txid: int, pre_apply_checksum: int, writer: BinaryIO, reader: BinaryIO
    ) -> None:
        self.id = txid
        self.pre_apply_checksum = pre_apply_checksum
        self.committed = False
        self._writer = writer
        self._reader = reader

    def _read_status(self) -> int:
        data = bytearray()
        while len(data) < 4:
            part = self._reader.read(4 - len(data))
            if not part:
                raise EOFError("read remote tx confirmation: unexpected EOF")
            data += part
        return struct.unpack(">I", bytes(data))[0]

    def commit(self, reader: bytes | BinaryIO) -> None:
        """Send the transaction data to the primary and wait for confirmation."""
        if self.committed:
            return
        try:
            writer = ChunkWriter(self._writer)
            try:
                for block in _iter_blocks(reader):
                    writer.write(block)
            except OSError as exc:
                raise RuntimeError(f"write ltx chunked stream: {exc}") from exc
            try:
                writer.close()
            except OSError as exc:
                raise RuntimeError(f"close ltx chunked stream: {exc}") from exc

            status = self._read_status()
            if status != 0:
                raise RuntimeError(f"remote tx confirmation failed ({status})")
            self.committed = True
        finally:
            with contextlib.suppress(Exception):
                self.rollback()

    def rollback(self) -> None:
        """Close both directions without sending a transaction."""
        try:
            self._writer.close()
        except Exception as exc:
            with contextlib.suppress(Exception):
                self._reader.close()
            raise RuntimeError(f"close writer: {exc}") from exc
        try:
            self._reader.close()
        except Exception as exc:
            raise RuntimeError(f"close reader: {exc}") from exc