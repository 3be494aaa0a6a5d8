"""Client for the remote backup service that stores transaction files."""

from __future__ import annotations

import json
from typing import Any, BinaryIO, Mapping
from urllib.parse import urlencode, urlsplit

import requests

from litefs.posmap import Pos, parse_txid

HEADER_CLUSTER_ID = "Litefs-Cluster-Id"
HEADER_HWM = "Litefs-Hwm"
HEADER_INSTANCE_ID = "Lfsc-Instance-Id"
HEADER_FORCE_INSTANCE_ID = "fly-force-instance-id"

_MAX_ERROR_BODY = 1 << 16


def _quote(text: str) -> str:
    return json.dumps(text)


class PosMismatchError(Exception):
    """The written transaction does not follow the service's current position."""

    def __init__(self, pos: Pos) -> None:
        super().__init__(f"ltx position mismatch ({pos})")
        self.pos = pos


class BackupClientError(Exception):
    """The backup service answered with an unsuccessful status code."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"backup client error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message


def _is_successful(code: int) -> bool:
    return 200 <= code < 300


def _read_limited(resp: requests.Response, limit: int) -> bytes:
    buf = bytearray()
    for part in resp.iter_content(8192):
        buf += part
        if len(buf) >= limit:
            break
    return bytes(buf[:limit])


def _response_error(resp: requests.Response) -> Exception:
    """Turn an unsuccessful response into an exception and close it."""
    try:
        body = _read_limited(resp, _MAX_ERROR_BODY)
    finally:
        resp.close()

    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return BackupClientError(resp.status_code, text)

    if payload.get("code") == "EPOSMISMATCH":
        return PosMismatchError(Pos.from_json(payload.get("pos")))
    return BackupClientError(resp.status_code, str(payload.get("error", "") or ""))


class BackupClient:
    """Replicates transaction files to a remote backup service over HTTP."""

    def __init__(
        self, store: Any, url: str, http_client: requests.Session | None = None
    ) -> None:
        parts = urlsplit(url)
        self._store = store
        self._scheme = parts.scheme
        self._host = parts.netloc
        self.cluster = ""
        self.auth_token = ""
        self.http_client = http_client or requests.Session()
        self._instance_id = ""

    def open(self) -> None:
        """Validate the URL the client was created with."""
        if self._scheme not in ("http", "https"):
            raise ValueError(
                f"invalid litefs cloud URL scheme: {_quote(self._scheme)}"
            )
        if not self._host:
            raise ValueError(f"litefs cloud URL host required: {_quote(self.url())}")

    def url(self) -> str:
        """Base URL of the backup service."""
        if self._scheme:
            return f"{self._scheme}://{self._host}"
        return f"//{self._host}" if self._host else ""

    def _params(self, **extra: str) -> dict[str, str]:
        params = {}
        if self.cluster:
            params["cluster"] = self.cluster
        params.update(extra)
        return params

    def _headers(self) -> dict[str, str]:
        headers = {}
        cluster_id = self._store.cluster_id()
        if cluster_id:
            headers[HEADER_CLUSTER_ID] = cluster_id
        if self.auth_token:
            headers["Authorization"] = self.auth_token
        if self._instance_id:
            headers[HEADER_FORCE_INSTANCE_ID] = self._instance_id
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Mapping[str, str],
        data: bytes | BinaryIO | None = None,
    ) -> requests.Response:
        url = self.url() + path
        if params:
            url += "?" + urlencode(sorted(params.items()))

        resp = self.http_client.request(
            method, url, headers=self._headers(), data=data, stream=True
        )
        if not _is_successful(resp.status_code):
            # The handling instance may be gone while the router still targets it.
            if resp.status_code == 503:
                self._instance_id = ""
            raise _response_error(resp)

        instance_id = resp.headers.get(HEADER_INSTANCE_ID, "")
        if instance_id:
            self._instance_id = instance_id
        return resp

    def pos_map(self) -> dict[str, Pos]:
        """Replication position of every database on the backup service."""
        resp = self._request("GET", "/pos", self._params())
        with resp:
            payload = resp.json()
        return {name: Pos.from_json(value) for name, value in payload.items()}

    def write_tx(self, name: str, data: bytes | BinaryIO) -> int:
        """Upload a transaction file and return the service's high-water mark.

        Raises PosMismatchError if the file does not follow the latest one.
        """
        resp = self._request("POST", "/db/tx", self._params(db=name), data=data)
        resp.close()

        hwm_text = resp.headers.get(HEADER_HWM, "")
        try:
            return parse_txid(hwm_text)
        except ValueError:
            raise ValueError(
                f"cannot parse high-water mark: {_quote(hwm_text)}"
            ) from None

    def fetch_snapshot(self, name: str) -> BinaryIO:
        """Open a full snapshot of a database; the caller must close it."""
        resp = self._request("GET", "/db/snapshot", self._params(db=name))
        resp.raw.decode_content = True
        return resp.raw