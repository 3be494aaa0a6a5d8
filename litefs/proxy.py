"""HTTP proxy in front of an application that handles primary redirection
and read-your-writes consistency on replicas."""

from __future__ import annotations

import http.client
import logging
import threading
import time
from datetime import timedelta
from email.utils import formatdate
from http.cookies import CookieError, SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

from litefs.posmap import format_txid, parse_txid

TXID_COOKIE_NAME = "__txid"

DEFAULT_POLL_TXID_INTERVAL = 0.001
DEFAULT_POLL_TXID_TIMEOUT = 5.0
DEFAULT_MAX_LAG = 10.0
DEFAULT_COOKIE_EXPIRY = 300.0
DEFAULT_DIAL_TIMEOUT = 30.0

_DIAL_RETRY_INTERVAL = 0.1
_COPY_SIZE = 32 * 1024
_HOP_BY_HOP = {"connection", "keep-alive", "transfer-encoding", "proxy-connection"}

_log = logging.getLogger(__name__)


class ProxyServerClosedError(Exception):
    """The proxy server was closed while a request was in progress."""

    def __init__(self, message: str = "canceled, proxy server closed") -> None:
        super().__init__(message)


def _seconds(value: Any) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr}: missing port in address")
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"address {addr}: invalid port") from None


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class _Handler(BaseHTTPRequestHandler):
    server_version = "litefs-proxy"

    def log_message(self, format: str, *args: Any) -> None:
        _log.debug("proxy: " + format, *args)

    def _dispatch(self) -> None:
        self.server.proxy._serve_http(self)

    do_GET = _dispatch
    do_HEAD = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_DELETE = _dispatch
    do_PATCH = _dispatch
    do_OPTIONS = _dispatch


class ProxyServer:
    """Proxies requests to a target application.

    Writes on a replica are redirected to the primary and reads wait until
    the tracked database has caught up with the client's last write.
    Attributes must be set before calling :meth:`listen`.
    """

    def __init__(self, store: Any) -> None:
        self.store = store
        self.target = ""
        self.db_name = ""
        self.addr = ""
        self.passthroughs: list = []
        self.debug = False
        self.poll_txid_interval = DEFAULT_POLL_TXID_INTERVAL
        self.poll_txid_timeout = DEFAULT_POLL_TXID_TIMEOUT
        self.max_lag = DEFAULT_MAX_LAG
        self.cookie_expiry = DEFAULT_COOKIE_EXPIRY
        self.dial_timeout = DEFAULT_DIAL_TIMEOUT

        self._httpd: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()

    def listen(self) -> None:
        """Validate the configuration and bind the listening socket."""
        if not self.target:
            raise ValueError("proxy target required")
        if not self.db_name:
            raise ValueError("proxy database name required")
        if not self.addr:
            raise ValueError("proxy bind address required")

        host, port = _split_host_port(self.addr)
        httpd = ThreadingHTTPServer((host, port), _Handler)
        httpd.daemon_threads = True
        httpd.proxy = self
        self._httpd = httpd

    def serve(self) -> None:
        """Start serving requests in a background thread."""
        if self._httpd is None:
            raise RuntimeError("proxy server is not listening")
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="litefs-proxy", daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Stop serving and release the listening socket."""
        self._closed.set()
        httpd, thread = self._httpd, self._thread
        self._thread = None
        if httpd is None:
            return
        if thread is not None:
            httpd.shutdown()
            thread.join()
        httpd.server_close()

    def __enter__(self) -> ProxyServer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def port(self) -> int:
        """Port the listener is bound to, or 0 if not listening."""
        if self._httpd is None:
            return 0
        return self._httpd.server_address[1]

    def url(self) -> str:
        """Base URL of the running server."""
        try:
            host, _ = _split_host_port(self.addr)
        except ValueError:
            host = ""
        return "http://" + _join_host_port(host or "localhost", self.port())

    def is_passthrough(self, path: str) -> bool:
        """True if ``path`` matches any passthrough expression."""
        return any(expr.search(path) for expr in self.passthroughs)

    def is_write_request(self, method: str) -> bool:
        return method not in ("GET", "HEAD")

    def _logf(self, message: str, *args: Any) -> None:
        if self.debug:
            _log.info(message, *args)

    def _serve_http(self, h: BaseHTTPRequestHandler) -> None:
        path = urlsplit(h.path).path
        if self.is_passthrough(path):
            self._logf(
                "proxy: %s %s: matches passthrough expression, proxying to target",
                h.command,
                path,
            )
            self._proxy_to_target(h, path, passthrough=True)
            return

        if h.command == "GET" and path == "/litefs/health":
            self._serve_get_health(h, path)
        elif h.command in ("GET", "HEAD"):
            self._serve_read(h, path)
        else:
            self._serve_non_read(h, path)

    def _serve_get_health(self, h: BaseHTTPRequestHandler, path: str) -> None:
        lag = _seconds(self.store.lag())
        max_lag = _seconds(self.max_lag)
        if max_lag > 0 and lag > max_lag:
            self._logf(
                "proxy: %s %s: current replication lag of %ss exceeds "
                "maximum threshold of %ss",
                h.command,
                path,
                lag,
                max_lag,
            )
            self._error(h, "Replication lag exceeded", 503)
            return
        self._send(h, 200, [], b"OK\n")

    def _request_txid(self, h: BaseHTTPRequestHandler) -> int:
        header = h.headers.get("Cookie")
        if not header:
            return 0
        cookies = SimpleCookie()
        try:
            cookies.load(header)
        except CookieError:
            return 0
        morsel = cookies.get(TXID_COOKIE_NAME)
        if morsel is None:
            return 0
        try:
            return parse_txid(morsel.value)
        except ValueError:
            return 0

    def _serve_read(self, h: BaseHTTPRequestHandler, path: str) -> None:
        txid = self._request_txid(h)
        if txid == 0:
            self._logf("proxy: %s %s: no client txid, proxying to target", h.command, path)
            self._proxy_to_target(h, path, passthrough=False)
            return

        db = self.store.db(self.db_name)
        if db is None:
            self._logf(
                "proxy: %s %s: no database %r, proxying to target",
                h.command,
                path,
                self.db_name,
            )
            self._proxy_to_target(h, path, passthrough=False)
            return

        deadline = time.monotonic() + _seconds(self.poll_txid_timeout)
        interval = _seconds(self.poll_txid_interval)
        while True:
            pos = db.pos()
            if pos.txid >= txid:
                self._logf(
                    "proxy: %s %s: database %r at txid %s, proxying to target",
                    h.command,
                    path,
                    self.db_name,
                    format_txid(pos.txid),
                )
                break
            if time.monotonic() >= deadline:
                self._logf(
                    "proxy: %s %s: database %r at txid %s, requires txid %s, "
                    "proxy timeout",
                    h.command,
                    path,
                    self.db_name,
                    format_txid(pos.txid),
                    format_txid(txid),
                )
                self._error(h, "Proxy timeout", 504)
                return
            time.sleep(interval)

        self._proxy_to_target(h, path, passthrough=False)

    def _serve_non_read(self, h: BaseHTTPRequestHandler, path: str) -> None:
        is_primary, info = self.store.primary_info()
        if is_primary:
            self._logf("proxy: %s %s: node is primary, proxying to target", h.command, path)
            self._proxy_to_target(h, path, passthrough=False)
            return

        if info is None:
            self._logf(
                "proxy: %s %s: no primary available, returning 503", h.command, path
            )
            self._error(h, "Proxy error: no primary available", 503)
            return

        self._send(h, 200, [("fly-replay", "instance=" + info.hostname)], b"")

    def _dial(self) -> http.client.HTTPConnection:
        host, port = _split_host_port(self.target)
        deadline = time.monotonic() + _seconds(self.dial_timeout)
        while True:
            conn = http.client.HTTPConnection(
                host, port, timeout=_seconds(self.dial_timeout)
            )
            try:
                conn.connect()
                return conn
            except ConnectionRefusedError:
                conn.close()
                if time.monotonic() >= deadline:
                    raise
                if self._closed.wait(_DIAL_RETRY_INTERVAL):
                    raise ProxyServerClosedError() from None

    def _read_body(self, h: BaseHTTPRequestHandler) -> bytes:
        length = h.headers.get("Content-Length")
        if not length:
            return b""
        return h.rfile.read(int(length))

    def _txid_cookie(self) -> str | None:
        db = self.store.db(self.db_name)
        if db is None:
            return None
        txid = format_txid(db.pos().txid)
        expires = formatdate(time.time() + _seconds(self.cookie_expiry), usegmt=True)
        return f"{TXID_COOKIE_NAME}={txid}; Path=/; Expires={expires}; HttpOnly"

    def _proxy_to_target(
        self, h: BaseHTTPRequestHandler, path: str, passthrough: bool
    ) -> None:
        body = self._read_body(h)
        try:
            conn = self._dial()
        except (OSError, ValueError, ProxyServerClosedError) as exc:
            self._error(h, f"Proxy error: {exc}", 502)
            return

        try:
            try:
                conn.putrequest(h.command, h.path, skip_host=True, skip_accept_encoding=True)
                if "Host" not in h.headers:
                    conn.putheader("Host", self.target)
                for key, value in h.headers.items():
                    if key.lower() not in _HOP_BY_HOP:
                        conn.putheader(key, value)
                conn.endheaders(body or None)
                resp = conn.getresponse()
            except (OSError, http.client.HTTPException) as exc:
                self._error(h, f"Proxy error: {exc}", 502)
                return

            h.send_response_only(resp.status, resp.reason)
            if not passthrough and self.is_write_request(h.command):
                cookie = self._txid_cookie()
                if cookie is not None:
                    self._logf("proxy: %s %s: setting txid cookie", h.command, path)
                    h.send_header("Set-Cookie", cookie)
            for key, value in resp.getheaders():
                if key.lower() not in _HOP_BY_HOP:
                    h.send_header(key, value)
            h.end_headers()

            try:
                while True:
                    block = resp.read(_COPY_SIZE)
                    if not block:
                        break
                    h.wfile.write(block)
            except OSError as exc:
                _log.warning("http: proxy response error: %s", exc)
        finally:
            conn.close()

    def _send(
        self,
        h: BaseHTTPRequestHandler,
        status: int,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> None:
        h.send_response(status)
        for key, value in headers:
            h.send_header(key, value)
        h.send_header("Content-Length", str(len(body)))
        h.end_headers()
        if h.command != "HEAD" and body:
            h.wfile.write(body)

    def _error(self, h: BaseHTTPRequestHandler, message: str, status: int) -> None:
        self._send(
            h,
            status,
            [
                ("Content-Type", "text/plain; charset=utf-8"),
                ("X-Content-Type-Options", "nosniff"),
            ],
            (message + "\n").encode(),
        )