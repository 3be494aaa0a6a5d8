import socket
import threading
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from litefs.lease import PrimaryInfo
from litefs.posmap import Pos, compile_match, format_txid
from litefs.proxy import TXID_COOKIE_NAME, ProxyServer


class FakeDB:
    def __init__(self, txid):
        self.txid = txid

    def pos(self):
        return Pos(self.txid, 0)


class FakeStore:
    def __init__(self, primary=True, info=None, lag=0.0, dbs=None):
        self.primary = primary
        self.info = info
        self.lag_value = lag
        self.dbs = dbs or {}

    def lag(self):
        return self.lag_value

    def db(self, name):
        return self.dbs.get(name)

    def primary_info(self):
        return self.primary, self.info


@pytest.fixture
def target():
    hits = []

    class Handler(BaseHTTPRequestHandler):
        def log_message(self, *args):
            pass

        def _reply(self):
            length = int(self.headers.get("Content-Length") or 0)
            if length:
                self.rfile.read(length)
            hits.append((self.command, self.path))
            body = ("target " + self.command).encode()
            self.send_response(200)
            self.send_header("X-Target", "yes")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        do_GET = _reply
        do_POST = _reply

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"127.0.0.1:{server.server_address[1]}", hits
    server.shutdown()
    server.server_close()
    thread.join()


@pytest.fixture
def session():
    s = requests.Session()
    s.trust_env = False
    yield s
    s.close()


def start_proxy(store, target_addr, **settings):
    proxy = ProxyServer(store)
    proxy.target = target_addr
    proxy.db_name = "db"
    proxy.addr = "127.0.0.1:0"
    for key, value in settings.items():
        setattr(proxy, key, value)
    proxy.listen()
    proxy.serve()
    return proxy


@pytest.mark.parametrize(
    "field, message",
    [
        ("target", "proxy target required"),
        ("db_name", "proxy database name required"),
        ("addr", "proxy bind address required"),
    ],
)
def test_listen_requires_settings(field, message):
    proxy = ProxyServer(FakeStore())
    proxy.target = "localhost:8080"
    proxy.db_name = "db"
    proxy.addr = "127.0.0.1:0"
    setattr(proxy, field, "")
    with pytest.raises(ValueError, match=message):
        proxy.listen()


def test_port_zero_before_listen():
    assert ProxyServer(FakeStore()).port() == 0


def test_url_defaults_to_localhost():
    proxy = ProxyServer(FakeStore())
    proxy.target = "localhost:8080"
    proxy.db_name = "db"
    proxy.addr = ":0"
    proxy.listen()
    try:
        assert proxy.port() > 0
        assert proxy.url() == f"http://localhost:{proxy.port()}"
    finally:
        proxy.close()


@pytest.mark.parametrize(
    "method, expected",
    [("GET", False), ("HEAD", False), ("POST", True), ("DELETE", True)],
)
def test_is_write_request(method, expected):
    assert ProxyServer(FakeStore()).is_write_request(method) is expected


def test_is_passthrough():
    proxy = ProxyServer(FakeStore())
    proxy.passthroughs = [compile_match("/build/*"), compile_match("*.png")]
    assert proxy.is_passthrough("/build/foo")
    assert proxy.is_passthrough("/images/pic.png")
    assert not proxy.is_passthrough("/build")


def test_health_ok(target, session):
    proxy = start_proxy(FakeStore(lag=1.0), target[0])
    try:
        resp = session.get(proxy.url() + "/litefs/health")
        assert resp.status_code == 200
        assert resp.text == "OK\n"
    finally:
        proxy.close()


def test_health_lag_exceeded(target, session):
    proxy = start_proxy(FakeStore(lag=timedelta(seconds=20)), target[0])
    try:
        resp = session.get(proxy.url() + "/litefs/health")
        assert resp.status_code == 503
        assert resp.text == "Replication lag exceeded\n"
    finally:
        proxy.close()


def test_health_lag_check_disabled(target, session):
    proxy = start_proxy(FakeStore(lag=1000.0), target[0], max_lag=0)
    try:
        assert session.get(proxy.url() + "/litefs/health").status_code == 200
    finally:
        proxy.close()


def test_read_without_cookie_proxies(target, session):
    addr, hits = target
    proxy = start_proxy(FakeStore(), addr)
    try:
        resp = session.get(proxy.url() + "/page?x=1")
        assert resp.text == "target GET"
        assert resp.headers["X-Target"] == "yes"
        assert "Set-Cookie" not in resp.headers
        assert hits == [("GET", "/page?x=1")]
    finally:
        proxy.close()


def test_write_on_primary_sets_cookie(target, session):
    addr, hits = target
    proxy = start_proxy(FakeStore(dbs={"db": FakeDB(5)}), addr)
    try:
        resp = session.post(proxy.url() + "/items", data=b"payload")
        assert resp.text == "target POST"
        cookie = resp.headers["Set-Cookie"]
        assert cookie.startswith(f"{TXID_COOKIE_NAME}={format_txid(5)};")
        assert "Path=/" in cookie
        assert "HttpOnly" in cookie
        assert hits == [("POST", "/items")]
    finally:
        proxy.close()


def test_passthrough_write_sets_no_cookie(target, session):
    addr, _ = target
    proxy = start_proxy(
        FakeStore(dbs={"db": FakeDB(5)}),
        addr,
        passthroughs=[compile_match("/build/*")],
    )
    try:
        resp = session.post(proxy.url() + "/build/x")
        assert resp.text == "target POST"
        assert "Set-Cookie" not in resp.headers
    finally:
        proxy.close()


def test_write_on_replica_replays_to_primary(target, session):
    addr, hits = target
    store = FakeStore(primary=False, info=PrimaryInfo(hostname="host1"))
    proxy = start_proxy(store, addr)
    try:
        resp = session.post(proxy.url() + "/items")
        assert resp.headers["fly-replay"] == "instance=host1"
        assert hits == []
    finally:
        proxy.close()


def test_write_without_primary(target, session):
    proxy = start_proxy(FakeStore(primary=False), target[0])
    try:
        resp = session.post(proxy.url() + "/items")
        assert resp.status_code == 503
        assert resp.text == "Proxy error: no primary available\n"
    finally:
        proxy.close()


def test_read_waits_then_times_out(target, session):
    addr, hits = target
    proxy = start_proxy(
        FakeStore(dbs={"db": FakeDB(3)}), addr, poll_txid_timeout=0.05
    )
    try:
        resp = session.get(
            proxy.url() + "/page", headers={"Cookie": f"__txid={format_txid(10)}"}
        )
        assert resp.status_code == 504
        assert resp.text == "Proxy timeout\n"
        assert hits == []
    finally:
        proxy.close()


def test_read_caught_up_proxies(target, session):
    addr, hits = target
    proxy = start_proxy(FakeStore(dbs={"db": FakeDB(10)}), addr)
    try:
        resp = session.get(
            proxy.url() + "/page", headers={"Cookie": f"__txid={format_txid(10)}"}
        )
        assert resp.text == "target GET"
        assert hits == [("GET", "/page")]
    finally:
        proxy.close()


def test_unreachable_target_returns_bad_gateway(session):
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    proxy = start_proxy(FakeStore(), f"127.0.0.1:{port}", dial_timeout=0.2)
    try:
        resp = session.get(proxy.url() + "/page")
        assert resp.status_code == 502
        assert resp.text.startswith("Proxy error: ")
    finally:
        proxy.close()