"""Front-end routing, upgrade validation and end-to-end splicing over loopback."""

import hashlib
import http.client
import socket
import ssl
import threading
import time

import pytest

from tunnel_router.certs import ensure_self_signed
from tunnel_router.errors import NoMatch
from tunnel_router.routes import ProtocolKind, Route, RouteTable
from tunnel_router.supervisor import BackendReadiness
from tunnel_router.tunnel import (
    MinimalHandshakeForwarder,
    PassthroughForwarder,
    TunnelRouter,
    UpgradeRequest,
    build_ssl_context,
    check_upgrade,
    make_forwarder,
)

SWITCHING = (
    b"HTTP/1.1 101 Switching Protocols\r\n"
    b"Upgrade: websocket\r\nConnection: Upgrade\r\n"
    b"Sec-WebSocket-Accept: s3pPLMBiTxaQ9kYGzzhZRbK+xOo=\r\n\r\n"
)


class EchoBackend:
    """Loopback stand-in for the backend: answers 101, then echoes."""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.accepted = 0
        self.handshakes = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def _accept_loop(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.accepted += 1
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn):
        with conn:
            buf = b""
            while b"\r\n\r\n" not in buf:
                chunk = conn.recv(4096)
                if not chunk:
                    return
                buf += chunk
            head, rest = buf.split(b"\r\n\r\n", 1)
            self.handshakes.append(head.decode("latin-1"))
            conn.sendall(SWITCHING)
            if rest:
                conn.sendall(rest)
            while True:
                try:
                    data = conn.recv(4096)
                except OSError:
                    return
                if not data:
                    return
                conn.sendall(data)

    def close(self):
        self._stop.set()
        self.sock.close()
        self._thread.join(timeout=2)


def _closed_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def backend():
    b = EchoBackend()
    yield b
    b.close()


def _start_router(routes, forwarder=None, **kw):
    router = TunnelRouter(routes, host="127.0.0.1", port=0,
                          forwarder=forwarder or MinimalHandshakeForwarder(), **kw)
    router.start()
    return router


@pytest.fixture
def router(backend):
    r = _start_router(RouteTable([Route("/up", backend.port, ProtocolKind.VLESS, "abc")]))
    yield r
    r.stop(grace=0.5)


def _request(router, method, path, headers=None):
    conn = http.client.HTTPConnection(*router.address, timeout=5)
    try:
        conn.request(method, path, headers=headers or {})
        resp = conn.getresponse()
        return resp.status, dict(resp.getheaders()), resp.read()
    finally:
        conn.close()


def _upgrade_bytes(path, extra=b""):
    return (
        f"GET {path} HTTP/1.1\r\n"
        "Host: tunnel.example\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        "Sec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n"
        "Sec-WebSocket-Version: 13\r\n"
        "Sec-WebSocket-Extensions: permessage-deflate\r\n"
        "X-Trace: 42\r\n"
        "\r\n"
    ).encode("latin-1") + extra


def _open_tunnel(router, path="/up", extra=b"", context=None):
    sock = socket.create_connection(router.address, timeout=5)
    if context is not None:
        sock = context.wrap_socket(sock, server_hostname="localhost")
    sock.sendall(_upgrade_bytes(path, extra))
    buf = b""
    while b"\r\n\r\n" not in buf:
        chunk = sock.recv(4096)
        assert chunk, "connection closed before handshake completed"
        buf += chunk
    head, rest = buf.split(b"\r\n\r\n", 1)
    assert head.startswith(b"HTTP/1.1 101")
    return sock, rest


def _recv_exact(sock, n, initial=b""):
    buf = initial
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        assert chunk, "connection closed early"
        buf += chunk
    return buf


def test_health_is_ok_without_backend():
    r = _start_router(RouteTable([Route("/up", _closed_port(), ProtocolKind.VLESS, "abc")]),
                      readiness=BackendReadiness(threading.Event()))
    try:
        status, _, body = _request(r, "GET", "/health")
    finally:
        r.stop(grace=0.1)
    assert status == 200
    assert body.startswith(b"ok")
    assert b"backend=starting" in body


def test_unregistered_path_is_404_without_backend_contact(router, backend):
    status, _, _ = _request(router, "GET", "/nope", {"Upgrade": "websocket", "Connection": "Upgrade"})
    assert status == 404
    status, _, _ = _request(router, "GET", "/upx")
    assert status == 404
    assert backend.accepted == 0


def test_missing_upgrade_is_426_without_backend_contact(router, backend):
    for method in ("GET", "POST"):
        status, headers, _ = _request(router, method, "/up")
        assert status == 426
        assert headers.get("Upgrade") == "websocket"
    assert backend.accepted == 0


@pytest.mark.parametrize("headers", [
    {"Upgrade": "h2c", "Connection": "Upgrade"},
    {"Upgrade": "websocket", "Connection": "keep-alive",
     "Sec-WebSocket-Key": "k", "Sec-WebSocket-Version": "13"},
    {"Upgrade": "websocket", "Connection": "Upgrade", "Sec-WebSocket-Version": "13"},
    {"Upgrade": "websocket", "Connection": "Upgrade", "Sec-WebSocket-Key": "k"},
])
def test_malformed_upgrade_is_400(router, backend, headers):
    status, _, _ = _request(router, "GET", "/up", headers)
    assert status == 400
    assert backend.accepted == 0


def test_check_upgrade_accepts_case_insensitive_tokens():
    headers = {"Upgrade": "WebSocket", "Connection": "keep-alive, Upgrade",
               "Sec-WebSocket-Key": "k", "Sec-WebSocket-Version": "13"}
    assert check_upgrade("GET", headers) is None
    assert check_upgrade("POST", headers)[0] == 400


def test_end_to_end_echo_preserves_every_byte(router, backend):
    pipelined = b"early-bytes|"
    sock, rest = _open_tunnel(router, "/up", extra=pipelined)
    try:
        echoed = _recv_exact(sock, len(pipelined), rest)
        assert echoed == pipelined
        payload = bytes(range(256)) * 64
        received = b""
        for i in range(0, len(payload), 1000):
            sock.sendall(payload[i:i + 1000])
        received = _recv_exact(sock, len(payload))
        assert received == payload
    finally:
        sock.close()
    assert backend.accepted == 1


def test_minimal_handshake_forwards_only_needed_headers(router, backend):
    sock, _ = _open_tunnel(router, "/up?ed=2048")
    sock.close()
    head = backend.handshakes[0].split("\r\n")
    assert head[0] == "GET /up?ed=2048 HTTP/1.1"
    names = [line.split(":", 1)[0] for line in head[1:]]
    assert names == ["Host", "Upgrade", "Connection", "Sec-WebSocket-Key", "Sec-WebSocket-Version"]
    assert "Host: tunnel.example" in head


def test_passthrough_handshake_keeps_all_headers(backend):
    r = _start_router(RouteTable([Route("/up", backend.port, ProtocolKind.VMESS, "abc")]),
                      forwarder=PassthroughForwarder())
    try:
        sock, _ = _open_tunnel(r, "/up")
        sock.sendall(b"ping")
        assert _recv_exact(sock, 4) == b"ping"
        sock.close()
    finally:
        r.stop(grace=0.5)
    handshake = backend.handshakes[0]
    assert "Sec-WebSocket-Extensions: permessage-deflate" in handshake
    assert "X-Trace: 42" in handshake


def test_routes_to_most_specific_backend():
    short, long_ = EchoBackend(), EchoBackend()
    r = _start_router(RouteTable([
        Route("/v", short.port, ProtocolKind.VLESS, "abc"),
        Route("/vless", long_.port, ProtocolKind.VMESS, "abc"),
    ]))
    try:
        for path in ("/vless", "/vless/x", "/v/x"):
            sock, _ = _open_tunnel(r, path)
            sock.close()
        deadline = time.monotonic() + 2
        while short.accepted + long_.accepted < 3 and time.monotonic() < deadline:
            time.sleep(0.05)
        assert (long_.accepted, short.accepted) == (2, 1)
    finally:
        r.stop(grace=0.5)
        short.close()
        long_.close()


def test_unreachable_backend_closes_client_silently():
    r = _start_router(RouteTable([Route("/up", _closed_port(), ProtocolKind.VLESS, "abc")]))
    try:
        sock = socket.create_connection(r.address, timeout=5)
        sock.sendall(_upgrade_bytes("/up"))
        try:
            data = sock.recv(4096)
        except ConnectionResetError:
            data = b""
        assert data == b""
        sock.close()
    finally:
        r.stop(grace=0.1)


def test_backend_not_ready_closes_client(backend):
    r = _start_router(RouteTable([Route("/up", backend.port, ProtocolKind.VLESS, "abc")]),
                      readiness=BackendReadiness(threading.Event()), ready_timeout=0.2)
    try:
        sock = socket.create_connection(r.address, timeout=5)
        sock.sendall(_upgrade_bytes("/up"))
        try:
            data = sock.recv(4096)
        except ConnectionResetError:
            data = b""
        assert data == b""
        sock.close()
    finally:
        r.stop(grace=0.1)
    assert backend.accepted == 0


def test_stop_force_closes_tunnels_after_grace(backend):
    r = _start_router(RouteTable([Route("/up", backend.port, ProtocolKind.VLESS, "abc")]))
    sock, _ = _open_tunnel(r, "/up")
    started = time.monotonic()
    r.stop(grace=0.3)
    assert time.monotonic() - started < 5
    try:
        data = sock.recv(4096)
    except ConnectionResetError:
        data = b""
    assert data == b""
    sock.close()


def test_forwarder_without_route_raises_no_match():
    a, b = socket.socketpair()
    try:
        request = UpgradeRequest(method="GET", target="/x", headers=[])
        with pytest.raises(NoMatch):
            make_forwarder("minimal").forward_upgrade(a, request, None)
    finally:
        a.close()
        b.close()


def test_make_forwarder_rejects_unknown_mode():
    assert isinstance(make_forwarder("passthrough"), PassthroughForwarder)
    with pytest.raises(ValueError):
        make_forwarder("h2")


@pytest.fixture(scope="module")
def tls_cert(tmp_path_factory):
    d = tmp_path_factory.mktemp("tls")
    return ensure_self_signed(d / "cert.pem", d / "key.pem", "localhost")


def _client_context():
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


@pytest.fixture
def tls_router(backend, tls_cert):
    ctx = build_ssl_context(str(tls_cert.cert_path), str(tls_cert.key_path))
    r = _start_router(RouteTable([Route("/up", backend.port, ProtocolKind.VLESS, "abc")]), ssl_context=ctx)
    yield r
    r.stop(grace=0.5)


def test_tls_health(tls_router):
    conn = http.client.HTTPSConnection(*tls_router.address, timeout=5, context=_client_context())
    try:
        conn.request("GET", "/health")
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read().startswith(b"ok")
    finally:
        conn.close()


def test_tls_end_to_end_echo_keeps_decrypted_pipelined_bytes(tls_router, backend, tls_cert):
    # the upgrade and the early bytes share one TLS record, so the bytes after
    # the header block sit decrypted in the TLS buffer when the splice starts
    pipelined = b"early-bytes-inside-the-handshake-record|"
    sock, rest = _open_tunnel(tls_router, "/up", extra=pipelined, context=_client_context())
    try:
        served = hashlib.sha256(sock.getpeercert(binary_form=True)).hexdigest().upper()
        assert served == tls_cert.fingerprint.replace(":", "")
        assert _recv_exact(sock, len(pipelined), rest) == pipelined
        payload = bytes(range(256)) * 64
        for i in range(0, len(payload), 1000):
            sock.sendall(payload[i:i + 1000])
        assert _recv_exact(sock, len(payload)) == payload
    finally:
        sock.close()
    assert backend.accepted == 1
    assert backend.handshakes[0].startswith("GET /up HTTP/1.1")


def test_plain_client_cannot_reach_tls_routes(tls_router, backend):
    sock = socket.create_connection(tls_router.address, timeout=5)
    try:
        sock.sendall(_upgrade_bytes("/up"))
        try:
            data = sock.recv(4096)
        except ConnectionResetError:
            data = b""
        assert not data.startswith(b"HTTP/1.1 101")
    finally:
        sock.close()
    assert backend.accepted == 0
