"""HTTP(S) front-end that hands WebSocket upgrades to loopback backend ports.

Routing rules:
- ``GET /health`` answers 200 regardless of backend state.
- Registered route paths accept WebSocket upgrades only (426 when the
  ``Upgrade`` header is missing, 400 when the upgrade is malformed).
- Everything else is 404.

A valid upgrade is replayed to the route's backend port by an
``UpgradeForwarder`` and the two sockets are spliced until either side closes.
"""

import contextlib
import logging
import selectors
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .errors import BackendUnreachable, NoMatch, RouteError
from .routes import RouteTable
from .supervisor import BackendReadiness

LOGGER = logging.getLogger("tunnel_router.tunnel")

HEALTH_PATH = "/health"
SPLICE_BUFFER = 64 * 1024
CONNECT_TIMEOUT = 5.0
HEADER_TIMEOUT = 30.0
MINIMAL_HEADERS = ("Host", "Upgrade", "Connection", "Sec-WebSocket-Key", "Sec-WebSocket-Version")


# ──────────────────────────────────────────────────────────────
# Upgrade request + validation
# ──────────────────────────────────────────────────────────────
@dataclass
class UpgradeRequest:
    method: str
    target: str
    headers: List[Tuple[str, str]]
    version: str = "HTTP/1.1"
    head: bytes = b""

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for key, value in self.headers:
            if key.lower() == lname:
                return value
        return None


def check_upgrade(method: str, headers) -> Optional[Tuple[int, str]]:
    """Return ``(status, reason)`` when the request is not a valid WebSocket upgrade."""
    upgrade = headers.get("Upgrade")
    if upgrade is None:
        return 426, "websocket upgrade required"
    if upgrade.strip().lower() != "websocket":
        return 400, f"unsupported upgrade {upgrade!r}"
    if method != "GET":
        return 400, f"upgrade over {method}"
    tokens = [t.strip().lower() for t in (headers.get("Connection") or "").split(",")]
    if "upgrade" not in tokens:
        return 400, "connection header lacks upgrade"
    if not (headers.get("Sec-WebSocket-Key") or "").strip():
        return 400, "missing Sec-WebSocket-Key"
    if not (headers.get("Sec-WebSocket-Version") or "").strip():
        return 400, "missing Sec-WebSocket-Version"
    return None


# ──────────────────────────────────────────────────────────────
# Splice
# ──────────────────────────────────────────────────────────────
def _close(sock: socket.socket) -> None:
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)
    with contextlib.suppress(OSError):
        sock.close()


def _pending(sock: socket.socket) -> bool:
    if isinstance(sock, ssl.SSLSocket):
        with contextlib.suppress(Exception):
            return sock.pending() > 0
    return False


def splice(a: socket.socket, b: socket.socket, bufsize: int = SPLICE_BUFFER) -> Tuple[int, int]:
    """Copy bytes both ways until either side closes or errors; closes both.

    Returns the byte counts ``(a_to_b, b_to_a)``.
    """
    peers = {a: b, b: a}
    counts = {a: 0, b: 0}
    sel = selectors.DefaultSelector()
    try:
        for sock in peers:
            sock.settimeout(None)
            sel.register(sock, selectors.EVENT_READ)
        while True:
            ready = [s for s in peers if _pending(s)]
            if not ready:
                ready = [key.fileobj for key, _ in sel.select()]
            for sock in ready:
                data = sock.recv(bufsize)
                if not data:
                    return counts[a], counts[b]
                peers[sock].sendall(data)
                counts[sock] += len(data)
    except (OSError, ValueError):
        return counts[a], counts[b]
    finally:
        sel.close()
        _close(a)
        _close(b)


# ──────────────────────────────────────────────────────────────
# Forwarders
# ──────────────────────────────────────────────────────────────
class UpgradeForwarder:
    """Replays a validated upgrade to one backend and splices the sockets.

    Subclasses only decide which handshake bytes reach the backend. The
    client socket is not read here until the backend connection is open.
    """

    name = "base"

    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout

    def build_handshake(self, request: UpgradeRequest, backend_addr: Tuple[str, int]) -> bytes:
        raise NotImplementedError

    def forward_upgrade(self, client: socket.socket, request: UpgradeRequest,
                        backend_addr: Optional[Tuple[str, int]]) -> Tuple[int, int]:
        if backend_addr is None:
            raise NoMatch(f"no backend for {request.target}")
        try:
            backend = socket.create_connection(backend_addr, timeout=self.connect_timeout)
        except OSError as exc:
            raise BackendUnreachable(f"{backend_addr[0]}:{backend_addr[1]}: {exc}") from exc
        try:
            backend.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            backend.sendall(self.build_handshake(request, backend_addr) + request.head)
        except OSError as exc:
            _close(backend)
            raise BackendUnreachable(f"handshake write failed: {exc}") from exc
        return splice(client, backend)


class MinimalHandshakeForwarder(UpgradeForwarder):
    """Rebuilds the request line plus the few headers a loopback listener needs."""

    name = "minimal"

    def build_handshake(self, request: UpgradeRequest, backend_addr: Tuple[str, int]) -> bytes:
        lines = [f"GET {request.target} HTTP/1.1"]
        for name in MINIMAL_HEADERS:
            value = request.header(name)
            if value is None and name == "Host":
                value = f"{backend_addr[0]}:{backend_addr[1]}"
            if value is not None:
                lines.append(f"{name}: {value}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


class PassthroughForwarder(UpgradeForwarder):
    """Replays the original request line and every header unchanged."""

    name = "passthrough"

    def build_handshake(self, request: UpgradeRequest, backend_addr: Tuple[str, int]) -> bytes:
        lines = [f"{request.method} {request.target} {request.version}"]
        lines.extend(f"{k}: {v}" for k, v in request.headers)
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


FORWARDERS = {
    MinimalHandshakeForwarder.name: MinimalHandshakeForwarder,
    PassthroughForwarder.name: PassthroughForwarder,
}


def make_forwarder(mode: str = "minimal", connect_timeout: float = CONNECT_TIMEOUT) -> UpgradeForwarder:
    try:
        return FORWARDERS[mode](connect_timeout=connect_timeout)
    except KeyError:
        raise ValueError(f"unknown forward mode {mode!r}") from None


# ──────────────────────────────────────────────────────────────
# HTTP server
# ──────────────────────────────────────────────────────────────
class TunnelRequestHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = "tunnel-router"
    sys_version = ""
    timeout = HEADER_TIMEOUT
    # unbuffered reads: nothing past the header block leaves the socket
    rbufsize = 0

    server: "TunnelServer"

    def setup(self):
        super().setup()
        if isinstance(self.connection, ssl.SSLSocket):
            self.connection.do_handshake()

    def do_GET(self):
        self._dispatch()

    do_HEAD = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = do_GET

    def log_message(self, fmt, *args):
        LOGGER.debug("%s %s", self.address_string(), fmt % args)

    def _dispatch(self) -> None:
        path = urlsplit(self.path).path or "/"
        if path == self.server.health_path and self.command in ("GET", "HEAD"):
            state = "ready" if self.server.backend_ready() else "starting"
            self._reply(200, f"ok backend={state}\n")
            return
        route = self.server.routes.match(path)
        if route is None:
            self._reply(404, "not found\n")
            return
        problem = check_upgrade(self.command, self.headers)
        if problem is not None:
            status, reason = problem
            LOGGER.debug("rejecting %s %s: %s", self.command, self.path, reason)
            extra = [("Upgrade", "websocket")] if status == 426 else []
            self._reply(status, reason + "\n", extra)
            return
        self._tunnel(route)

    def _reply(self, status: int, body: str, extra: Optional[List[Tuple[str, str]]] = None) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        for key, value in extra or []:
            self.send_header(key, value)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)
        self.close_connection = True

    def _tunnel(self, route) -> None:
        self.close_connection = True
        request = UpgradeRequest(
            method=self.command,
            target=self.path,
            headers=list(self.headers.items()),
            version=self.request_version,
        )
        client = self.connection
        if not self.server.wait_backend():
            LOGGER.warning("backend not ready for %s; closing client", route.path)
            _close(client)
            return
        self.server.track(client)
        started = time.monotonic()
        try:
            up, down = self.server.forwarder.forward_upgrade(client, request, route.backend_addr)
        except RouteError as exc:
            LOGGER.info("route %s from %s closed: %s", route.path, self.address_string(), exc)
            _close(client)
            return
        finally:
            self.server.untrack(client)
        LOGGER.debug("tunnel %s closed after %.1fs (up=%d down=%d)",
                     route.path, time.monotonic() - started, up, down)


class TunnelServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True

    def __init__(self, server_address, routes: RouteTable, forwarder: UpgradeForwarder,
                 readiness: Optional[BackendReadiness] = None, ready_timeout: float = 5.0,
                 ssl_context: Optional[ssl.SSLContext] = None, health_path: str = HEALTH_PATH):
        self.routes = routes
        self.forwarder = forwarder
        self.readiness = readiness
        self.ready_timeout = ready_timeout
        self.ssl_context = ssl_context
        self.health_path = health_path
        self._active: Set[socket.socket] = set()
        self._active_lock = threading.Lock()
        super().__init__(server_address, TunnelRequestHandler)

    def get_request(self):
        sock, addr = super().get_request()
        if self.ssl_context is not None:
            sock = self.ssl_context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)
        return sock, addr

    def handle_error(self, request, client_address):
        LOGGER.debug("connection from %s failed", client_address, exc_info=True)

    def backend_ready(self) -> bool:
        return self.readiness is None or self.readiness.is_ready()

    def wait_backend(self) -> bool:
        if self.readiness is None:
            return True
        return self.readiness.wait(self.ready_timeout)

    def track(self, sock: socket.socket) -> None:
        with self._active_lock:
            self._active.add(sock)

    def untrack(self, sock: socket.socket) -> None:
        with self._active_lock:
            self._active.discard(sock)

    def active_count(self) -> int:
        with self._active_lock:
            return len(self._active)

    def drain(self, grace: float) -> int:
        """Wait up to ``grace`` seconds for tunnels to end, then force-close the rest."""
        deadline = time.monotonic() + max(0.0, grace)
        while self.active_count() and time.monotonic() < deadline:
            time.sleep(0.1)
        with self._active_lock:
            leftover = list(self._active)
        for sock in leftover:
            _close(sock)
        return len(leftover)


@dataclass
class TunnelRouter:
    """Owns the listener thread and its shutdown sequence."""

    routes: RouteTable
    host: str = "0.0.0.0"
    port: int = 8080
    forwarder: UpgradeForwarder = field(default_factory=MinimalHandshakeForwarder)
    readiness: Optional[BackendReadiness] = None
    ready_timeout: float = 5.0
    ssl_context: Optional[ssl.SSLContext] = None

    def __post_init__(self):
        self.server: Optional[TunnelServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_lock = threading.Lock()
        self._closed = False

    @property
    def address(self) -> Tuple[str, int]:
        if self.server is None:
            return (self.host, self.port)
        return self.server.server_address[:2]

    def start(self) -> None:
        self.server = TunnelServer(
            (self.host, self.port),
            self.routes,
            self.forwarder,
            readiness=self.readiness,
            ready_timeout=self.ready_timeout,
            ssl_context=self.ssl_context,
        )
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True, name="tunnel-http")
        self._thread.start()
        scheme = "https" if self.ssl_context else "http"
        LOGGER.info("[http] listening on %s://%s:%s (forward=%s)", scheme, *self.address, self.forwarder.name)
        for route in self.routes:
            LOGGER.info("[http] route %s -> %s 127.0.0.1:%s", route.path, route.kind.value, route.backend_port)

    def stop_accepting(self) -> None:
        server = self.server
        with self._stop_lock:
            if server is None or self._closed:
                return
            self._closed = True
        server.shutdown()
        server.server_close()
        LOGGER.info("[http] no longer accepting connections")

    def stop(self, grace: float = 5.0) -> None:
        server = self.server
        if server is None:
            return
        self.stop_accepting()
        forced = server.drain(grace)
        if forced:
            LOGGER.info("[http] force-closed %d tunnel(s) after %ss grace", forced, grace)
        if self._thread is not None:
            self._thread.join(timeout=5)
        self.server = None


def build_ssl_context(cert: str, key: str) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(cert, key)
    ctx.set_alpn_protocols(["http/1.1"])
    return ctx
