"""
pytest configuration and fixtures.
"""

import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, Generator, List, Tuple
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from urlgateway import GatewayConfig, GatewayServer, ShutdownError


@pytest.fixture
def sample_post_request() -> bytes:
    """Sample aggregate request with a JSON body."""
    body = b'{"urls": ["http://a.test/ok", "http://a.test/ok2"]}'
    return (
        b"POST / HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"Content-Type: application/json\r\n"
        + f"Content-Length: {len(body)}\r\n".encode()
        + b"Connection: close\r\n"
        b"\r\n"
    ) + body


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


# =============================================================================
# STUB UPSTREAM
# =============================================================================


class _StubHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def do_GET(self):
        stub: "StubUpstream" = self.server.stub
        stub.record(self.path)

        status, body, delay = stub.routes.get(self.path, (404, b"not found", 0.0))
        if delay:
            time.sleep(delay)

        try:
            self.send_response(status)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        except (BrokenPipeError, ConnectionResetError):
            pass  # the gateway gave up on us

    def log_message(self, format, *args):
        pass


class StubUpstream:
    """
    A tiny upstream HTTP server running on a background thread.

        upstream.route("/ok", b"A")
        upstream.route("/slow", b"late", delay=1.0)
        upstream.url("/ok")  -> "http://127.0.0.1:<port>/ok"
    """

    def __init__(self):
        self.routes: Dict[str, Tuple[int, bytes, float]] = {}
        self.requests: List[str] = []
        self._lock = threading.Lock()
        self._server = ThreadingHTTPServer(("127.0.0.1", 0), _StubHandler)
        self._server.daemon_threads = True
        self._server.stub = self
        self._thread: threading.Thread = None

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def route(self, path: str, body: bytes = b"", status: int = 200, delay: float = 0.0):
        self.routes[path] = (status, body, delay)

    def url(self, path: str) -> str:
        return f"http://127.0.0.1:{self.port}{path}"

    def record(self, path: str):
        with self._lock:
            self.requests.append(path)

    def start(self):
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self):
        self._server.shutdown()
        self._server.server_close()


@pytest.fixture
def upstream() -> Generator[StubUpstream, None, None]:
    """A running stub upstream with /ok -> "A" and /ok2 -> "B"."""
    stub = StubUpstream()
    stub.route("/ok", b"A")
    stub.route("/ok2", b"B")
    stub.start()

    yield stub

    stub.stop()


# =============================================================================
# GATEWAY
# =============================================================================


def _gateway_url(server: GatewayServer, path: str = "/") -> str:
    host, port = server.address
    return f"http://{host}:{port}{path}"


@pytest.fixture
def url_for() -> Callable[..., str]:
    """Base URL of a running gateway: url_for(server) -> "http://127.0.0.1:<port>/"."""
    return _gateway_url


@pytest.fixture
def make_gateway() -> Generator[Callable[..., GatewayServer], None, None]:
    """
    Factory for started gateways on an ephemeral port.

        server = make_gateway(connection_limit=1)
    """
    servers: List[GatewayServer] = []

    def factory(**overrides) -> GatewayServer:
        settings = {"host": "127.0.0.1", "port": 0, "log_level": "WARNING"}
        settings.update(overrides)
        server = GatewayServer(GatewayConfig(**settings))
        server.start()
        servers.append(server)
        return server

    yield factory

    for server in servers:
        if server.is_running:
            try:
                server.shutdown(grace_period=2.0)
            except ShutdownError:
                pass


@pytest.fixture
def gateway(make_gateway) -> GatewayServer:
    """A gateway with the default configuration."""
    return make_gateway()
