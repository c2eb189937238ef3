"""
=============================================================================
GATEWAY SERVER
=============================================================================

Ties the listener, the per-connection request loop, the middleware
pipeline and the aggregate handler together, and owns the server's
lifecycle: start, serve, graceful shutdown.

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                     │
    │                        ┌─────────────────┐                          │
    │                        │  GatewayServer  │                          │
    │                        │ (Orchestrator)  │                          │
    │                        └────────┬────────┘                          │
    │                                 │                                   │
    │            ┌────────────────────┼────────────────────┐              │
    │            ▼                    ▼                    ▼              │
    │    ┌──────────────┐    ┌──────────────┐    ┌──────────────────┐     │
    │    │ SocketServer │    │  Connection  │    │ AggregateHandler │     │
    │    │ (listener +  │    │  threads     │    │ (fetch + JSON)   │     │
    │    │  slot cap)   │    │ (one each)   │    │                  │     │
    │    └──────────────┘    └──────────────┘    └──────────────────┘     │
    │                                                                     │
    │           ┌─────────────────────────────────────────┐               │
    │           │         Middleware Pipeline             │               │
    │           │      Logging → ... → AggregateHandler   │               │
    │           └─────────────────────────────────────────┘               │
    │                                                                     │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
LIFECYCLE
=============================================================================

    run()
     ├── start()                 bind (BindError on failure), accept thread
     ├── wait                    SIGINT / SIGTERM, or the accept loop dying
     └── shutdown()
           ├── close listener    no new connections
           ├── close idle        keep-alive connections with no request
           └── wait for active   up to shutdown_grace_period (5s)
                                 ShutdownError if any are still running

    A serve failure is fatal: run() raises ServeError without waiting
    for in-flight requests.

=============================================================================
"""

import logging
import signal
import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple

from .config import GatewayConfig
from .core.connection import BodyReadError, Connection, ConnectionState
from .core.socket_server import SocketServer
from .http.request import HTTPParseError, HTTPRequest, RequestParser
from .http.response import HTTPResponse, error_text
from .http.status_codes import HTTPStatus
from .handlers.aggregate import AggregateHandler
from .middleware.base import Middleware, MiddlewarePipeline


logger = logging.getLogger(__name__)


Handler = Callable[[HTTPRequest], HTTPResponse]


class GatewayError(Exception):
    """Base class for server lifecycle failures."""


class BindError(GatewayError):
    """The listen address could not be bound."""


class ServeError(GatewayError):
    """The accept loop failed while the server was running."""


class ShutdownError(GatewayError):
    """Requests were still running when the grace period ran out."""


class GatewayServer:
    """
    The URL gateway HTTP server.

    Usage:
        server = GatewayServer(GatewayConfig(port=8080))
        server.use(LoggingMiddleware())
        server.run()  # Blocks until Ctrl+C

    Or, embedded (tests do this):
        server = GatewayServer(GatewayConfig(port=0))
        server.start()
        host, port = server.address
        ...
        server.shutdown()

    Args:
        config: Gateway configuration. Defaults are used when omitted.
        handler: Request handler. Defaults to an AggregateHandler built
                 from the same config.

    Raises:
        ValueError: If the configuration is invalid.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        handler: Optional[Handler] = None,
    ):
        self.config = config or GatewayConfig()
        self.config.validate()

        # ─────────────────────────────────────────────────────────────────
        # CORE COMPONENTS
        # ─────────────────────────────────────────────────────────────────

        self._socket_server = SocketServer(self.config)
        self._parser = RequestParser(max_request_size=self.config.max_request_size)
        self._endpoint: Handler = handler or AggregateHandler(self.config)
        self._middleware = MiddlewarePipeline()

        # ─────────────────────────────────────────────────────────────────
        # RUNTIME STATE
        # ─────────────────────────────────────────────────────────────────

        # middleware.wrap(endpoint), built in start()
        self._handler: Optional[Handler] = None

        self._running = False
        self._stop_requested = threading.Event()
        self._serve_thread: Optional[threading.Thread] = None
        self._serve_error: Optional[BaseException] = None

        # Open connections, so shutdown can find idle ones and wait for
        # the rest.
        self._connections: Set[Connection] = set()
        self._connections_lock = threading.Lock()
        self._connections_changed = threading.Condition(self._connections_lock)

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def use(self, middleware: Middleware) -> "GatewayServer":
        """
        Add middleware. Middleware runs in the order added; put logging
        first so it times everything.
        """
        self._middleware.add(middleware)
        return self

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (host, port). Meaningful after start()."""
        return self._socket_server.address

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self):
        """
        Bind the listener and start accepting on a background thread.

        Raises:
            BindError: If the address cannot be bound.
            RuntimeError: If the server is already running.
        """
        if self._running:
            raise RuntimeError("Server is already running")

        self._handler = self._middleware.wrap(self._endpoint)

        try:
            self._socket_server.bind()
        except OSError as e:
            logger.error(f"Failed to bind to {self.config.address}: {e}")
            raise BindError(f"listen tcp {self.config.address}: {e}") from e

        self._serve_error = None
        self._stop_requested.clear()
        self._running = True

        self._serve_thread = threading.Thread(
            target=self._serve,
            name="gateway-accept",
            daemon=True,
        )
        self._serve_thread.start()

    def _serve(self):
        try:
            self._socket_server.serve(self._handle_connection)
        except Exception as e:
            logger.error(f"Serve error: {e}")
            self._serve_error = e
        finally:
            self._stop_requested.set()

    def run(self):
        """
        Start the server and block until it is told to stop.

        SIGINT and SIGTERM trigger a graceful shutdown.

        Raises:
            BindError: If the address cannot be bound.
            ServeError: If the accept loop fails. In-flight requests are
                        abandoned.
            ShutdownError: If requests outlive the grace period.
        """
        self._setup_logging()
        self.start()

        host, port = self.address
        logger.info(
            f"{self.config.server_name} serving on {host or '0.0.0.0'}:{port} "
            f"(connection limit {self.config.connection_limit}, "
            f"max {self.config.max_url_count} urls per request)"
        )

        original_handlers = self._setup_signals()
        try:
            while not self._stop_requested.wait(timeout=0.5):
                pass
        finally:
            self._restore_signals(original_handlers)

        if self._serve_error is not None:
            self._running = False
            self._socket_server.shutdown()
            raise ServeError(f"Serve error: {self._serve_error}") from self._serve_error

        self.shutdown()

    def stop(self):
        """Ask run() to shut down. Safe to call from any thread."""
        self._stop_requested.set()

    def _setup_signals(self) -> Dict[int, object]:
        """
        Route SIGINT/SIGTERM to stop(). Only the main thread may install
        signal handlers, so elsewhere this does nothing.
        """
        if threading.current_thread() is not threading.main_thread():
            return {}

        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, initiating shutdown...")
            self.stop()

        return {
            signal.SIGINT: signal.signal(signal.SIGINT, shutdown_handler),
            signal.SIGTERM: signal.signal(signal.SIGTERM, shutdown_handler),
        }

    def _restore_signals(self, original_handlers: Dict[int, object]):
        for sig, handler in original_handlers.items():
            signal.signal(sig, handler)

    def _setup_logging(self):
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        logging.getLogger("urlgateway").setLevel(level)

    def shutdown(self, grace_period: Optional[float] = None):
        """
        Graceful shutdown.

        =====================================================================
        GRACEFUL SHUTDOWN PROCESS
        =====================================================================

        1. Stop accepting new connections
        2. Close connections that are idle between requests
        3. Wait for the rest to finish their current request, polling
           for connections that went idle in the meantime
        4. Give up at the deadline

        =====================================================================

        Args:
            grace_period: Seconds to wait. Defaults to the configured
                          shutdown_grace_period.

        Raises:
            ShutdownError: If connections are still active at the deadline.
                           The listener is closed either way.
        """
        if grace_period is None:
            grace_period = self.config.shutdown_grace_period

        if not self._running:
            return

        logger.info("Shutting down server...")
        self._running = False
        self._socket_server.shutdown()
        self._stop_requested.set()

        deadline = time.monotonic() + grace_period

        with self._connections_changed:
            while self._connections:
                for conn in self._connections:
                    if conn.is_idle:
                        conn.abort()

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    active = len(self._connections)
                    logger.error(f"Server shutdown failed: {active} connection(s) still active")
                    raise ShutdownError(
                        f"Server shutdown failed: {active} connection(s) still active "
                        f"after {grace_period}s grace period"
                    )
                self._connections_changed.wait(timeout=min(remaining, 0.1))

        if self._serve_thread is not None:
            self._serve_thread.join(timeout=SocketServer.poll_interval * 2)

        logger.info("Server stopped")

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _handle_connection(self, conn: Connection):
        """Called by the accept loop: register and start a thread."""
        with self._connections_lock:
            self._connections.add(conn)

        thread = threading.Thread(
            target=self._run_connection,
            args=(conn,),
            name=f"conn-{conn.id}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"[{conn.id}] Could not start connection thread: {e}")
            self._forget(conn)
            conn.close()

    def _run_connection(self, conn: Connection):
        try:
            self._process_connection(conn)
        finally:
            self._forget(conn)

    def _forget(self, conn: Connection):
        with self._connections_changed:
            self._connections.discard(conn)
            self._connections_changed.notify_all()

    def _process_connection(self, conn: Connection):
        """
        Serve requests on one connection until it closes.

        =====================================================================
        CONNECTION PROCESSING LOOP
        =====================================================================

        1. Read the request head (starts the read deadline)
        2. Parse it; malformed heads get an error status and a close
        3. Read the body; a failure is recorded on the request, not sent
           back directly, so the handler answers "Invalid body"
        4. Run middleware + handler
        5. Send the response
        6. Keep-alive: back to 1. Otherwise close.

        =====================================================================
        """
        with conn:
            while True:
                try:
                    head = conn.read_head()
                    if head is None:
                        break

                    try:
                        request = self._parser.parse_head(head, conn.address)
                    except HTTPParseError as e:
                        self._send_error(conn, HTTPStatus(e.status_code), e.message)
                        break

                    body_complete = self._read_body(conn, request)

                    conn.state = ConnectionState.PROCESSING
                    try:
                        response = self._handler(request)
                    except Exception as e:
                        logger.exception(f"[{conn.id}] Handler error: {e}")
                        response = error_text(
                            HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error"
                        )

                    keep_alive = (
                        body_complete
                        and request.is_keep_alive
                        and self.config.keep_alive
                        and self._running
                    )
                    if keep_alive:
                        response.headers.setdefault("Connection", "keep-alive")
                    else:
                        response.headers["Connection"] = "close"

                    response_bytes = response.to_bytes(
                        self.config.server_name,
                        include_body=request.method != "HEAD",
                    )
                    if not conn.send_response(response_bytes) or not keep_alive:
                        break

                    conn.set_keep_alive()

                except TimeoutError:
                    self._send_error(conn, HTTPStatus.REQUEST_TIMEOUT, "Request timeout")
                    break

                except HTTPParseError as e:
                    self._send_error(conn, HTTPStatus(e.status_code), e.message)
                    break

                except Exception as e:
                    logger.exception(f"[{conn.id}] Connection error: {e}")
                    break

    def _read_body(self, conn: Connection, request: HTTPRequest) -> bool:
        """
        Fill request.body. On failure sets request.body_error and
        returns False; the connection is unusable after that.
        """
        if not request.has_body:
            return True

        if request.get_header("expect").lower() == "100-continue":
            conn.send_continue()

        try:
            request.body = conn.read_body(
                content_length=request.content_length,
                chunked=request.is_chunked,
            )
            return True
        except BodyReadError as e:
            logger.debug(f"[{conn.id}] Body read failed: {e}")
            request.body_error = e
            return False

    def _send_error(self, conn: Connection, status: HTTPStatus, message: str):
        """Answer a request that never reached the handler."""
        response = error_text(status, message)
        response.headers["Connection"] = "close"
        conn.send_response(response.to_bytes(self.config.server_name))


def create_app(config: Optional[GatewayConfig] = None) -> GatewayServer:
    """
    Build a server with the standard middleware stack.

    Logging goes first so it times the whole request.

    Args:
        config: Gateway configuration.
    """
    from .middleware.logging import LoggingMiddleware

    server = GatewayServer(config)
    server.use(LoggingMiddleware(log_format=server.config.log_format))
    return server
