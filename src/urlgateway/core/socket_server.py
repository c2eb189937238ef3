"""
=============================================================================
LISTENER WITH A CONNECTION CAP
=============================================================================

The TCP side of the gateway: bind, listen, accept, and hand each client
socket to the HTTP layer as a Connection.

=============================================================================
CONNECTION SLOTS
=============================================================================

At most `connection_limit` client connections are open at once. A slot
is taken BEFORE accept() and given back when the connection closes:

        slots (connection_limit = 3)
        ┌───┬───┬───┐
        │ ● │ ● │ ○ │      ● = held by an open connection
        └───┴───┴───┘      ○ = free
              │
              ▼
    acquire slot ──► accept() ──► Connection(on_close=release slot)

When every slot is held the loop stops calling accept(). New clients
then wait in the kernel backlog; they are not refused, and they are
accepted as soon as a slot frees up.

=============================================================================
SOCKET OPTIONS
=============================================================================

SO_REUSEADDR:  Rebind right after a restart instead of waiting out
               TIME_WAIT.
TCP_NODELAY:   Send small responses immediately (no Nagle batching).
Accept timeout: accept() wakes up every second so the loop can notice
               shutdown.

=============================================================================
"""

import socket
import logging
import threading
from typing import Optional, Callable, Tuple

from ..config import GatewayConfig
from .connection import Connection


logger = logging.getLogger(__name__)


ConnectionHandler = Callable[[Connection], None]


class SocketServer:
    """
    Low-level TCP listener.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      SocketServer Internals                         │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                     │
    │    bind()            socket(), setsockopt(), bind(), listen()       │
    │        │             Raises OSError (port in use, bad host, ...)    │
    │        ▼                                                            │
    │    serve(handler)    Accept loop (blocks here!)                     │
    │        │                                                            │
    │        └──► while running:                                          │
    │                acquire slot      Wait for a free connection slot    │
    │                accept()          Wait for a client                  │
    │                Connection()      Wrap client socket                 │
    │                handler(conn)     Hand off to the HTTP layer         │
    │                                                                     │
    │    shutdown()        Stop the loop and close the listener           │
    │                                                                     │
    └─────────────────────────────────────────────────────────────────────┘

    Usage:
        server = SocketServer(config)
        server.bind()
        server.serve(handle_connection)  # Blocks until shutdown()
    """

    # How often a blocked wait wakes up to check for shutdown.
    poll_interval = 1.0

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._socket: Optional[socket.socket] = None
        self._running = False
        self._slots = threading.BoundedSemaphore(config.connection_limit)
        self._bound_address: Optional[Tuple[str, int]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> Tuple[str, int]:
        """
        The address actually bound. With port 0 this is where the OS
        put us; before bind() it is the configured address.
        """
        return self._bound_address or (self.config.host, self.config.port)

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(self.poll_interval)
        return sock

    def bind(self):
        """
        Create the listening socket.

        Raises:
            OSError: If the address cannot be bound.
        """
        sock = self._create_socket()
        try:
            sock.bind((self.config.host, self.config.port))
            sock.listen(self.config.backlog)
        except OSError:
            sock.close()
            raise

        self._socket = sock
        self._bound_address = sock.getsockname()[:2]
        self._running = True

        host, port = self.address
        logger.info(f"Listening on {host or '0.0.0.0'}:{port}")

    def serve(self, connection_handler: ConnectionHandler):
        """
        Accept connections until shutdown() is called.

        Args:
            connection_handler: Receives every accepted Connection. It must
                                not block; the HTTP layer starts a thread.

        Raises:
            RuntimeError: If bind() has not been called.
            OSError: If accept() fails while the server is still running.
        """
        if self._socket is None:
            raise RuntimeError("serve() called before bind()")

        try:
            while self._running:
                if not self._slots.acquire(timeout=self.poll_interval):
                    continue

                try:
                    accepted = self._accept()
                except BaseException:
                    self._slots.release()
                    raise

                if accepted is None:
                    self._slots.release()
                    break

                client_socket, client_address = accepted
                logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")

                conn = Connection(
                    socket=client_socket,
                    address=client_address,
                    buffer_size=self.config.buffer_size,
                    read_timeout=self.config.read_timeout,
                    max_request_size=self.config.max_request_size,
                    on_close=self._release_slot,
                )
                connection_handler(conn)
        finally:
            self._cleanup()

    def _accept(self) -> Optional[Tuple[socket.socket, Tuple[str, int]]]:
        """Block in accept(), waking every poll_interval. None once stopped."""
        while self._running:
            try:
                return self._socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._running:
                    return None
                logger.error(f"Accept error: {e}")
                raise
        return None

    def _release_slot(self, conn: Connection):
        self._slots.release()

    def shutdown(self):
        """
        Stop accepting. Open connections are left to their owners.

        Safe to call more than once and from any thread.
        """
        if self._running:
            logger.info("Closing listener...")
        self._running = False

        sock = self._socket
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def _cleanup(self):
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None
        logger.debug("Listener stopped")
