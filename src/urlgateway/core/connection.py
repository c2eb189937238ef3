"""
=============================================================================
CLIENT CONNECTION
=============================================================================

Wraps one accepted client socket: buffered reading of request heads and
bodies under a read deadline, sending responses, and closing.

=============================================================================
THE READ DEADLINE
=============================================================================

A single deadline covers everything the server reads for one request:

    read_head() starts the clock
        │
        │   POST / HTTP/1.1\r\n ... \r\n\r\n      ← head
        │   {"urls": [...]}                        ← body (read_body)
        │
        └── read_timeout (10s) later: deadline

Every recv() gets only the time left until the deadline, so a client
that dribbles one byte per second cannot stretch a request past it.

    deadline hit before any byte of a request → read_head() returns None
    deadline hit inside the head              → TimeoutError (server sends 408)
    deadline hit inside the body              → BodyReadError (handler sends 400)

=============================================================================
CONNECTION STATE MACHINE
=============================================================================

    NEW ──────► READING ──────► PROCESSING ──────► WRITING ────────┐
     │             │                                    │           │
     │             │                                    │           ▼
     │             │                                    │      KEEP_ALIVE
     │             ▼                                    │           │
     └──────────► CLOSING ◄─────────────────────────────┴───────────┘
                    │
                    ▼
                  CLOSED

NEW and KEEP_ALIVE are "idle": no request is in progress. Shutdown
closes idle connections immediately and waits for the others.

=============================================================================
"""

import socket
import threading
import time
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Optional
import uuid

from ..http.request import HTTPParseError


logger = logging.getLogger(__name__)


HEAD_TERMINATOR = b"\r\n\r\n"
MAX_CHUNK_LINE = 4096


class ConnectionState(Enum):
    NEW = "new"
    READING = "reading"
    PROCESSING = "processing"
    WRITING = "writing"
    KEEP_ALIVE = "keep_alive"
    CLOSING = "closing"
    CLOSED = "closed"


class BodyReadError(Exception):
    """The request body could not be read completely."""


@dataclass(eq=False)
class Connection:
    """
    A client connection.

    Attributes:
        socket: The accepted client socket.
        address: Client's (ip, port).
        id: Short random id used in log lines.
        state: Where in the request cycle the connection is.
        requests_handled: Requests read so far on this connection.
        read_timeout: Seconds allowed to read one request (head + body).
        on_close: Called once, after the socket is closed.
    """

    socket: socket.socket
    address: tuple[str, int]

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    requests_handled: int = 0

    buffer_size: int = 8192
    read_timeout: float = 10.0
    max_request_size: int = 10 * 1024 * 1024

    on_close: Optional[Callable[["Connection"], None]] = field(default=None, repr=False)

    _buffer: bytes = field(default=b"", repr=False)
    _deadline: float = field(default=0.0, repr=False)
    _close_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        self.socket.setblocking(True)

    @property
    def is_idle(self) -> bool:
        """True while waiting for the next request to start."""
        return self.state in (ConnectionState.NEW, ConnectionState.KEEP_ALIVE)

    # =========================================================================
    # READING
    # =========================================================================

    def read_head(self) -> Optional[bytes]:
        """
        Read the next request head, up to and including the blank line.

        Starts the read deadline for this request. Bytes past the head
        stay buffered for read_body().

        Returns:
            The head bytes, or None if the client went away (or sent
            nothing before the deadline) before starting a request.

        Raises:
            TimeoutError: If the deadline passed part-way through a head.
            HTTPParseError: If the head outgrows max_request_size.
        """
        self._deadline = time.monotonic() + self.read_timeout

        if self._buffer:
            self.state = ConnectionState.READING

        try:
            while HEAD_TERMINATOR not in self._buffer:
                chunk = self._recv()
                if not chunk:
                    return None
                self.state = ConnectionState.READING
                self._buffer += chunk

                if len(self._buffer) > self.max_request_size:
                    raise HTTPParseError(
                        f"Request too large: {len(self._buffer)} bytes",
                        status_code=413,
                    )
        except TimeoutError:
            if not self._buffer:
                logger.debug(f"[{self.id}] Idle timeout")
                return None
            raise

        head_end = self._buffer.find(HEAD_TERMINATOR) + len(HEAD_TERMINATOR)
        head = self._buffer[:head_end]
        self._buffer = self._buffer[head_end:]

        self.requests_handled += 1
        return head

    def read_body(self, content_length: int = 0, chunked: bool = False) -> bytes:
        """
        Read the request body that follows the last head.

        Args:
            content_length: Body size for Content-Length framing.
            chunked: Decode Transfer-Encoding: chunked instead.

        Raises:
            BodyReadError: On EOF, deadline expiry or bad chunk framing.
        """
        try:
            if chunked:
                return self._read_chunked()
            return self._read_exact(content_length)
        except TimeoutError as e:
            raise BodyReadError(f"read timeout after {self.read_timeout}s") from e

    def _read_exact(self, size: int) -> bytes:
        while len(self._buffer) < size:
            chunk = self._recv()
            if not chunk:
                raise BodyReadError(
                    f"unexpected EOF: expected {size} bytes, got {len(self._buffer)}"
                )
            self._buffer += chunk

        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data

    def _read_line(self) -> bytes:
        while b"\r\n" not in self._buffer:
            if len(self._buffer) > MAX_CHUNK_LINE:
                raise BodyReadError("chunk header line too long")
            chunk = self._recv()
            if not chunk:
                raise BodyReadError("unexpected EOF in chunked body")
            self._buffer += chunk

        line, _, self._buffer = self._buffer.partition(b"\r\n")
        return line

    def _read_chunked(self) -> bytes:
        """
        Decode a chunked body:

            1b\r\n                          ← size in hex (extensions ignored)
            {"urls": ["http://a.test"]}\r\n
            0\r\n                           ← last chunk
            \r\n                            ← end of (empty) trailer
        """
        body = b""
        while True:
            size_field = self._read_line().split(b";", 1)[0].strip()
            try:
                size = int(size_field, 16)
            except ValueError:
                raise BodyReadError(f"invalid chunk size: {size_field!r}") from None

            if size == 0:
                break

            if len(body) + size > self.max_request_size:
                raise BodyReadError(
                    f"request body too large: {len(body) + size} bytes"
                )
            body += self._read_exact(size)
            if self._read_exact(2) != b"\r\n":
                raise BodyReadError("malformed chunk terminator")

        while self._read_line():
            pass  # trailer fields are ignored

        return body

    def _recv(self) -> bytes:
        """
        One recv() bounded by the time left before the deadline.

        Returns b"" when the peer closed or reset the connection.

        Raises:
            TimeoutError: If the deadline has passed.
        """
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("Request read timeout")

        try:
            self.socket.settimeout(remaining)
            return self.socket.recv(self.buffer_size)
        except socket.timeout:
            raise TimeoutError("Request read timeout") from None
        except (ConnectionResetError, BrokenPipeError):
            return b""
        except OSError:
            # Socket shut down underneath us (server shutdown).
            return b""

    # =========================================================================
    # WRITING
    # =========================================================================

    def send_response(self, data: bytes) -> bool:
        """
        Send response bytes. Returns False if the client is gone.
        """
        self.state = ConnectionState.WRITING
        try:
            self.socket.settimeout(self.read_timeout)
            self.socket.sendall(data)
            return True
        except OSError as e:
            logger.warning(f"[{self.id}] Send failed: {e}")
            return False

    def send_continue(self) -> bool:
        """Answer "Expect: 100-continue" so the client sends its body."""
        try:
            self.socket.sendall(b"HTTP/1.1 100 Continue\r\n\r\n")
            return True
        except OSError:
            return False

    def set_keep_alive(self):
        """Mark the connection idle, waiting for the next request."""
        self.state = ConnectionState.KEEP_ALIVE

    # =========================================================================
    # CLOSING
    # =========================================================================

    def abort(self):
        """
        Shut the socket down so a blocked recv() returns at once.

        Used by server shutdown on idle connections. The thread that
        owns the connection sees EOF and closes it normally.
        """
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self):
        """
        Close the connection. Safe to call more than once.

        Sends FIN, drains anything the client still sends for a short
        while so the response is not cut off by a RST, then releases
        the socket and fires on_close.
        """
        with self._close_lock:
            if self.state == ConnectionState.CLOSED:
                return
            self.state = ConnectionState.CLOSING

        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass

        try:
            self.socket.settimeout(0.5)
            while self.socket.recv(1024):
                pass
        except OSError:
            pass

        try:
            self.socket.close()
        except OSError:
            pass

        self.state = ConnectionState.CLOSED
        logger.debug(f"[{self.id}] Connection closed after {self.requests_handled} requests")

        if self.on_close is not None:
            self.on_close(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
