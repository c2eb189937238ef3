"""
=============================================================================
HTTP REQUEST PARSING
=============================================================================

Turns the bytes a client sends into an HTTPRequest object.

A request arrives in two parts, and the gateway reads them separately:

    POST / HTTP/1.1\r\n                 ┐
    Host: gateway:8080\r\n              │  HEAD: parsed here by
    Content-Type: application/json\r\n  │  RequestParser.parse_head()
    Content-Length: 29\r\n              │
    \r\n                                ┘
    {"urls": ["http://a.test/ok"]}      ── BODY: read by the Connection,
                                           framed by Content-Length or
                                           Transfer-Encoding: chunked

Splitting the two matters for the gateway: a request whose head parsed
fine but whose body could not be read is not a protocol error. It still
reaches the handler, which answers 400 "Invalid body". HTTPRequest
carries that failure in `body_error`.

=============================================================================
FRAMING RULES
=============================================================================

    Transfer-Encoding: chunked   → body is chunked, Content-Length ignored
    Transfer-Encoding: <other>   → 501 Not Implemented
    Content-Length: N            → exactly N bytes of body
    neither                      → no body

A Content-Length that is not a non-negative integer is a 400.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional, Dict
from urllib.parse import urlparse, unquote
import re


class HTTPParseError(Exception):
    """
    Raised when the request head is malformed.

    Carries the status code to answer with. The connection is closed
    after the error response because the framing can no longer be
    trusted.
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class HTTPRequest:
    """
    A parsed HTTP request.

    Attributes:
        method:         HTTP method, upper case ("POST").
        path:           Request path without query string.
        version:        "HTTP/1.1" or "HTTP/1.0".
        headers:        Header dict with LOWERCASE keys.
        body:           Body bytes (empty until the connection fills it in).
        client_address: (ip, port) of the client.
        body_error:     Set when the body could not be read completely.
    """

    method: str
    path: str
    version: str = "HTTP/1.1"

    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    client_address: tuple[str, int] = ("", 0)

    body_error: Optional[Exception] = field(default=None, repr=False)

    @property
    def content_length(self) -> int:
        """Content-Length as an integer, 0 when absent."""
        try:
            return int(self.headers.get("content-length", 0))
        except ValueError:
            return 0

    @property
    def is_chunked(self) -> bool:
        """True when the body uses chunked transfer coding."""
        return self.headers.get("transfer-encoding", "").lower() == "chunked"

    @property
    def has_body(self) -> bool:
        return self.is_chunked or self.content_length > 0

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def is_keep_alive(self) -> bool:
        """
        Whether the client expects the connection to stay open.

        HTTP/1.1 keeps alive unless "Connection: close".
        HTTP/1.0 closes unless "Connection: keep-alive".
        """
        connection = self.headers.get("connection", "").lower()
        if self.version == "HTTP/1.1":
            return connection != "close"
        return connection == "keep-alive"

    def get_header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


class RequestParser:
    """
    Parses HTTP/1.x request heads.

    The gateway only ever needs one parser; it holds no per-request
    state and is shared across connection threads.
    """

    VALID_METHODS = {
        "GET", "POST", "PUT", "DELETE", "PATCH",
        "HEAD", "OPTIONS", "TRACE", "CONNECT",
    }

    REQUEST_LINE_PATTERN = re.compile(r"^([A-Z]+) ([^ ]+) (HTTP/\d\.\d)$")
    HEADER_PATTERN = re.compile(r"^([^:]+):\s*(.*)$")

    def __init__(self, max_request_size: int = 10 * 1024 * 1024):
        self.max_request_size = max_request_size

    def parse_head(
        self,
        head: bytes,
        client_address: tuple[str, int] = ("", 0)
    ) -> HTTPRequest:
        """
        Parse the request line and headers.

        Args:
            head: Bytes up to (and optionally including) the blank line.
            client_address: Client's (ip, port) tuple.

        Returns:
            HTTPRequest with an empty body.

        Raises:
            HTTPParseError: If the head is malformed or unsupported.
        """
        if len(head) > self.max_request_size:
            raise HTTPParseError(
                f"Request too large: {len(head)} bytes",
                status_code=413,
            )

        text = head.decode("utf-8", errors="replace")
        if text.endswith("\r\n\r\n"):
            text = text[:-4]

        lines = text.split("\r\n")
        if not lines or not lines[0]:
            raise HTTPParseError("Empty request")

        method, path, version = self._parse_request_line(lines[0])
        headers = self._parse_headers(lines[1:])
        self._check_framing(headers)

        return HTTPRequest(
            method=method,
            path=path,
            version=version,
            headers=headers,
            client_address=client_address,
        )

    def _parse_request_line(
        self,
        line: str
    ) -> tuple[str, str, str]:
        """Split "METHOD URI VERSION" and validate each part."""
        match = self.REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise HTTPParseError(f"Invalid request line: {line}")

        method, uri, version = match.groups()

        if method not in self.VALID_METHODS:
            raise HTTPParseError(f"Invalid method: {method}", status_code=405)

        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise HTTPParseError(
                f"Unsupported HTTP version: {version}",
                status_code=505,
            )

        parsed = urlparse(uri)
        path = unquote(parsed.path) or "/"
        return method, path, version

    def _parse_headers(self, lines: list[str]) -> Dict[str, str]:
        """
        Parse header lines into a lowercase-keyed dict.

        Repeated headers are joined with ", ". Obsolete line folding
        (continuation lines starting with whitespace) is accepted.
        """
        headers: Dict[str, str] = {}
        current_name = None

        for line in lines:
            if not line:
                continue

            if line[0] in (" ", "\t"):
                if current_name is not None:
                    headers[current_name] += " " + line.strip()
                continue

            match = self.HEADER_PATTERN.match(line)
            if not match:
                continue

            name, value = match.groups()
            name = name.strip().lower()
            value = value.strip()
            current_name = name

            if name in headers:
                headers[name] += ", " + value
            else:
                headers[name] = value

        return headers

    def _check_framing(self, headers: Dict[str, str]) -> None:
        transfer_encoding = headers.get("transfer-encoding")
        if transfer_encoding is not None:
            if transfer_encoding.lower() != "chunked":
                raise HTTPParseError(
                    f"Unsupported transfer encoding: {transfer_encoding}",
                    status_code=501,
                )
            return

        raw_length = headers.get("content-length")
        if raw_length is None:
            return
        if not raw_length.isdigit():
            raise HTTPParseError(f"Invalid Content-Length: {raw_length}")
        if int(raw_length) > self.max_request_size:
            raise HTTPParseError(
                f"Request body too large: {raw_length} bytes",
                status_code=413,
            )

