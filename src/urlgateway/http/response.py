"""
=============================================================================
HTTP RESPONSE BUILDING
=============================================================================

HTTPResponse holds what the handler decided to say; to_bytes() puts it
on the wire:

    HTTP/1.1 400 Bad Request\r\n               ← status line
    Content-Type: text/plain; charset=utf-8\r\n
    Content-Length: 31\r\n                     ← always computed
    Date: Sat, 18 Oct 2026 12:00:00 GMT\r\n    ← added if missing
    Server: url-gateway/1.0\r\n                ← added if missing
    \r\n
    Total urls count limited to 20.

Gateway errors are plain text, not JSON envelopes: a client reading a
400 or 500 body gets exactly the message the handler produced, and a
serialization failure is a 500 with no body at all.

=============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import json

from .status_codes import HTTPStatus


TEXT_PLAIN = "text/plain; charset=utf-8"
APPLICATION_JSON = "application/json"


@dataclass
class HTTPResponse:
    """A response to be serialized onto a client connection."""

    status: HTTPStatus = HTTPStatus.OK
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    version: str = "HTTP/1.1"

    @property
    def status_line(self) -> str:
        """e.g. "HTTP/1.1 200 OK"."""
        return f"{self.version} {int(self.status)} {self.status.phrase}"

    def set_header(self, name: str, value: str) -> "HTTPResponse":
        """Set a header and return self for chaining."""
        self.headers[name] = value
        return self

    def to_bytes(self, server_name: str = "url-gateway/1.0", include_body: bool = True) -> bytes:
        """
        Serialize the status line, headers and body.

        Content-Length is always the real body length, even when
        include_body is False (HEAD responses advertise the size of
        the body they would have carried).

        Args:
            server_name: Value for the Server header.
            include_body: False for responses to HEAD requests.
        """
        response_headers = dict(self.headers)

        response_headers["Content-Length"] = str(len(self.body))
        response_headers.setdefault("Date", format_http_date(datetime.now(timezone.utc)))
        response_headers.setdefault("Server", server_name)

        lines = [self.status_line]
        for name, value in response_headers.items():
            lines.append(f"{name}: {value}")
        lines.append("")

        header_bytes = "\r\n".join(lines).encode("utf-8") + b"\r\n"
        if not include_body:
            return header_bytes
        return header_bytes + self.body


class ResponseBuilder:
    """
    Fluent builder for HTTPResponse.

        response = (ResponseBuilder()
            .status(HTTPStatus.BAD_REQUEST)
            .text("Total urls count limited to 20.")
            .build())
    """

    def __init__(self):
        self._status = HTTPStatus.OK
        self._headers: Dict[str, str] = {}
        self._body: bytes = b""

    def status(self, status: HTTPStatus) -> "ResponseBuilder":
        self._status = HTTPStatus(status)
        return self

    def text(self, text: str, content_type: str = TEXT_PLAIN) -> "ResponseBuilder":
        """Set a plain-text body."""
        self._body = text.encode("utf-8")
        self._headers["Content-Type"] = content_type
        return self

    def json(self, data: Any) -> "ResponseBuilder":
        """
        Set a compact JSON body.

        Raises whatever json.dumps raises (TypeError, ValueError) so the
        caller can decide how a serialization failure is reported.
        """
        self._body = json.dumps(data, separators=(",", ":")).encode("utf-8")
        self._headers["Content-Type"] = APPLICATION_JSON
        return self

    def build(self) -> HTTPResponse:
        return HTTPResponse(
            status=self._status,
            headers=dict(self._headers),
            body=self._body,
        )


def format_http_date(dt: datetime) -> str:
    """
    Format a datetime as an RFC 7231 HTTP-date.

    Example: "Sat, 18 Oct 2026 12:00:00 GMT". Always GMT.
    """
    days = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    months = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

    return (
        f"{days[dt.weekday()]}, "
        f"{dt.day:02d} {months[dt.month - 1]} {dt.year} "
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} GMT"
    )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def error_text(status: HTTPStatus, message: str = "") -> HTTPResponse:
    """
    An error response with a plain-text message.

    An empty message produces a response with no body and no
    Content-Type, only the status code.
    """
    builder = ResponseBuilder().status(status)
    if message:
        builder.text(message)
    return builder.build()


def bad_request(message: str = "Bad Request") -> HTTPResponse:
    """400 with a plain-text message."""
    return error_text(HTTPStatus.BAD_REQUEST, message)


def internal_error(message: str = "") -> HTTPResponse:
    """500 with a plain-text message, or no body when message is empty."""
    return error_text(HTTPStatus.INTERNAL_SERVER_ERROR, message)


def method_not_allowed(allowed_methods: list[str], message: Optional[str] = None) -> HTTPResponse:
    """405 with the Allow header listing the accepted methods."""
    response = error_text(HTTPStatus.METHOD_NOT_ALLOWED, message or "Method Not Allowed")
    response.headers["Allow"] = ", ".join(allowed_methods)
    return response
