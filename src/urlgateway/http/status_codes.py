"""
=============================================================================
HTTP STATUS CODES
=============================================================================

The status codes the gateway can put on the wire, with reason phrases.

The gateway speaks a deliberately small vocabulary:

    ┌────────┬───────────────────────────────────────────────────────────┐
    │  200   │ Every upstream fetched, aggregated JSON in the body      │
    ├────────┼───────────────────────────────────────────────────────────┤
    │  400   │ Body unreadable, not a URL list, or too many URLs        │
    │  405   │ Non-POST request (flagged, or rejected in strict mode)   │
    │  408   │ Client never finished sending the request head           │
    │  413   │ Request larger than max_request_size                     │
    ├────────┼───────────────────────────────────────────────────────────┤
    │  500   │ An upstream failed, or the response could not be built   │
    │  505   │ Client spoke something other than HTTP/1.0 or 1.1        │
    └────────┴───────────────────────────────────────────────────────────┘

Note that an upstream failure is reported as 500, not 502/504. The
gateway treats "one URL in the batch failed" as its own failure to
produce the batch.

=============================================================================
"""

from enum import IntEnum


class HTTPStatus(IntEnum):
    """
    HTTP status codes used by the gateway.

    IntEnum, so members compare equal to plain integers:

        >>> HTTPStatus.BAD_REQUEST == 400
        True
        >>> HTTPStatus.BAD_REQUEST.phrase
        'Bad Request'
    """

    OK = 200

    BAD_REQUEST = 400
    METHOD_NOT_ALLOWED = 405
    REQUEST_TIMEOUT = 408
    PAYLOAD_TOO_LARGE = 413

    INTERNAL_SERVER_ERROR = 500
    NOT_IMPLEMENTED = 501
    HTTP_VERSION_NOT_SUPPORTED = 505

    @property
    def phrase(self) -> str:
        """Reason phrase for the status line, e.g. "Bad Request"."""
        return _STATUS_PHRASES.get(self, "Unknown")


_STATUS_PHRASES = {
    HTTPStatus.OK: "OK",

    HTTPStatus.BAD_REQUEST: "Bad Request",
    HTTPStatus.METHOD_NOT_ALLOWED: "Method Not Allowed",
    HTTPStatus.REQUEST_TIMEOUT: "Request Timeout",
    HTTPStatus.PAYLOAD_TOO_LARGE: "Payload Too Large",

    HTTPStatus.INTERNAL_SERVER_ERROR: "Internal Server Error",
    HTTPStatus.NOT_IMPLEMENTED: "Not Implemented",
    HTTPStatus.HTTP_VERSION_NOT_SUPPORTED: "HTTP Version Not Supported",
}
