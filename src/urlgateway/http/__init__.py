"""
HTTP/1.1 protocol pieces for the gateway's built-in server.

    request.py       Request-head parsing (HTTPRequest, RequestParser)
    response.py      Response building and serialization
    status_codes.py  The status codes the gateway emits
"""

from .request import HTTPRequest, RequestParser, HTTPParseError
from .response import (
    HTTPResponse,
    ResponseBuilder,
    error_text,
    bad_request,
    internal_error,
    method_not_allowed,
    TEXT_PLAIN,
    APPLICATION_JSON,
)
from .status_codes import HTTPStatus

__all__ = [
    "HTTPRequest",
    "RequestParser",
    "HTTPParseError",
    "HTTPResponse",
    "ResponseBuilder",
    "HTTPStatus",
    "error_text",
    "bad_request",
    "internal_error",
    "method_not_allowed",
    "TEXT_PLAIN",
    "APPLICATION_JSON",
]
