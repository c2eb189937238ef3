"""
=============================================================================
ACCESS LOGGING MIDDLEWARE
=============================================================================

One log line per request on the "urlgateway.access" logger:

    text:  127.0.0.1 - - [18/Oct/2026:12:00:00 +0000] "POST /" 200 57 412.30ms urls=2
    json:  {"request_id": "3f2a9c1e", "method": "POST", "path": "/", ...}

Every response also gets an X-Request-ID header so a client reporting a
failed batch can point at the matching log line.

The access logger is separate from the module loggers so it can be
routed on its own:

    logging.getLogger("urlgateway.access").addHandler(file_handler)

=============================================================================
"""

import time
import json
import uuid
import logging
from typing import Optional
from dataclasses import dataclass, asdict

from .base import Middleware, NextHandler
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse


logger = logging.getLogger("urlgateway.access")


@dataclass
class RequestLog:
    """Structured access-log entry for one request."""

    request_id: str
    method: str
    path: str
    client_ip: str
    user_agent: str
    status_code: int
    content_length: int
    duration_ms: float
    timestamp: str
    url_count: Optional[int] = None

    def to_dict(self) -> dict:
        entry = asdict(self)
        entry["duration_ms"] = round(self.duration_ms, 2)
        return entry

    def to_text(self) -> str:
        """Apache-style line with the duration and URL count appended."""
        line = (
            f'{self.client_ip} - - [{self.timestamp}] '
            f'"{self.method} {self.path}" {self.status_code} '
            f'{self.content_length} {self.duration_ms:.2f}ms'
        )
        if self.url_count is not None:
            line += f" urls={self.url_count}"
        return line


class LoggingMiddleware(Middleware):
    """
    Request logging middleware. Add it first so it times everything.

    Args:
        log_format: "text" or "json".
        include_request_id: Add X-Request-ID to responses.
        log_level: Level for successful requests. 4xx are logged at
                   WARNING and 5xx at ERROR regardless.
    """

    def __init__(
        self,
        log_format: str = "text",
        include_request_id: bool = True,
        log_level: int = logging.INFO,
    ):
        self.log_format = log_format
        self.include_request_id = include_request_id
        self.log_level = log_level

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        try:
            response = next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"[{request_id}] Request failed: {request.method} {request.path} "
                f"- {type(e).__name__}: {e} ({duration_ms:.2f}ms)"
            )
            raise

        duration_ms = (time.time() - start_time) * 1000

        log_entry = RequestLog(
            request_id=request_id,
            method=request.method,
            path=request.path,
            client_ip=request.client_address[0],
            user_agent=request.user_agent or "-",
            status_code=int(response.status),
            content_length=len(response.body),
            duration_ms=duration_ms,
            timestamp=time.strftime("%d/%b/%Y:%H:%M:%S %z"),
            url_count=_url_count(response),
        )

        level = self.log_level
        if response.status >= 500:
            level = logging.ERROR
        elif response.status >= 400:
            level = max(level, logging.WARNING)

        if self.log_format == "json":
            logger.log(level, json.dumps(log_entry.to_dict()))
        else:
            logger.log(level, log_entry.to_text())

        if self.include_request_id:
            response.headers["X-Request-ID"] = request_id

        return response


def _url_count(response: HTTPResponse) -> Optional[int]:
    # Set by AggregateHandler on successful batches.
    value = response.headers.get("X-URL-Count")
    return int(value) if value is not None else None
