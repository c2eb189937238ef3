"""
=============================================================================
AGGREGATE HANDLER
=============================================================================

The gateway's one endpoint: take a list of URLs, fetch them all, return
their bodies as one JSON array.

    POST /
    {"urls": ["http://a.test/ok", "http://a.test/ok2"]}

    200 OK
    [{"URL":"http://a.test/ok","Data":"A"},{"URL":"http://a.test/ok2","Data":"B"}]

=============================================================================
REQUEST FLOW
=============================================================================

    ┌───────────────┐  not POST   flag 405 (or reject, if strict)
    │ method check  │────────────────────────────────┐
    └──────┬────────┘                                │ (lenient: carry on)
           ▼                                         ▼
    ┌───────────────┐  unreadable   400 "Invalid body"
    │  body read    │──────────────────────────────────►
    └──────┬────────┘
           ▼
    ┌───────────────┐  bad JSON     400 "Error marshalling body"
    │    parse      │──────────────────────────────────►
    └──────┬────────┘
           ▼
    ┌───────────────┐  > 20 URLs    400 "Total urls count limited to 20."
    │   validate    │──────────────────────────────────►
    └──────┬────────┘
           ▼
    ┌───────────────┐  any failure  500 "<error naming the URL>"
    │   fan-out     │──────────────────────────────────►   (no partial data)
    └──────┬────────┘
           ▼
    ┌───────────────┐  marshal err  500, empty body
    │   assemble    │──────────────────────────────────►
    └──────┬────────┘
           ▼
        200 JSON

All or nothing: the first upstream failure throws away everything
fetched so far.

=============================================================================
"""

import base64
import json
import logging
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..config import GatewayConfig
from ..http.request import HTTPRequest
from ..http.response import (
    HTTPResponse,
    ResponseBuilder,
    bad_request,
    internal_error,
    method_not_allowed,
)
from ..http.status_codes import HTTPStatus
from ..upstream import UpstreamClient, UpstreamError, fetch


logger = logging.getLogger(__name__)


URLS_FIELD = "urls"

INVALID_BODY = "Invalid body"
ERROR_MARSHALLING_BODY = "Error marshalling body"


class BadRequest(Exception):
    """The client sent something the gateway cannot work with (400)."""


@dataclass
class URLList:
    """The request payload: an ordered list of URL strings."""

    urls: List[str]

    def __len__(self) -> int:
        return len(self.urls)

    @classmethod
    def from_json(cls, body: bytes) -> "URLList":
        """
        Decode a request body.

        Decoding is forgiving about absence and strict about shape:

            {"urls": [...]}       → the list
            {} / {"urls": null}   → empty list
            null                  → empty list
            {"URLS": [...]}       → the list (key match ignores case)
            {"urls": "x"}         → BadRequest
            [...]                 → BadRequest
            not JSON              → BadRequest

        Raises:
            BadRequest: With "Error marshalling body".
        """
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise BadRequest(ERROR_MARSHALLING_BODY) from e

        if payload is None:
            return cls(urls=[])
        if not isinstance(payload, dict):
            raise BadRequest(ERROR_MARSHALLING_BODY)

        urls = _lookup_field(payload, URLS_FIELD)
        if urls is None:
            return cls(urls=[])
        if not isinstance(urls, list) or not all(isinstance(url, str) for url in urls):
            raise BadRequest(ERROR_MARSHALLING_BODY)

        return cls(urls=urls)


def _lookup_field(payload: dict, name: str) -> Any:
    if name in payload:
        return payload[name]
    for key, value in payload.items():
        if key.lower() == name:
            return value
    return None


@dataclass
class ServerResponseEntry:
    """One fetched URL and the body it returned."""

    url: str
    data: bytes

    def to_dict(self, encoding: str = "text") -> dict:
        """Text mode is lossy for non-UTF-8 bodies; base64 keeps every byte."""
        if encoding == "base64":
            data = base64.b64encode(self.data).decode("ascii")
        else:
            data = self.data.decode("utf-8", errors="replace")
        return {"URL": self.url, "Data": data}


ClientFactory = Callable[[], UpstreamClient]


class AggregateHandler:
    """
    Handles POST / by fetching every listed URL.

    Usage:
        handler = AggregateHandler(GatewayConfig())
        response = handler(request)

    Args:
        config: Gateway configuration (URL cap, client timeout, ...).
        client_factory: Builds a fresh UpstreamClient. Defaults to one
                        with config.client_timeout.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or GatewayConfig()
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> UpstreamClient:
        return UpstreamClient(timeout=self.config.client_timeout)

    def __call__(self, request: HTTPRequest) -> HTTPResponse:
        return self.handle(request)

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        """
        Run the request through the full flow and build the response.

        A non-POST request is flagged with 405. In lenient mode (the
        default) processing carries on and the 405 stays on whatever
        response the flow produces, because it was set first.
        """
        non_post = request.method != "POST"
        if non_post:
            logger.warning(f"Method not allowed: {request.method} {request.path}")
            if self.config.reject_non_post:
                return method_not_allowed(["POST"])

        response = self._process(request)

        if non_post:
            response.status = HTTPStatus.METHOD_NOT_ALLOWED
        return response

    def _process(self, request: HTTPRequest) -> HTTPResponse:
        try:
            url_list = self._read_url_list(request)
        except BadRequest as e:
            return bad_request(str(e))

        try:
            entries = self.fetch_all(url_list.urls)
        except UpstreamError as e:
            logger.error(str(e))
            return internal_error(str(e))

        return self._assemble(entries)

    def _read_url_list(self, request: HTTPRequest) -> URLList:
        if request.body_error is not None:
            logger.error(f"reading body error: {request.body_error}")
            raise BadRequest(INVALID_BODY)

        try:
            url_list = URLList.from_json(request.body)
        except BadRequest as e:
            logger.error(f"marshalling body error: {e.__cause__ or e}")
            raise

        limit = self.config.max_url_count
        if len(url_list) > limit:
            logger.error(f"Too many urls error: got {len(url_list)}, limit {limit}")
            raise BadRequest(f"Total urls count limited to {limit}.")

        return url_list

    def _assemble(self, entries: List[ServerResponseEntry]) -> HTTPResponse:
        encoding = self.config.data_encoding
        try:
            response = (ResponseBuilder()
                .status(HTTPStatus.OK)
                .json([entry.to_dict(encoding) for entry in entries])
                .build())
        except (TypeError, ValueError) as e:
            logger.error(f"marshalling response error: {e}")
            return internal_error()

        response.headers["X-URL-Count"] = str(len(entries))
        return response

    # =========================================================================
    # FAN-OUT
    # =========================================================================

    def fetch_all(self, urls: List[str]) -> List[ServerResponseEntry]:
        """
        Fetch every URL, returning entries in input order.

        Raises:
            UpstreamError: The first failure, in list order. No entries
                           are returned when anything fails.
        """
        if not urls:
            return []
        if self.config.parallel_fetch and len(urls) > 1:
            return self._fetch_parallel(urls)
        return self._fetch_sequential(urls)

    def _fetch_sequential(self, urls: List[str]) -> List[ServerResponseEntry]:
        entries = []
        with self._client_factory() as client:
            for url in urls:
                entries.append(ServerResponseEntry(url=url, data=fetch(client, url)))
        return entries

    def _fetch_parallel(self, urls: List[str]) -> List[ServerResponseEntry]:
        """
        Fetch on a bounded thread pool, one client per URL.

        Futures are collected in list order, so the reported failure is
        the same one the sequential loop would have hit first.
        """
        workers = min(self.config.fetch_workers, len(urls))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch")
        futures: List[Future] = [executor.submit(self._fetch_one, url) for url in urls]

        try:
            entries = [
                ServerResponseEntry(url=url, data=future.result())
                for url, future in zip(urls, futures)
            ]
        except UpstreamError:
            executor.shutdown(wait=False, cancel_futures=True)
            raise

        executor.shutdown(wait=True)
        return entries

    def _fetch_one(self, url: str) -> bytes:
        with self._client_factory() as client:
            return fetch(client, url)
