"""
=============================================================================
UPSTREAM FETCHER
=============================================================================

One GET against one upstream URL, with a hard time budget.

    fetch(client, url)
        │
        ├──► client.get(url)           connect + response head
        │       └── failure ─────────► FetchError  "getting <url> error: ..."
        │
        ├──► read body in chunks       until EOF or the deadline
        │       └── failure ─────────► ReadError   "reading <url> response
        │                                           body error: ..."
        │
        └──► bytes

The status code is not looked at. A 404 page with a readable body is a
successful fetch as far as this layer is concerned; the caller gets the
404 page's bytes.

=============================================================================
TIMEOUTS
=============================================================================

requests applies its timeout per socket operation, so an upstream that
trickles one byte every 400ms would never trip a 500ms timeout. The
client therefore also enforces a TOTAL deadline, measured from the start
of the call. It is checked once the response head is in, after every
body chunk, and again at the end of the body.

=============================================================================
"""

import logging
import time
from typing import Optional

import requests


logger = logging.getLogger(__name__)


MAX_REDIRECTS = 10
CHUNK_SIZE = 8192


class UpstreamError(Exception):
    """An upstream URL could not be fetched. Aborts the whole batch."""

    action = "fetching"

    def __init__(self, url: str, cause: object):
        self.url = url
        self.cause = cause
        super().__init__(self._format(url, cause))

    def _format(self, url: str, cause: object) -> str:
        return f"{self.action} {url} error: {cause}"


class FetchError(UpstreamError):
    """The GET itself failed: bad URL, connection refused, timeout..."""

    action = "getting"


class ReadError(UpstreamError):
    """The response started but its body could not be read to the end."""

    def _format(self, url: str, cause: object) -> str:
        return f"reading {url} response body error: {cause}"


class UpstreamClient:
    """
    An HTTP client with a fixed timeout, backed by a requests.Session.

    One client is created per inbound request (or per URL in parallel
    mode) and closed when the request is done:

        with UpstreamClient(timeout=0.5) as client:
            body = fetch(client, "http://a.test/ok")
    """

    def __init__(self, timeout: float, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = MAX_REDIRECTS

    def get(self, url: str) -> requests.Response:
        """Send a GET and return once the response head has arrived."""
        return self._session.get(url, timeout=self.timeout, stream=True)

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "UpstreamClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def fetch(client: UpstreamClient, url: str) -> bytes:
    """
    GET `url` and return the full response body.

    Args:
        client: Client carrying the timeout.
        url: Target URL. Not validated; a malformed URL is a FetchError.

    Returns:
        The raw body bytes, whatever the status code.

    Raises:
        FetchError: If the request could not be sent or got no response.
        ReadError: If the body could not be read completely in time.
    """
    deadline = time.monotonic() + client.timeout

    try:
        response = client.get(url)
    except (requests.RequestException, ValueError) as e:
        raise FetchError(url, e) from e

    with response:
        if time.monotonic() > deadline:
            raise FetchError(
                url,
                f"client timeout of {client.timeout}s exceeded while awaiting headers",
            )

        logger.debug(f"GET {url} -> {response.status_code}")
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise ReadError(
                        url,
                        f"client timeout of {client.timeout}s exceeded while reading body",
                    )
        except requests.RequestException as e:
            raise ReadError(url, e) from e

    if time.monotonic() > deadline:
        raise ReadError(
            url,
            f"client timeout of {client.timeout}s exceeded while reading body",
        )

    return b"".join(chunks)
