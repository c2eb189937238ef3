"""
Unit tests for the upstream fetcher.
"""

import socket
import threading
import time

import pytest
import requests

from urlgateway.upstream import (
    FetchError,
    ReadError,
    UpstreamClient,
    UpstreamError,
    fetch,
)


class FakeResponse:
    """Stands in for a streamed requests.Response."""

    def __init__(self, chunks, delay: float = 0.0, error: Exception = None):
        self.status_code = 200
        self._chunks = chunks
        self._delay = delay
        self._error = error
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if self._delay:
                time.sleep(self._delay)
            yield chunk
        if self._error is not None:
            raise self._error

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True


class FakeClient:
    def __init__(
        self,
        timeout: float,
        response: FakeResponse = None,
        error: Exception = None,
        delay: float = 0.0,
    ):
        self.timeout = timeout
        self._response = response
        self._error = error
        self._delay = delay

    def get(self, url):
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._response


@pytest.fixture
def slow_head_upstream():
    """
    A raw-socket upstream that sends its response head in four parts,
    0.35s apart, followed by an empty body.
    """
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    parts = [
        b"HTTP/1.1 200 OK\r\n",
        b"Content-Type: text/plain\r\n",
        b"Content-Length: 0\r\n",
        b"\r\n",
    ]

    def serve():
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        with conn:
            conn.recv(4096)
            try:
                for part in parts:
                    time.sleep(0.35)
                    conn.sendall(part)
            except OSError:
                pass  # client gave up

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()

    yield f"http://127.0.0.1:{listener.getsockname()[1]}/"

    listener.close()
    thread.join(timeout=3)


class TestFetch:
    """Tests for fetch() against a live stub upstream."""

    def test_fetch_body(self, upstream):
        with UpstreamClient(timeout=0.5) as client:
            assert fetch(client, upstream.url("/ok")) == b"A"
            assert fetch(client, upstream.url("/ok2")) == b"B"

    def test_status_code_is_ignored(self, upstream):
        """A 404 page is still a body."""
        upstream.route("/missing", b"no such page", status=404)

        with UpstreamClient(timeout=0.5) as client:
            assert fetch(client, upstream.url("/missing")) == b"no such page"

    def test_empty_body(self, upstream):
        upstream.route("/empty", b"")

        with UpstreamClient(timeout=0.5) as client:
            assert fetch(client, upstream.url("/empty")) == b""

    def test_slow_upstream_times_out(self, upstream):
        upstream.route("/slow", b"late", delay=1.0)
        url = upstream.url("/slow")

        with UpstreamClient(timeout=0.2) as client:
            with pytest.raises(FetchError) as exc_info:
                fetch(client, url)

        message = str(exc_info.value)
        assert message.startswith(f"getting {url} error: ")
        assert "timed out" in message.lower()

    def test_connection_refused(self, free_port):
        url = f"http://127.0.0.1:{free_port}/"

        with UpstreamClient(timeout=0.5) as client:
            with pytest.raises(FetchError) as exc_info:
                fetch(client, url)

        assert exc_info.value.url == url
        assert isinstance(exc_info.value.cause, requests.ConnectionError)

    def test_slow_response_head_hits_total_deadline(self, slow_head_upstream):
        """Every part of the head is on time, but the head as a whole is not."""
        with UpstreamClient(timeout=0.5) as client:
            with pytest.raises(FetchError) as exc_info:
                fetch(client, slow_head_upstream)

        assert "client timeout of 0.5s exceeded" in str(exc_info.value)
        assert str(exc_info.value).startswith(f"getting {slow_head_upstream} error: ")

    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com/file", ""])
    def test_malformed_url(self, url):
        with UpstreamClient(timeout=0.5) as client:
            with pytest.raises(FetchError):
                fetch(client, url)


class TestFetchErrors:
    """Error mapping, using fake clients."""

    def test_get_failure_is_fetch_error(self):
        client = FakeClient(0.5, error=requests.ConnectionError("refused"))

        with pytest.raises(FetchError) as exc_info:
            fetch(client, "http://a.test/ok")

        assert str(exc_info.value) == "getting http://a.test/ok error: refused"

    def test_body_failure_is_read_error(self):
        response = FakeResponse([b"par"], error=requests.exceptions.ChunkedEncodingError("cut"))
        client = FakeClient(0.5, response=response)

        with pytest.raises(ReadError) as exc_info:
            fetch(client, "http://a.test/ok")

        assert str(exc_info.value) == "reading http://a.test/ok response body error: cut"
        assert response.closed

    def test_trickling_body_hits_total_deadline(self):
        """Each chunk is on time, but the body as a whole is not."""
        response = FakeResponse([b"a", b"b", b"c", b"d"], delay=0.05)
        client = FakeClient(0.1, response=response)

        with pytest.raises(ReadError, match="client timeout of 0.1s exceeded"):
            fetch(client, "http://a.test/drip")

    def test_slow_get_hits_total_deadline(self):
        """An empty body does not let a late response head through."""
        client = FakeClient(0.1, response=FakeResponse([]), delay=0.15)

        with pytest.raises(FetchError, match="exceeded while awaiting headers"):
            fetch(client, "http://a.test/late")

    def test_errors_share_a_base_class(self):
        assert issubclass(FetchError, UpstreamError)
        assert issubclass(ReadError, UpstreamError)

    def test_chunks_are_joined(self):
        client = FakeClient(0.5, response=FakeResponse([b"he", b"llo"]))
        assert fetch(client, "http://a.test/ok") == b"hello"


class TestUpstreamClient:
    def test_redirect_limit(self):
        client = UpstreamClient(timeout=0.5)
        assert client._session.max_redirects == 10
        client.close()

    def test_uses_given_session(self):
        session = requests.Session()
        with UpstreamClient(timeout=1.0, session=session) as client:
            assert client._session is session
            assert client.timeout == 1.0
