"""
End-to-end tests: a real gateway on an ephemeral port, a stub upstream,
and requests / raw sockets as the client.
"""

import json
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from urlgateway import (
    BindError,
    GatewayConfig,
    GatewayServer,
    ServeError,
    ShutdownError,
    create_app,
)


def raw_exchange(
    server: GatewayServer,
    payload: bytes,
    half_close: bool = False,
    timeout: float = 5.0,
) -> bytes:
    """Send raw bytes and read until the gateway closes the connection."""
    with socket.create_connection(server.address, timeout=timeout) as sock:
        sock.sendall(payload)
        if half_close:
            sock.shutdown(socket.SHUT_WR)
        chunks = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


class TestAggregation:
    """The gateway's one endpoint, over real HTTP."""

    def test_two_urls(self, gateway, upstream, url_for):
        urls = [upstream.url("/ok"), upstream.url("/ok2")]

        response = requests.post(url_for(gateway), json={"urls": urls}, timeout=5)

        assert response.status_code == 200
        assert response.headers["Content-Type"] == "application/json"
        assert response.content == (
            f'[{{"URL":"{urls[0]}","Data":"A"}},{{"URL":"{urls[1]}","Data":"B"}}]'
        ).encode()

    def test_too_many_urls(self, gateway, upstream, url_for):
        urls = [upstream.url("/ok")] * 21

        response = requests.post(url_for(gateway), json={"urls": urls}, timeout=5)

        assert response.status_code == 400
        assert response.text == "Total urls count limited to 20."
        assert upstream.call_count == 0

    def test_second_url_times_out(self, gateway, upstream, url_for):
        upstream.route("/slow", b"too late", delay=1.5)
        urls = [upstream.url("/ok"), upstream.url("/slow")]

        response = requests.post(url_for(gateway), json={"urls": urls}, timeout=5)

        assert response.status_code == 500
        assert urls[1] in response.text
        assert "timed out" in response.text.lower()
        assert '"Data"' not in response.text
        assert upstream.requests == ["/ok", "/slow"]

    def test_invalid_json(self, gateway, upstream, url_for):
        response = requests.post(url_for(gateway), data=b"{nope", timeout=5)

        assert response.status_code == 400
        assert response.text == "Error marshalling body"
        assert upstream.call_count == 0

    def test_empty_body(self, gateway, url_for):
        response = requests.post(url_for(gateway), data=b"{}", timeout=5)

        assert response.status_code == 200
        assert response.json() == []

    def test_upstream_refused(self, gateway, free_port, url_for):
        url = f"http://127.0.0.1:{free_port}/gone"

        response = requests.post(url_for(gateway), json={"urls": [url]}, timeout=5)

        assert response.status_code == 500
        assert response.text.startswith(f"getting {url} error: ")

    def test_chunked_request_body(self, gateway, upstream, url_for):
        payload = json.dumps({"urls": [upstream.url("/ok")]}).encode()

        def body():
            yield payload[:10]
            yield payload[10:]

        response = requests.post(url_for(gateway), data=body(), timeout=5)

        assert response.status_code == 200
        assert response.json() == [{"URL": upstream.url("/ok"), "Data": "A"}]

    def test_any_path_is_served(self, gateway, upstream, url_for):
        response = requests.post(
            url_for(gateway, "/some/other/path"),
            json={"urls": [upstream.url("/ok")]},
            timeout=5,
        )
        assert response.status_code == 200

    def test_concurrent_requests_are_isolated(self, gateway, upstream, url_for):
        upstream.route("/x", b"X", delay=0.2)
        upstream.route("/y", b"Y", delay=0.2)
        batches = {
            "x": [upstream.url("/x"), upstream.url("/ok")],
            "y": [upstream.url("/y"), upstream.url("/ok2")],
        }

        def post(urls):
            return requests.post(url_for(gateway), json={"urls": urls}, timeout=5).json()

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = {name: pool.submit(post, urls) for name, urls in batches.items()}
            results = {name: future.result() for name, future in futures.items()}

        assert results["x"] == [
            {"URL": batches["x"][0], "Data": "X"},
            {"URL": batches["x"][1], "Data": "A"},
        ]
        assert results["y"] == [
            {"URL": batches["y"][0], "Data": "Y"},
            {"URL": batches["y"][1], "Data": "B"},
        ]

    def test_parallel_mode(self, make_gateway, upstream, url_for):
        server = make_gateway(parallel_fetch=True, fetch_workers=4)
        upstream.route("/slow1", b"1", delay=0.3)
        upstream.route("/slow2", b"2", delay=0.3)
        urls = [upstream.url("/slow1"), upstream.url("/slow2"), upstream.url("/ok")]

        start = time.monotonic()
        response = requests.post(url_for(server), json={"urls": urls}, timeout=5)
        elapsed = time.monotonic() - start

        assert [entry["Data"] for entry in response.json()] == ["1", "2", "A"]
        assert elapsed < 0.55


class TestMethods:
    def test_get_is_flagged_405(self, gateway, upstream, url_for):
        response = requests.get(url_for(gateway), json={"urls": [upstream.url("/ok")]}, timeout=5)

        assert response.status_code == 405
        assert response.json() == [{"URL": upstream.url("/ok"), "Data": "A"}]

    def test_head_has_no_body(self, gateway, url_for):
        response = requests.head(url_for(gateway), timeout=5)

        assert response.status_code == 405
        assert response.content == b""

    def test_strict_mode(self, make_gateway, upstream, url_for):
        server = make_gateway(reject_non_post=True)

        response = requests.get(url_for(server), json={"urls": [upstream.url("/ok")]}, timeout=5)

        assert response.status_code == 405
        assert response.headers["Allow"] == "POST"
        assert upstream.call_count == 0


class TestProtocol:
    """Connection-level behavior, driven over raw sockets."""

    def test_keep_alive(self, gateway, upstream, url_for):
        with requests.Session() as session:
            first = session.post(url_for(gateway), json={"urls": [upstream.url("/ok")]}, timeout=5)
            second = session.post(url_for(gateway), json={"urls": [upstream.url("/ok2")]}, timeout=5)

        assert first.headers["Connection"] == "keep-alive"
        assert first.json()[0]["Data"] == "A"
        assert second.json()[0]["Data"] == "B"

    def test_connection_close(self, gateway):
        body = b'{"urls": []}'
        payload = (
            b"POST / HTTP/1.1\r\nHost: test\r\nConnection: close\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode()
            + body
        )
        reply = raw_exchange(gateway, payload)

        assert reply.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"Connection: close\r\n" in reply
        assert reply.endswith(b"\r\n\r\n[]")

    def test_malformed_request_line(self, gateway):
        reply = raw_exchange(gateway, b"GARBAGE\r\n\r\n")
        assert reply.startswith(b"HTTP/1.1 400 Bad Request\r\n")

    def test_unknown_method(self, gateway):
        reply = raw_exchange(gateway, b"BREW / HTTP/1.1\r\n\r\n")
        assert reply.startswith(b"HTTP/1.1 405 ")

    def test_unsupported_version(self, gateway):
        reply = raw_exchange(gateway, b"POST / HTTP/2.0\r\n\r\n")
        assert reply.startswith(b"HTTP/1.1 505 ")

    def test_head_read_timeout(self, make_gateway):
        server = make_gateway(read_timeout=0.3)

        reply = raw_exchange(server, b"POST / HTTP/1.1\r\nHost: te")

        assert reply.startswith(b"HTTP/1.1 408 Request Timeout\r\n")

    def test_silent_connection_closed_without_reply(self, make_gateway):
        server = make_gateway(read_timeout=0.3)

        reply = raw_exchange(server, b"")

        assert reply == b""

    def test_body_read_timeout(self, make_gateway):
        server = make_gateway(read_timeout=0.3)
        payload = b'POST / HTTP/1.1\r\nContent-Length: 50\r\n\r\n{"urls": ['

        reply = raw_exchange(server, payload)

        assert reply.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        assert reply.endswith(b"\r\n\r\nInvalid body")

    def test_truncated_body(self, gateway):
        reply = raw_exchange(
            gateway,
            b'POST / HTTP/1.1\r\nContent-Length: 50\r\n\r\n{"urls"',
            half_close=True,
        )

        assert reply.startswith(b"HTTP/1.1 400 ")
        assert reply.endswith(b"Invalid body")

    def test_expect_continue(self, gateway):
        body = b'{"urls": []}'
        with socket.create_connection(gateway.address, timeout=5) as sock:
            sock.sendall(
                b"POST / HTTP/1.1\r\nExpect: 100-continue\r\nConnection: close\r\n"
                + f"Content-Length: {len(body)}\r\n\r\n".encode()
            )
            assert sock.recv(1024) == b"HTTP/1.1 100 Continue\r\n\r\n"
            sock.sendall(body)
            reply = sock.recv(4096)

        assert reply.startswith(b"HTTP/1.1 200 OK\r\n")


class TestConnectionLimit:
    def test_second_client_waits_for_a_slot(self, make_gateway):
        server = make_gateway(connection_limit=1)
        body = b'{"urls": []}'
        request = (
            b"POST / HTTP/1.1\r\nConnection: close\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode()
            + body
        )

        holder = socket.create_connection(server.address, timeout=5)
        time.sleep(0.2)  # let the gateway accept it

        waiter = socket.create_connection(server.address, timeout=5)
        try:
            waiter.sendall(request)
            waiter.settimeout(0.5)
            with pytest.raises(socket.timeout):
                waiter.recv(1024)

            holder.close()

            waiter.settimeout(5)
            assert waiter.recv(4096).startswith(b"HTTP/1.1 200 OK")
        finally:
            waiter.close()
            holder.close()


class TestLifecycle:
    def test_bind_conflict(self, gateway):
        host, port = gateway.address
        other = GatewayServer(GatewayConfig(host=host, port=port, log_level="WARNING"))

        with pytest.raises(BindError, match=str(port)):
            other.start()

        assert not other.is_running

    def test_invalid_config_fails_fast(self):
        with pytest.raises(ValueError):
            GatewayServer(GatewayConfig(connection_limit=0))

    def test_address_reports_ephemeral_port(self, gateway):
        host, port = gateway.address
        assert host == "127.0.0.1"
        assert port != 0

    def test_shutdown_closes_idle_connections(self, make_gateway, upstream, url_for):
        server = make_gateway()
        idle = socket.create_connection(server.address, timeout=5)

        with requests.Session() as session:
            session.post(url_for(server), json={"urls": [upstream.url("/ok")]}, timeout=5)
            time.sleep(0.2)

            start = time.monotonic()
            server.shutdown(grace_period=3.0)
            elapsed = time.monotonic() - start

        assert elapsed < 2.0
        assert server.active_connections == 0
        assert not server.is_running
        idle.close()

        with pytest.raises(requests.ConnectionError):
            requests.post(url_for(server), data=b"{}", timeout=1)

    def test_shutdown_waits_for_in_flight_request(self, make_gateway, upstream, url_for):
        server = make_gateway(client_timeout=3.0)
        upstream.route("/slow", b"done", delay=0.5)
        results = []

        def post():
            response = requests.post(url_for(server), json={"urls": [upstream.url("/slow")]}, timeout=5)
            results.append(response)

        client = threading.Thread(target=post)
        client.start()
        while upstream.call_count == 0:
            time.sleep(0.01)

        server.shutdown(grace_period=3.0)
        client.join(timeout=5)

        assert results[0].status_code == 200
        assert results[0].headers["Connection"] == "close"
        assert results[0].json()[0]["Data"] == "done"

    def test_shutdown_grace_exceeded(self, make_gateway, upstream, url_for):
        server = make_gateway(client_timeout=3.0)
        upstream.route("/slower", b"late", delay=1.5)

        client = threading.Thread(
            target=requests.post,
            args=(url_for(server),),
            kwargs={"json": {"urls": [upstream.url("/slower")]}, "timeout": 5},
        )
        client.start()
        while upstream.call_count == 0:
            time.sleep(0.01)

        with pytest.raises(ShutdownError, match="still active"):
            server.shutdown(grace_period=0.3)

        client.join(timeout=5)

    def test_run_until_stopped(self):
        server = GatewayServer(GatewayConfig(host="127.0.0.1", port=0, log_level="WARNING"))
        errors = []

        def run():
            try:
                server.run()
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=run)
        thread.start()
        while not server.is_running:
            time.sleep(0.01)

        server.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert errors == []
        assert not server.is_running

    def test_serve_failure_is_fatal(self, monkeypatch):
        server = GatewayServer(GatewayConfig(host="127.0.0.1", port=0, log_level="WARNING"))

        def broken_serve(handler):
            raise OSError("accept exploded")

        monkeypatch.setattr(server._socket_server, "serve", broken_serve)

        with pytest.raises(ServeError, match="accept exploded"):
            server.run()

    def test_create_app_adds_access_logging(self, upstream):
        server = create_app(GatewayConfig(host="127.0.0.1", port=0, log_level="WARNING"))
        server.start()
        try:
            host, port = server.address
            response = requests.post(
                f"http://{host}:{port}/",
                json={"urls": [upstream.url("/ok")]},
                timeout=5,
            )
        finally:
            server.shutdown(grace_period=2.0)

        assert response.status_code == 200
        assert len(response.headers["X-Request-ID"]) == 8
