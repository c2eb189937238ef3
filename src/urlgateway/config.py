"""
=============================================================================
GATEWAY CONFIGURATION
=============================================================================

Every knob the gateway has lives in one dataclass, GatewayConfig, which
is handed to the server and the handler when they are constructed.
Nothing reads module-level constants at request time.

=============================================================================
THE FOUR TIMEOUT DOMAINS
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   connection_limit (100)      slot cap, not a timer: connection     │
    │                               #101 waits in the accept backlog      │
    │                                                                      │
    │   read_timeout (10s)          deadline for reading one request's    │
    │                               head AND body off the client socket   │
    │                                                                      │
    │   client_timeout (0.5s)       deadline for ONE upstream GET,        │
    │                               including reading its body            │
    │                                                                      │
    │   shutdown_grace_period (5s)  how long in-flight requests get       │
    │                               to finish after Ctrl+C                │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

They are independent. A request with 20 URLs may legitimately take
20 × 0.5s = 10s of upstream time; nothing chains the budgets.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    1. Command-line flags       python -m urlgateway --address :9000
    2. Environment variables    GATEWAY_PORT=9000 python -m urlgateway
    3. Defaults (this file)

=============================================================================
"""

import os
from dataclasses import dataclass
from typing import Tuple


DATA_ENCODINGS = ("text", "base64")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("text", "json")


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a listen address into (host, port).

    An empty host means all interfaces:

        >>> parse_address(":8080")
        ('', 8080)
        >>> parse_address("127.0.0.1:9000")
        ('127.0.0.1', 9000)

    Raises:
        ValueError: If there is no ":port" part or the port is not a number.
    """
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"Invalid address {address!r}: expected host:port")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address {address!r}") from None
    return host.strip("[]"), port_number


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class GatewayConfig:
    """
    Configuration for the URL gateway.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    LISTENER
    - host, port, backlog, connection_limit

    INBOUND REQUESTS
    - read_timeout, max_request_size, buffer_size, keep_alive

    AGGREGATION
    - max_url_count, client_timeout, parallel_fetch, fetch_workers,
      data_encoding, reject_non_post

    LIFECYCLE
    - shutdown_grace_period

    LOGGING
    - log_level, log_format

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # LISTENER
    # ─────────────────────────────────────────────────────────────────────

    host: str = ""
    """Interface to bind. "" binds all interfaces (the ":8080" form)."""

    port: int = 8080
    """TCP port. 0 lets the OS pick one (used by the test suite)."""

    backlog: int = 128
    """Kernel accept queue. Connections over connection_limit wait here."""

    connection_limit: int = 100
    """Maximum connections being served at once."""

    # ─────────────────────────────────────────────────────────────────────
    # INBOUND REQUESTS
    # ─────────────────────────────────────────────────────────────────────

    read_timeout: float = 10.0
    """Seconds allowed for reading a request's head and body."""

    max_request_size: int = 10 * 1024 * 1024
    """Upper bound on head + body bytes; larger requests get 413."""

    buffer_size: int = 8192
    """Bytes per recv() call."""

    keep_alive: bool = True
    """Serve several requests per connection when the client asks."""

    # ─────────────────────────────────────────────────────────────────────
    # AGGREGATION
    # ─────────────────────────────────────────────────────────────────────

    max_url_count: int = 20
    """Longest URL list a request may carry."""

    client_timeout: float = 0.5
    """Seconds allowed for one upstream GET, body included."""

    parallel_fetch: bool = False
    """Fetch a request's URLs concurrently instead of one after another."""

    fetch_workers: int = 4
    """Thread bound for parallel_fetch."""

    data_encoding: str = "text"
    """
    How upstream bodies appear in "Data".

    "text" decodes as UTF-8 and replaces invalid bytes with U+FFFD, so a
    binary body does not survive it. "base64" is the lossless mode.
    """

    reject_non_post: bool = False
    """Answer non-POST requests with 405 straight away instead of flagging them."""

    # ─────────────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────────────

    shutdown_grace_period: float = 5.0
    """Seconds in-flight requests get to finish during shutdown."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING / IDENTITY
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    log_format: str = "text"
    server_name: str = "url-gateway/1.0"

    @property
    def address(self) -> str:
        """Listen address in "host:port" form, e.g. ":8080"."""
        return f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """
        Build a configuration from GATEWAY_* environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        GATEWAY_HOST                   Bind host (default: all interfaces)
        GATEWAY_PORT                   Bind port (default: 8080)
        GATEWAY_READ_TIMEOUT           Inbound read deadline, seconds (10)
        GATEWAY_CONNECTION_LIMIT       Concurrent connections (100)
        GATEWAY_CLIENT_TIMEOUT         Upstream timeout, seconds (0.5)
        GATEWAY_MAX_URL_COUNT          URL list cap (20)
        GATEWAY_SHUTDOWN_GRACE_PERIOD  Shutdown deadline, seconds (5)
        GATEWAY_PARALLEL_FETCH         "true" to fetch concurrently
        GATEWAY_FETCH_WORKERS          Parallel fetch threads (4)
        GATEWAY_DATA_ENCODING          "text" or "base64"
        GATEWAY_REJECT_NON_POST        "true" for strict 405s
        GATEWAY_LOG_LEVEL              Logging level (INFO)
        GATEWAY_LOG_FORMAT             Access log format, "text" or "json"

        =====================================================================
        """
        defaults = cls()
        return cls(
            host=os.getenv("GATEWAY_HOST", defaults.host),
            port=int(os.getenv("GATEWAY_PORT", str(defaults.port))),
            read_timeout=float(os.getenv("GATEWAY_READ_TIMEOUT", str(defaults.read_timeout))),
            connection_limit=int(os.getenv("GATEWAY_CONNECTION_LIMIT", str(defaults.connection_limit))),
            client_timeout=float(os.getenv("GATEWAY_CLIENT_TIMEOUT", str(defaults.client_timeout))),
            max_url_count=int(os.getenv("GATEWAY_MAX_URL_COUNT", str(defaults.max_url_count))),
            shutdown_grace_period=float(
                os.getenv("GATEWAY_SHUTDOWN_GRACE_PERIOD", str(defaults.shutdown_grace_period))
            ),
            parallel_fetch=_env_bool("GATEWAY_PARALLEL_FETCH", defaults.parallel_fetch),
            fetch_workers=int(os.getenv("GATEWAY_FETCH_WORKERS", str(defaults.fetch_workers))),
            data_encoding=os.getenv("GATEWAY_DATA_ENCODING", defaults.data_encoding),
            reject_non_post=_env_bool("GATEWAY_REJECT_NON_POST", defaults.reject_non_post),
            log_level=os.getenv("GATEWAY_LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("GATEWAY_LOG_FORMAT", defaults.log_format),
        )

    def validate(self) -> None:
        """
        Check every value once, at startup.

        Raises:
            ValueError: On the first invalid setting.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.connection_limit < 1:
            raise ValueError("connection_limit must be >= 1")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        for name in ("read_timeout", "client_timeout", "shutdown_grace_period"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

        if self.max_url_count < 0:
            raise ValueError("max_url_count must be >= 0")

        if self.fetch_workers < 1:
            raise ValueError("fetch_workers must be >= 1")

        if self.buffer_size < 1024:
            raise ValueError("buffer_size must be >= 1024")

        if self.data_encoding not in DATA_ENCODINGS:
            raise ValueError(
                f"data_encoding must be one of {', '.join(DATA_ENCODINGS)}, "
                f"got {self.data_encoding!r}"
            )

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level}")

        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be 'text' or 'json', got {self.log_format!r}")
