"""
=============================================================================
URLGATEWAY - Batch URL Fetching over HTTP
=============================================================================

A small HTTP service: POST a JSON list of URLs, get back every URL's
body in one JSON array, or a single error if any of them fails.

    $ curl -d '{"urls": ["http://a.test/ok", "http://a.test/ok2"]}' localhost:8080
    [{"URL":"http://a.test/ok","Data":"A"},{"URL":"http://a.test/ok2","Data":"B"}]

=============================================================================
PROJECT OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                     │
    │   client ──► SocketServer ──► Connection ──► Middleware ──►         │
    │              (≤100 conns)     (10s read)     (access log)           │
    │                                                                     │
    │              ──► AggregateHandler ──► fetch() × N ──► upstreams     │
    │                  (≤20 urls)           (0.5s each)                   │
    │                                                                     │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    urlgateway/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m urlgateway)
    ├── server.py            # GatewayServer and lifecycle errors
    ├── config.py            # GatewayConfig dataclass
    ├── upstream.py          # Upstream GETs with the client timeout
    ├── core/                # Low-level components
    │   ├── socket_server.py # Listener with the connection cap
    │   └── connection.py    # Per-client reads under a deadline
    ├── http/                # HTTP protocol components
    │   ├── request.py       # Request head parsing
    │   ├── response.py      # Response building
    │   └── status_codes.py  # HTTP status enum
    ├── middleware/          # Middleware components
    │   ├── base.py          # Middleware ABC and pipeline
    │   └── logging.py       # Access logging
    └── handlers/
        └── aggregate.py     # POST / : fetch and aggregate

=============================================================================
QUICK START
=============================================================================

    from urlgateway import GatewayServer, GatewayConfig
    from urlgateway.middleware import LoggingMiddleware

    server = GatewayServer(GatewayConfig(port=8080, parallel_fetch=True))
    server.use(LoggingMiddleware())
    server.run()

=============================================================================
"""

__version__ = "1.0.0"

from .config import GatewayConfig
from .server import (
    BindError,
    GatewayError,
    GatewayServer,
    ServeError,
    ShutdownError,
    create_app,
)

__all__ = [
    "GatewayServer",
    "GatewayConfig",
    "GatewayError",
    "BindError",
    "ServeError",
    "ShutdownError",
    "create_app",
    "__version__",
]
