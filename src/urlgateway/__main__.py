"""
=============================================================================
URL GATEWAY CLI ENTRY POINT
=============================================================================

    # Run with defaults (all interfaces, port 8080)
    python -m urlgateway

    # Custom address
    python -m urlgateway --address 127.0.0.1:9000

    # Fetch each request's URLs concurrently, 8 at a time
    python -m urlgateway --parallel --workers 8

    # JSON access logs
    python -m urlgateway --log-format json

Every flag defaults to the matching GATEWAY_* environment variable, then
to the built-in default (see config.py).

=============================================================================
EXIT STATUS
=============================================================================

    0   clean shutdown after SIGINT / SIGTERM
    1   bind, serve or shutdown failure
    2   invalid configuration (argparse uses 2 for bad flags too)

=============================================================================
"""

import argparse
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import DATA_ENCODINGS, LOG_FORMATS, LOG_LEVELS, GatewayConfig, parse_address
from .server import GatewayError, create_app


logger = logging.getLogger("urlgateway")


def build_parser(defaults: GatewayConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="url-gateway",
        description="HTTP gateway that fetches a list of URLs and returns their bodies as JSON",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m urlgateway                           # Listen on :8080
  python -m urlgateway --address 127.0.0.1:9000  # Custom address
  python -m urlgateway --parallel --workers 8    # Concurrent fan-out
  python -m urlgateway --data-encoding base64    # Base64 "Data" fields
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--address", "-a",
        default=defaults.address,
        help=f"Listen address, host:port (default: {defaults.address!r}, empty host = all interfaces)"
    )

    parser.add_argument(
        "--connection-limit",
        type=int,
        default=defaults.connection_limit,
        help=f"Maximum concurrent connections (default: {defaults.connection_limit})"
    )

    # ─────────────────────────────────────────────────────────────────────
    # TIMEOUT ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--read-timeout",
        type=float,
        default=defaults.read_timeout,
        help=f"Seconds to read a request's head and body (default: {defaults.read_timeout})"
    )

    parser.add_argument(
        "--client-timeout",
        type=float,
        default=defaults.client_timeout,
        help=f"Seconds allowed per upstream fetch (default: {defaults.client_timeout})"
    )

    parser.add_argument(
        "--shutdown-grace",
        type=float,
        default=defaults.shutdown_grace_period,
        help=f"Seconds in-flight requests get on shutdown (default: {defaults.shutdown_grace_period})"
    )

    # ─────────────────────────────────────────────────────────────────────
    # AGGREGATION ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--max-urls",
        type=int,
        default=defaults.max_url_count,
        help=f"Maximum URLs per request (default: {defaults.max_url_count})"
    )

    parser.add_argument(
        "--parallel",
        action="store_true",
        default=defaults.parallel_fetch,
        help="Fetch a request's URLs concurrently"
    )

    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=defaults.fetch_workers,
        help=f"Threads per request for --parallel (default: {defaults.fetch_workers})"
    )

    parser.add_argument(
        "--data-encoding",
        choices=DATA_ENCODINGS,
        default=defaults.data_encoding,
        help=f"How upstream bodies appear in \"Data\" (default: {defaults.data_encoding})"
    )

    parser.add_argument(
        "--reject-non-post",
        action="store_true",
        default=defaults.reject_non_post,
        help="Answer non-POST requests with 405 without processing them"
    )

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING / META ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--log-level", "-l",
        type=str.upper,
        choices=LOG_LEVELS,
        default=defaults.log_level.upper(),
        help=f"Logging level (default: {defaults.log_level})"
    )

    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=defaults.log_format,
        help=f"Access log format (default: {defaults.log_format})"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"url-gateway {__version__}"
    )

    return parser


def config_from_args(args: argparse.Namespace) -> GatewayConfig:
    """
    Translate parsed flags into a GatewayConfig.

    Raises:
        ValueError: If the address is malformed.
    """
    host, port = parse_address(args.address)
    return GatewayConfig(
        host=host,
        port=port,
        read_timeout=args.read_timeout,
        connection_limit=args.connection_limit,
        client_timeout=args.client_timeout,
        max_url_count=args.max_urls,
        shutdown_grace_period=args.shutdown_grace,
        parallel_fetch=args.parallel,
        fetch_workers=args.workers,
        data_encoding=args.data_encoding,
        reject_non_post=args.reject_non_post,
        log_level=args.log_level,
        log_format=args.log_format,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parse flags, build the server and run it until it is stopped.

    Returns:
        The process exit status.
    """
    try:
        defaults = GatewayConfig.from_env()
    except ValueError as e:
        print(f"Invalid environment configuration: {e}", file=sys.stderr)
        return 2

    args = build_parser(defaults).parse_args(argv)

    try:
        config = config_from_args(args)
        server = create_app(config)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    try:
        server.run()
    except GatewayError as e:
        logger.critical(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
