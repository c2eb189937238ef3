"""
Networking core: the listener and per-client connections.
"""

from .connection import BodyReadError, Connection, ConnectionState
from .socket_server import SocketServer

__all__ = [
    "BodyReadError",
    "Connection",
    "ConnectionState",
    "SocketServer",
]
