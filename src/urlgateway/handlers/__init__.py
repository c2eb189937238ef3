"""
Request handlers.

    aggregate.py  POST / : fetch a list of URLs and return their bodies
"""

from .aggregate import (
    AggregateHandler,
    BadRequest,
    URLList,
    ServerResponseEntry,
)

__all__ = [
    "AggregateHandler",
    "BadRequest",
    "URLList",
    "ServerResponseEntry",
]
