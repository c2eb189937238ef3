"""
Middleware for the gateway's request pipeline.

    base.py     Middleware ABC and MiddlewarePipeline
    logging.py  Access logging with request IDs
"""

from .base import Middleware, MiddlewarePipeline, NextHandler
from .logging import LoggingMiddleware, RequestLog

__all__ = [
    "Middleware",
    "MiddlewarePipeline",
    "NextHandler",
    "LoggingMiddleware",
    "RequestLog",
]
