"""Middleware package for MODIVIS."""

from modivis.middleware.logging import RequestLoggingMiddleware, setup_logging

__all__ = [
    "RequestLoggingMiddleware",
    "setup_logging",
]
