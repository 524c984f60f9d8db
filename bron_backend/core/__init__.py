"""Core module with logging, middleware, and exception handling."""

from bron_backend.core.exceptions import setup_exception_handlers
from bron_backend.core.logging import get_logger, setup_logging
from bron_backend.core.middleware import RequestContextMiddleware, RequestSizeLimitMiddleware

__all__ = [
    "get_logger",
    "setup_logging",
    "setup_exception_handlers",
    "RequestContextMiddleware",
    "RequestSizeLimitMiddleware",
]
