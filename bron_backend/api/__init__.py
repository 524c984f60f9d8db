"""HTTP surface."""

from .health import router as health_router
from .router import router as api_router

__all__ = ["api_router", "health_router"]
