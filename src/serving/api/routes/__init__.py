"""
API Routes Module
"""
from .health import router as health_router
from .reporting import router as reporting_router
from .tracking import router as tracking_router

__all__ = [
    "health_router",
    "reporting_router",
    "tracking_router",
]
