"""
Serving Module
"""
from .cache import init_redis, close_redis, get_redis, redis_available, reporting_cache

__all__ = [
    "init_redis",
    "close_redis",
    "get_redis",
    "redis_available",
    "reporting_cache",
]
