"""
API Middleware

- Request logging with a request id bound into structlog's context
- Per-client rate limiting of the tracking endpoints
- Security headers
"""

import asyncio
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Iterable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with timing; tracking calls log at debug level"""

    def __init__(self, app, quiet_prefixes: Iterable[str] = ("/api/analytics/track", "/metrics")):
        super().__init__(app)
        self.quiet_prefixes = tuple(quiet_prefixes)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        log = logger.debug if request.url.path.startswith(self.quiet_prefixes) else logger.info
        log(
            "Request started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

        log("Request completed", status_code=response.status_code, duration_ms=round(duration_ms, 2))

        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limiter keyed by client address.

    In-memory and per process; only paths under ``protected_prefix`` count.
    Windows of clients idle for a whole window are evicted.
    """

    def __init__(
        self,
        app,
        max_requests: int = 600,
        window_seconds: int = 60,
        protected_prefix: str = "/api/analytics",
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.protected_prefix = protected_prefix
        self.clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._last_eviction = clock()
        self._lock = asyncio.Lock()

    @property
    def tracked_clients(self) -> int:
        return len(self._requests)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith(self.protected_prefix):
            return await call_next(request)

        client_id = request.client.host if request.client else "unknown"
        now = self.clock()

        async with self._lock:
            if now - self._last_eviction >= self.window_seconds:
                self._evict_idle(now)

            window = self._requests.setdefault(client_id, deque())
            while window and now - window[0] >= self.window_seconds:
                window.popleft()

            if len(window) >= self.max_requests:
                logger.warning("Rate limit exceeded", client=client_id, requests=len(window))
                return Response(
                    content='{"success": false, "message": "Rate limit exceeded"}',
                    status_code=429,
                    media_type="application/json",
                    headers={
                        "Retry-After": str(self.window_seconds),
                        "X-RateLimit-Limit": str(self.max_requests),
                        "X-RateLimit-Remaining": "0",
                    },
                )

            window.append(now)
            remaining = self.max_requests - len(window)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def _evict_idle(self, now: float) -> None:
        idle = [
            client_id for client_id, window in self._requests.items()
            if not window or now - window[-1] >= self.window_seconds
        ]
        for client_id in idle:
            del self._requests[client_id]
        self._last_eviction = now
        if idle:
            logger.debug("Evicted idle rate limit windows", clients=len(idle))


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response
