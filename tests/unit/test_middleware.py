"""
Unit Tests - Rate Limiting Middleware
"""
from fastapi import Request, Response

from src.serving.api.middleware import RateLimitMiddleware


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def tracking_request(host: str, path: str = "/api/analytics/track-event") -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "path": path,
        "query_string": b"",
        "headers": [],
        "client": (host, 5000),
    })


async def ok(request: Request) -> Response:
    return Response("ok")


class TestRateLimitMiddleware:
    """Tests for the sliding-window limiter"""

    async def test_limit_per_client(self):
        limiter = RateLimitMiddleware(app=None, max_requests=2, window_seconds=60, clock=FakeClock())

        statuses = [(await limiter.dispatch(tracking_request("10.0.0.1"), ok)).status_code for _ in range(3)]
        other = await limiter.dispatch(tracking_request("10.0.0.2"), ok)

        assert statuses == [200, 200, 429]
        assert other.status_code == 200
        assert other.headers["X-RateLimit-Remaining"] == "1"

    async def test_unprotected_paths_not_tracked(self):
        limiter = RateLimitMiddleware(app=None, max_requests=1, clock=FakeClock())

        await limiter.dispatch(tracking_request("10.0.0.1", path="/api/v1/health"), ok)

        assert limiter.tracked_clients == 0

    async def test_idle_clients_evicted(self):
        clock = FakeClock()
        limiter = RateLimitMiddleware(app=None, max_requests=5, window_seconds=60, clock=clock)
        for n in range(50):
            await limiter.dispatch(tracking_request(f"10.0.1.{n}"), ok)
        assert limiter.tracked_clients == 50

        clock.now += 61
        await limiter.dispatch(tracking_request("10.0.0.9"), ok)

        assert limiter.tracked_clients == 1

    async def test_active_client_kept(self):
        clock = FakeClock()
        limiter = RateLimitMiddleware(app=None, max_requests=5, window_seconds=60, clock=clock)
        await limiter.dispatch(tracking_request("10.0.0.1"), ok)
        clock.now += 30
        await limiter.dispatch(tracking_request("10.0.0.2"), ok)

        clock.now += 31
        await limiter.dispatch(tracking_request("10.0.0.3"), ok)

        assert limiter.tracked_clients == 2
