"""
Capture Transport

Fire-and-forget delivery of envelopes to the ingestion API over httpx.
Every failure becomes a ClientTransportError that is logged and dropped;
tracking never raises into the host application and never retries.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import httpx
import structlog

from src.config import get_settings
from src.core import ClientTransportError

logger = structlog.get_logger(__name__)
settings = get_settings()


class HttpTransport:
    """
    Posts envelopes in background tasks.

    Args:
        base_url: Ingestion API root, e.g. ``http://localhost:8000/api``
        timeout: Per-request timeout in seconds
        client: Pre-built AsyncClient (tests pass one bound to the ASGI app)
        headers: Extra headers for every request
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url or settings.capture.base_url
        self.timeout = timeout or settings.capture.timeout_seconds
        self.headers = headers or {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.headers,
        )
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0

    def send(self, route: str, payload: Dict[str, Any]) -> asyncio.Task:
        """Schedule delivery and return immediately."""
        task = asyncio.create_task(self.deliver(route, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, route: str, payload: Dict[str, Any]) -> bool:
        """Deliver one envelope; returns False (after logging) on any failure."""
        try:
            response = await self._client.post(route, json=payload, headers=self.headers)
            if response.status_code >= 400:
                raise ClientTransportError(
                    f"{route} answered {response.status_code}",
                    {"status_code": response.status_code, "body": response.text[:200]},
                )
            return True
        except httpx.HTTPError as e:
            self._record_failure(ClientTransportError(str(e) or type(e).__name__, {"route": route}))
        except ClientTransportError as e:
            self._record_failure(e)
        return False

    def send_blocking(self, route: str, payload: Dict[str, Any]) -> bool:
        """Synchronous delivery for interpreter shutdown, when no loop is running."""
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, headers=self.headers) as client:
                response = client.post(route, json=payload)
            if response.status_code >= 400:
                raise ClientTransportError(f"{route} answered {response.status_code}")
            return True
        except httpx.HTTPError as e:
            self._record_failure(ClientTransportError(str(e) or type(e).__name__, {"route": route}))
        except ClientTransportError as e:
            self._record_failure(e)
        return False

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client:
            await self._client.aclose()

    def _record_failure(self, error: ClientTransportError) -> None:
        self.failures += 1
        logger.warning("Analytics delivery failed", error=error.message, **error.details)
