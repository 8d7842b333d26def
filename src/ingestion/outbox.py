"""
Ingestion Outbox

Holds envelopes whose raw-event write failed (database down, pool
exhausted) and retries them in the background with exponential backoff.
The queue is bounded: when it is full the envelope is dropped, logged and
counted, and the request still succeeds.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from src.config import get_settings
from src.core import PersistenceError
from src.database.models import RawEvent

from .metrics import EVENTS_DROPPED, EVENTS_QUEUED, OUTBOX_DEPTH

logger = structlog.get_logger(__name__)
settings = get_settings()

Handler = Callable[[RawEvent], Awaitable[object]]


class IngestionOutbox:
    """
    Bounded in-process retry queue for raw events.

    Args:
        max_size: Queue capacity
        initial_backoff: First delay after a failed flush, in seconds
        max_backoff: Delay ceiling, in seconds
    """

    def __init__(
        self,
        max_size: Optional[int] = None,
        initial_backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
    ):
        self.max_size = max_size or settings.ingestion.outbox_max_size
        self.initial_backoff = initial_backoff or settings.ingestion.outbox_backoff_initial_seconds
        self.max_backoff = max_backoff or settings.ingestion.outbox_backoff_max_seconds
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_size)
        self._task: Optional[asyncio.Task] = None

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def put(self, event: RawEvent) -> bool:
        """
        Park an envelope.

        Returns:
            bool: False when the outbox was full and the envelope was dropped
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            EVENTS_DROPPED.inc()
            logger.error(
                "Outbox full, dropping envelope",
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                event_id=event.event_id,
                capacity=self.max_size,
            )
            return False

        EVENTS_QUEUED.inc()
        OUTBOX_DEPTH.set(self._queue.qsize())
        logger.warning("Envelope parked in outbox", event_type=event.event_type, depth=self._queue.qsize())
        return True

    def start(self, handler: Handler) -> None:
        """Start the background flush loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(handler))
            logger.info("Outbox worker started", capacity=self.max_size)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.depth:
            logger.warning("Outbox stopped with envelopes pending", depth=self.depth)

    async def flush(self, handler: Handler) -> int:
        """
        Deliver queued envelopes until the queue is empty or a write fails.

        Returns:
            int: Envelopes delivered
        """
        delivered = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await handler(event)
            except PersistenceError:
                # Head of line goes back; order within the outbox is best effort
                try:
                    self._queue.put_nowait(event)
                except asyncio.QueueFull:
                    EVENTS_DROPPED.inc()
                    logger.error(
                        "Outbox refilled during flush, dropping envelope",
                        tenant_id=event.tenant_id,
                        event_type=event.event_type,
                        event_id=event.event_id,
                        capacity=self.max_size,
                    )
                raise
            finally:
                self._queue.task_done()
                OUTBOX_DEPTH.set(self._queue.qsize())
            delivered += 1
        return delivered

    async def _run(self, handler: Handler) -> None:
        backoff = self.initial_backoff
        while True:
            event = await self._queue.get()
            while True:
                try:
                    await handler(event)
                    backoff = self.initial_backoff
                    break
                except PersistenceError as e:
                    logger.warning(
                        "Outbox flush failed, backing off",
                        error=e.message,
                        retry_in_seconds=backoff,
                        depth=self._queue.qsize() + 1,
                    )
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, self.max_backoff)
            self._queue.task_done()
            OUTBOX_DEPTH.set(self._queue.qsize())
