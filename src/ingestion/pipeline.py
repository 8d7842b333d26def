"""
Ingestion Pipeline

Accepted envelope -> durable RawEvent -> rollup aggregation.

1. The raw event is appended in its own transaction. Envelopes carrying an
   eventId are inserted with ON CONFLICT DO NOTHING, so a redelivered
   envelope is recognised as a duplicate and not aggregated again.
2. The aggregator applies the event inline or as a background task.
   Aggregation failures are logged and counted; the fact is already durable
   and can be replayed.
3. If the raw write itself fails, the envelope is parked in the outbox and
   retried in the background.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.aggregation import (
    DatabaseFunnelProgressStore,
    FunnelTracker,
    InMemoryFunnelProgressStore,
    RedisFunnelProgressStore,
    RollupAggregator,
)
from src.aggregation.upsert import dialect_insert
from src.config import get_settings
from src.core import AnalyticsError, PersistenceError, TransientWriteConflict, utc_now
from src.core.errors import classify_db_error
from src.database import get_session_factory
from src.database.models import RawEvent

from .metrics import AGGREGATION_ERRORS, EVENTS_DUPLICATED
from .outbox import IngestionOutbox

logger = structlog.get_logger(__name__)
settings = get_settings()

RECORDED = "recorded"
DUPLICATE = "duplicate"
QUEUED = "queued"
DROPPED = "dropped"

_RAW_COLUMNS = [column.key for column in RawEvent.__table__.c if column.key != "id"]


@dataclass
class IngestResult:
    """Outcome of one envelope"""
    status: str
    raw_event_id: Optional[int] = None


class IngestionPipeline:
    """
    Persists envelopes and hands them to the aggregator.

    Args:
        aggregator: Rollup aggregator; a default one is built if omitted
        outbox: Retry queue for failed raw writes
        session_factory: Defaults to the application's session factory
        aggregate_inline: Aggregate before responding instead of in a background task
    """

    def __init__(
        self,
        aggregator: Optional[RollupAggregator] = None,
        outbox: Optional[IngestionOutbox] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        aggregate_inline: Optional[bool] = None,
    ):
        self.aggregator = aggregator or RollupAggregator(session_factory=session_factory)
        self.outbox = outbox or IngestionOutbox()
        self._session_factory = session_factory
        self.aggregate_inline = (
            settings.ingestion.aggregate_inline if aggregate_inline is None else aggregate_inline
        )

    async def start(self) -> None:
        self.outbox.start(self.redeliver)

    async def stop(self) -> None:
        await self.outbox.stop()

    async def ingest(self, event: RawEvent, background_tasks: Optional[BackgroundTasks] = None) -> IngestResult:
        """
        Record one envelope.

        Never raises for storage or aggregation failures; the outcome is in
        the returned status.
        """
        try:
            stored = await self.persist(event)
        except PersistenceError as e:
            logger.warning(
                "Raw event write failed, using outbox",
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                error=e.message,
            )
            return IngestResult(QUEUED if self.outbox.put(event) else DROPPED)

        if not stored:
            EVENTS_DUPLICATED.labels(event_type=event.event_type).inc()
            logger.debug("Duplicate envelope ignored", event_id=event.event_id, event_type=event.event_type)
            return IngestResult(DUPLICATE)

        if background_tasks is not None and not self.aggregate_inline:
            background_tasks.add_task(self.aggregate, event)
        else:
            await self.aggregate(event)

        return IngestResult(RECORDED, raw_event_id=event.id)

    async def persist(self, event: RawEvent) -> bool:
        """
        Append the raw event.

        Returns:
            bool: False when an event with the same eventId already exists

        Raises:
            PersistenceError: The write failed
        """
        if event.received_at is None:
            event.received_at = utc_now()
        values: Dict[str, Any] = {key: getattr(event, key) for key in _RAW_COLUMNS}

        attempt = 0
        while True:
            attempt += 1
            try:
                factory = self._session_factory or get_session_factory()
                async with factory() as session:
                    async with session.begin():
                        stmt = dialect_insert(session)(RawEvent.__table__).values(**values)
                        if event.event_id:
                            stmt = stmt.on_conflict_do_nothing(index_elements=["event_id"])
                        row = (await session.execute(stmt.returning(RawEvent.__table__.c.id))).first()
            except SQLAlchemyError as e:
                error = classify_db_error(e)
                if isinstance(error, TransientWriteConflict) and attempt < self.aggregator.max_attempts:
                    await asyncio.sleep(self.aggregator.backoff_seconds * attempt)
                    continue
                raise PersistenceError(error.message, error.details) from e
            except OSError as e:
                raise PersistenceError(f"Database unreachable: {e}") from e

            if row is None:
                return False
            event.id = row.id
            return True

    async def aggregate(self, event: RawEvent) -> bool:
        """Apply a stored event to the rollups; failures are logged, not raised."""
        try:
            await self.aggregator.apply_event(event)
            return True
        except AnalyticsError as e:
            AGGREGATION_ERRORS.labels(event_type=event.event_type, reason=type(e).__name__).inc()
            logger.error(
                "Aggregation failed, raw event kept for replay",
                raw_event_id=event.id,
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                error=e.message,
            )
        except Exception as e:
            AGGREGATION_ERRORS.labels(event_type=event.event_type, reason=type(e).__name__).inc()
            logger.exception("Unexpected aggregation error", raw_event_id=event.id, event_type=event.event_type)
        return False

    async def redeliver(self, event: RawEvent) -> None:
        """Outbox handler: persist then aggregate; PersistenceError keeps it queued."""
        if await self.persist(event):
            await self.aggregate(event)
        else:
            EVENTS_DUPLICATED.labels(event_type=event.event_type).inc()


# =============================================================================
# APPLICATION PIPELINE
# =============================================================================

_pipeline: Optional[IngestionPipeline] = None


def build_funnel_tracker(redis: Optional[Any] = None) -> FunnelTracker:
    """Funnel tracker using the configured progress backend."""
    ttl = settings.sessions.funnel_progress_ttl_seconds
    backend = settings.sessions.funnel_progress_backend
    if backend == "memory":
        return FunnelTracker(InMemoryFunnelProgressStore(ttl_seconds=ttl))
    if backend == "redis":
        if redis is not None:
            return FunnelTracker(RedisFunnelProgressStore(redis, ttl_seconds=ttl))
        logger.warning("Redis unavailable, funnel progress kept in the database")
    return FunnelTracker(DatabaseFunnelProgressStore(ttl_seconds=ttl))


async def init_pipeline(redis: Optional[Any] = None) -> IngestionPipeline:
    """Create the application pipeline and start its outbox worker."""
    global _pipeline
    if _pipeline is None:
        _pipeline = IngestionPipeline(aggregator=RollupAggregator(funnel_tracker=build_funnel_tracker(redis)))
    await _pipeline.start()
    return _pipeline


async def close_pipeline() -> None:
    global _pipeline
    if _pipeline is not None:
        await _pipeline.stop()
        _pipeline = None


def get_pipeline() -> IngestionPipeline:
    """FastAPI dependency; builds a default pipeline on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = IngestionPipeline(aggregator=RollupAggregator(funnel_tracker=build_funnel_tracker()))
    return _pipeline
