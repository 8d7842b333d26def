"""
Rollup Aggregator

Folds accepted facts into the daily rollup tables. Every write is an atomic
insert-or-increment followed by recomputation of the row's derived fields
in the same transaction, so concurrent requests for the same natural key
never lose an increment and never leave a stale ratio behind.

Counter ownership (each counter has exactly one writer):
- engagement deltas: traffic and session counters of DailyMetric
- content deltas: ContentPerformanceScore counters
- interaction events: DailyMetric interaction counters, referrer visits,
  session activity and funnel progress
- expiry sweep: session counters of sessions that never reported an end
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import get_settings
from src.core import TransientWriteConflict, utc_now
from src.core.errors import classify_db_error
from src.database import get_session_factory
from src.database.models import (
    ContentPerformanceScore,
    DailyMetric,
    FunnelDailyStat,
    FunnelDefinition,
    FunnelStepDailyStat,
    RawEvent,
    ReferrerDailyStat,
    SessionActivity,
)

from .deltas import (
    CONTENT_PERFORMANCE_EVENT,
    ENGAGEMENT_EVENT,
    INTERACTION_COUNTERS,
    KEYWORD_SAMPLE_EVENT,
    SESSION_EXPIRED_EVENT,
    ContentDelta,
    EngagementDelta,
    KeywordSample,
    SessionSummary,
    dimension,
    referrer_source,
)
from .derived import content_performance_derived, daily_metric_derived, funnel_daily_derived
from .funnels import DatabaseFunnelProgressStore, FunnelAdvance, FunnelTracker
from .keywords import write_keyword_sample
from .sessions import DatabaseSessionLedger, SessionLedger
from .upsert import upsert_increment

logger = structlog.get_logger(__name__)
settings = get_settings()

T = TypeVar("T")


# =============================================================================
# METRICS
# =============================================================================

ROLLUP_WRITES = Counter(
    "analytics_rollup_writes_total",
    "Rollup rows incremented",
    ["table"],
)

AGGREGATION_RETRIES = Counter(
    "analytics_aggregation_retries_total",
    "Increments retried after a transient write conflict",
    ["operation"],
)

AGGREGATION_FAILURES = Counter(
    "analytics_aggregation_failures_total",
    "Aggregation operations that gave up",
    ["operation", "reason"],
)

AGGREGATION_LATENCY = Histogram(
    "analytics_aggregation_seconds",
    "Time spent applying one fact to the rollups",
    ["operation"],
)


# =============================================================================
# AGGREGATOR
# =============================================================================

class RollupAggregator:
    """
    Applies engagement deltas, content deltas, keyword samples and
    interaction events to the rollup tables.

    Args:
        ledger: Session state used for once-per-session counting
        funnel_tracker: Funnel progress evaluation
        session_factory: Defaults to the application's session factory
        max_attempts: Attempts for an increment hitting a write conflict
        backoff_ms: Base delay between attempts, doubled each time
    """

    def __init__(
        self,
        ledger: Optional[SessionLedger] = None,
        funnel_tracker: Optional[FunnelTracker] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        self.ledger = ledger or DatabaseSessionLedger()
        self.funnel_tracker = funnel_tracker or FunnelTracker(
            DatabaseFunnelProgressStore(settings.sessions.funnel_progress_ttl_seconds)
        )
        self._session_factory = session_factory
        self.max_attempts = max_attempts or settings.ingestion.aggregation_max_attempts
        self.backoff_seconds = (backoff_ms if backoff_ms is not None else settings.ingestion.aggregation_backoff_ms) / 1000

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def apply_event(self, event: RawEvent) -> None:
        """Apply one persisted raw event to every rollup it feeds."""
        if event.event_type == ENGAGEMENT_EVENT:
            await self.apply_engagement(EngagementDelta.from_raw_event(event))
        elif event.event_type == CONTENT_PERFORMANCE_EVENT:
            await self.apply_content(ContentDelta.from_raw_event(event))
        elif event.event_type == KEYWORD_SAMPLE_EVENT:
            await self.apply_keyword_sample(KeywordSample.from_raw_event(event))
        elif event.event_type == SESSION_EXPIRED_EVENT:
            await self.apply_session_summary(SessionSummary.from_raw_event(event))
        else:
            await self.apply_interaction(event)

    # -------------------------------------------------------------------------
    # Facts
    # -------------------------------------------------------------------------

    async def apply_engagement(self, delta: EngagementDelta) -> Optional[Dict[str, Any]]:
        """
        Add an engagement delta to its DailyMetric row.

        The session part (sessions, bounce, duration) is only counted if this
        delta is the first to finalize the session.
        """
        async def work(session: AsyncSession) -> Optional[Dict[str, Any]]:
            counters: Dict[str, Any] = dict(delta.traffic_counters())
            if delta.has_session_part:
                claimed = delta.session_id is None or await self.ledger.claim(
                    session,
                    delta.tenant_id,
                    delta.session_id,
                    utc_now(),
                    device_type=delta.device_type,
                    location=delta.location,
                )
                if claimed:
                    counters.update(delta.session_counters())
                else:
                    logger.info(
                        "Session already finalized, skipping its duration and bounce",
                        tenant_id=delta.tenant_id,
                        session_id=delta.session_id,
                    )
            if not counters:
                return None
            return await self._increment(
                session,
                DailyMetric,
                self._daily_key(delta.tenant_id, delta.metric_date, delta.device_type, delta.location),
                counters,
            )

        return await self._run("engagement", work)

    async def apply_content(self, delta: ContentDelta) -> Dict[str, Any]:
        """Add a content delta to its ContentPerformanceScore row."""
        async def work(session: AsyncSession) -> Dict[str, Any]:
            return await self._increment(
                session,
                ContentPerformanceScore,
                {
                    "tenant_id": delta.tenant_id,
                    "content_type": delta.content_type,
                    "content_id": delta.content_id,
                    "score_date": delta.score_date,
                },
                delta.counters() or {"impressions": 0},
                assign={"title": delta.title, "url": delta.url},
            )

        return await self._run("content", work)

    async def apply_keyword_sample(self, sample: KeywordSample) -> Dict[str, Any]:
        async def work(session: AsyncSession) -> Dict[str, Any]:
            row = await write_keyword_sample(session, sample)
            ROLLUP_WRITES.labels(table="keyword_ranking_samples").inc()
            return dict(row._mapping)

        return await self._run("keyword_sample", work)

    async def apply_interaction(self, event: RawEvent) -> None:
        """
        Apply a tracked interaction event to session activity and to every
        rollup it feeds. Funnel progress advances in the same transaction as
        the counters it produces.
        """
        funnels: List[FunnelDefinition] = []
        if event.session_id:
            funnels = await self._run(
                "funnel_lookup",
                lambda session: self.funnel_tracker.load_funnels(session, event.tenant_id),
            )

        counter = INTERACTION_COUNTERS.get(event.event_type)
        source = referrer_source(event.referrer) if event.event_type == "page_view" else None
        extra = event.extra or {}
        applied: List[FunnelAdvance] = []

        async def work(session: AsyncSession) -> None:
            if event.session_id:
                duration = extra.get("durationSeconds") if event.event_type == "session_heartbeat" else None
                await self.ledger.touch(
                    session,
                    event.tenant_id,
                    event.session_id,
                    event.occurred_at,
                    page_views=1 if event.event_type == "page_view" else 0,
                    duration_seconds=float(duration) if duration is not None else None,
                    device_type=dimension(event.device_type),
                    location=dimension(event.location),
                )
            if counter:
                await self._increment(
                    session,
                    DailyMetric,
                    self._daily_key(event.tenant_id, event.occurred_at.date(), event.device_type, event.location),
                    {counter: 1},
                )
            if source:
                await self._increment(
                    session,
                    ReferrerDailyStat,
                    {"tenant_id": event.tenant_id, "stat_date": event.occurred_at.date(), "source": source},
                    {"visits": 1},
                )
            if funnels:
                applied.extend(await self.funnel_tracker.evaluate(event, funnels, session))
                await self._write_funnel_advances(session, applied)

        async def undo_advances() -> None:
            await self.funnel_tracker.revert(applied)
            applied.clear()

        await self._run("event", work, on_rollback=undo_advances)

    async def apply_session_summary(self, summary: SessionSummary) -> bool:
        """Count a closed session unless something already finalized it."""
        delta = summary.to_engagement_delta()

        async def work(session: AsyncSession) -> bool:
            claimed = await self.ledger.claim(
                session,
                summary.tenant_id,
                summary.session_id,
                summary.started_at,
                device_type=summary.device_type,
                location=summary.location,
            )
            if claimed:
                await self._increment(
                    session,
                    DailyMetric,
                    self._daily_key(delta.tenant_id, delta.metric_date, delta.device_type, delta.location),
                    delta.session_counters(),
                )
            return claimed

        return await self._run("session_summary", work)

    async def expire_session(self, activity: SessionActivity) -> bool:
        """
        Finalize an idle session found by the expiry sweep.

        The claim, the session_expired raw event and the DailyMetric increment
        commit together, so a replay sees exactly what was counted.
        """
        elapsed = (activity.last_seen_at - activity.started_at).total_seconds()
        summary = SessionSummary(
            tenant_id=activity.tenant_id,
            session_id=activity.session_id,
            started_at=activity.started_at,
            duration_seconds=max(activity.duration_seconds or 0.0, elapsed, 0.0),
            page_view_count=activity.page_view_count,
            device_type=activity.device_type,
            location=activity.location,
        )
        delta = summary.to_engagement_delta()

        async def work(session: AsyncSession) -> bool:
            if not await _database_ledger.claim_by_id(session, activity.id):
                return False
            session.add(summary.to_raw_event())
            await self._increment(
                session,
                DailyMetric,
                self._daily_key(delta.tenant_id, delta.metric_date, delta.device_type, delta.location),
                delta.session_counters(),
            )
            return True

        return await self._run("session_expiry", work)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @staticmethod
    def _daily_key(tenant_id: int, metric_date, device_type: Optional[str], location: Optional[str]) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "metric_date": metric_date,
            "device_type": dimension(device_type),
            "location": dimension(location),
        }

    async def _increment(
        self,
        session: AsyncSession,
        model: Any,
        key: Mapping[str, Any],
        counters: Mapping[str, Any],
        assign: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        row = await upsert_increment(session, model, key, counters, assign)
        values = dict(row._mapping)

        derive = _DERIVERS.get(model)
        if derive is not None:
            derived = derive(values)
            await session.execute(update(model).where(model.id == values["id"]).values(**derived))
            values.update(derived)

        ROLLUP_WRITES.labels(table=model.__tablename__).inc()
        return values

    async def _write_funnel_advances(self, session: AsyncSession, advances: List[FunnelAdvance]) -> None:
        for advance in advances:
            await self._increment(
                session,
                FunnelStepDailyStat,
                {
                    "funnel_id": advance.funnel_id,
                    "stat_date": advance.entry_date,
                    "step_index": advance.step_index,
                },
                {"conversions": 1},
            )

            daily: Dict[str, Any] = {}
            if advance.step_index == 0:
                daily["entrances"] = 1
            if advance.is_terminal:
                daily["completions"] = 1
                daily["total_seconds_to_conversion"] = advance.seconds_since_entry
            if daily:
                await self._increment(
                    session,
                    FunnelDailyStat,
                    {"funnel_id": advance.funnel_id, "stat_date": advance.entry_date},
                    daily,
                )

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        on_rollback: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> T:
        """
        Run ``work`` in its own transaction, retrying transient write conflicts.

        ``on_rollback`` is awaited after every attempt whose transaction did not
        commit, before the retry or the raise.

        Raises:
            TransientWriteConflict: Conflicts persisted past max_attempts
            PersistenceError: Any other storage failure
        """
        factory = self._session_factory or get_session_factory()
        attempt = 0

        with AGGREGATION_LATENCY.labels(operation=operation).time():
            while True:
                attempt += 1
                try:
                    async with factory() as session:
                        async with session.begin():
                            return await work(session)
                except Exception as e:
                    if on_rollback is not None:
                        await on_rollback()
                    if not isinstance(e, SQLAlchemyError):
                        AGGREGATION_FAILURES.labels(operation=operation, reason=type(e).__name__).inc()
                        raise

                    error = classify_db_error(e)
                    if isinstance(error, TransientWriteConflict) and attempt < self.max_attempts:
                        AGGREGATION_RETRIES.labels(operation=operation).inc()
                        delay = self.backoff_seconds * (2 ** (attempt - 1)) * (0.5 + random.random())
                        logger.debug(
                            "Write conflict, retrying",
                            operation=operation,
                            attempt=attempt,
                            delay_seconds=round(delay, 3),
                        )
                        await asyncio.sleep(delay)
                        continue

                    AGGREGATION_FAILURES.labels(operation=operation, reason=type(error).__name__).inc()
                    raise error from e


_DERIVERS = {
    DailyMetric: daily_metric_derived,
    ContentPerformanceScore: content_performance_derived,
    FunnelDailyStat: funnel_daily_derived,
}

_database_ledger = DatabaseSessionLedger()
