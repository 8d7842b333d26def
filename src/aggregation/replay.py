"""
Rollup Replay

Rebuilds the rollup tables from the raw event store: clears the rollups of
the selected tenant (or all tenants) and re-applies every recorded fact in
arrival order. Session claims and funnel progress are tracked in memory for
the duration of the replay, so the result matches what live aggregation
produced for the same event sequence.

Ingestion for the affected tenants should be paused while a replay runs.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import delete, select

from src.core import AnalyticsError
from src.database import get_db
from src.database.models import (
    ContentPerformanceScore,
    DailyMetric,
    FunnelDailyStat,
    FunnelDefinition,
    FunnelStepDailyStat,
    KeywordRankingSample,
    RawEvent,
    ReferrerDailyStat,
    TrackedKeyword,
)
from src.serving.cache import reporting_cache

from .aggregator import RollupAggregator
from .funnels import FunnelTracker, InMemoryFunnelProgressStore
from .sessions import ReplaySessionLedger

logger = structlog.get_logger(__name__)


@dataclass
class ReplayResult:
    """Outcome of one replay run"""
    applied: int = 0
    failed: int = 0


async def clear_rollups(tenant_id: Optional[int] = None) -> None:
    """Delete rollup rows, optionally limited to one tenant."""
    funnel_ids = select(FunnelDefinition.id)
    keyword_ids = select(TrackedKeyword.id)
    daily = delete(DailyMetric)
    content = delete(ContentPerformanceScore)
    referrers = delete(ReferrerDailyStat)
    if tenant_id is not None:
        funnel_ids = funnel_ids.where(FunnelDefinition.tenant_id == tenant_id)
        keyword_ids = keyword_ids.where(TrackedKeyword.tenant_id == tenant_id)
        daily = daily.where(DailyMetric.tenant_id == tenant_id)
        content = content.where(ContentPerformanceScore.tenant_id == tenant_id)
        referrers = referrers.where(ReferrerDailyStat.tenant_id == tenant_id)

    async with get_db() as db:
        await db.execute(daily)
        await db.execute(content)
        await db.execute(referrers)
        await db.execute(delete(FunnelDailyStat).where(FunnelDailyStat.funnel_id.in_(funnel_ids)))
        await db.execute(delete(FunnelStepDailyStat).where(FunnelStepDailyStat.funnel_id.in_(funnel_ids)))
        await db.execute(delete(KeywordRankingSample).where(KeywordRankingSample.keyword_id.in_(keyword_ids)))


async def replay_raw_events(tenant_id: Optional[int] = None, batch_size: int = 1000) -> ReplayResult:
    """
    Rebuild rollups from raw events.

    Args:
        tenant_id: Limit the rebuild to one tenant
        batch_size: Raw events loaded per query

    Returns:
        ReplayResult: Events applied and events that failed to apply
    """
    await clear_rollups(tenant_id)

    aggregator = RollupAggregator(
        ledger=ReplaySessionLedger(),
        funnel_tracker=FunnelTracker(InMemoryFunnelProgressStore()),
    )
    result = ReplayResult()
    last_id = 0

    while True:
        query = select(RawEvent).where(RawEvent.id > last_id).order_by(RawEvent.id).limit(batch_size)
        if tenant_id is not None:
            query = query.where(RawEvent.tenant_id == tenant_id)
        async with get_db() as db:
            events = list((await db.execute(query)).scalars().all())
        if not events:
            break

        for event in events:
            last_id = event.id
            try:
                await aggregator.apply_event(event)
                result.applied += 1
            except AnalyticsError as e:
                result.failed += 1
                logger.error(
                    "Failed to replay raw event",
                    raw_event_id=event.id,
                    event_type=event.event_type,
                    error=e.message,
                )

        logger.info("Replay batch applied", last_raw_event_id=last_id, applied=result.applied)

    # Cached reports were computed from the rollups just replaced
    invalidated = await reporting_cache.invalidate_all()

    logger.info(
        "Replay finished",
        tenant_id=tenant_id,
        applied=result.applied,
        failed=result.failed,
        cache_keys_invalidated=invalidated,
    )
    return result
