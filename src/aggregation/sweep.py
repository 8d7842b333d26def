"""
Session Expiry Sweep

Finalizes sessions that went quiet without reporting an end (closed tab,
crashed client) so their duration and bounce still reach the rollups, and
prunes funnel progress idle for longer than its TTL.
Runs from the Prefect maintenance flow or, when enabled, as a loop inside
the API process.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import select

from src.config import get_settings
from src.core import AnalyticsError, utc_now
from src.database import get_db
from src.database.models import SessionActivity

from .aggregator import RollupAggregator
from .funnels import DatabaseFunnelProgressStore

logger = structlog.get_logger(__name__)
settings = get_settings()

SESSIONS_EXPIRED = Counter(
    "analytics_sessions_expired_total",
    "Sessions finalized by the expiry sweep",
)


class SessionExpirySweeper:
    """
    Finalizes sessions idle for longer than the expiry timeout.

    Args:
        aggregator: Aggregator that owns the session counters
        timeout_seconds: Idle time before a session counts as ended
        batch_size: Max sessions finalized per pass
    """

    def __init__(
        self,
        aggregator: Optional[RollupAggregator] = None,
        timeout_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.aggregator = aggregator or RollupAggregator()
        self.timeout_seconds = timeout_seconds or settings.sessions.expiry_timeout_seconds
        self.batch_size = batch_size or settings.sessions.sweep_batch_size

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Run one pass.

        Returns:
            int: Number of sessions this pass finalized
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.timeout_seconds)

        async with get_db() as db:
            result = await db.execute(
                select(SessionActivity)
                .where(SessionActivity.finalized.is_(False), SessionActivity.last_seen_at < cutoff)
                .order_by(SessionActivity.last_seen_at)
                .limit(self.batch_size)
            )
            candidates = list(result.scalars().all())

        finalized = 0
        for activity in candidates:
            if await self.aggregator.expire_session(activity):
                finalized += 1

        if finalized:
            SESSIONS_EXPIRED.inc(finalized)

        pruned = 0
        store = self.aggregator.funnel_tracker.store
        if isinstance(store, DatabaseFunnelProgressStore):
            async with get_db() as db:
                pruned = await store.prune(db, now)

        logger.info(
            "Session expiry sweep finished",
            candidates=len(candidates),
            finalized=finalized,
            funnel_progress_pruned=pruned,
        )
        return finalized

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep periodically until cancelled."""
        interval = interval_seconds or settings.sessions.sweep_interval_seconds
        while True:
            try:
                await self.sweep()
            except AnalyticsError as e:
                logger.error("Session expiry sweep failed", error=e.message)
            await asyncio.sleep(interval)
