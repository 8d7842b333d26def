"""
Session Bookkeeping

Server-side session state driven by page views and heartbeats, and the
"finalized" claim that guarantees a session's duration and bounce
contribution is counted exactly once, whether the client's session-end
delta or the expiry sweep gets there first.
"""

from datetime import datetime
from typing import Optional, Protocol, Set, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core import utc_now
from src.database.models import SessionActivity, UNKNOWN_DIMENSION

from .upsert import dialect_insert, greatest, least

logger = structlog.get_logger(__name__)


class SessionLedger(Protocol):
    """Session state used by the aggregator inside its transaction"""

    async def touch(
        self,
        session: AsyncSession,
        tenant_id: int,
        session_id: str,
        seen_at: datetime,
        *,
        page_views: int = 0,
        duration_seconds: Optional[float] = None,
        device_type: str = UNKNOWN_DIMENSION,
        location: str = UNKNOWN_DIMENSION,
    ) -> None:
        ...

    async def claim(
        self,
        session: AsyncSession,
        tenant_id: int,
        session_id: str,
        seen_at: datetime,
        *,
        device_type: str = UNKNOWN_DIMENSION,
        location: str = UNKNOWN_DIMENSION,
    ) -> bool:
        ...


class DatabaseSessionLedger:
    """SessionLedger persisted in the session_activity table"""

    async def touch(
        self,
        session: AsyncSession,
        tenant_id: int,
        session_id: str,
        seen_at: datetime,
        *,
        page_views: int = 0,
        duration_seconds: Optional[float] = None,
        device_type: str = UNKNOWN_DIMENSION,
        location: str = UNKNOWN_DIMENSION,
    ) -> None:
        table = SessionActivity.__table__
        stmt = dialect_insert(session)(table).values(
            tenant_id=tenant_id,
            session_id=session_id,
            started_at=seen_at,
            last_seen_at=seen_at,
            page_view_count=page_views,
            duration_seconds=duration_seconds or 0,
            device_type=device_type,
            location=location,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "session_id"],
            set_={
                "started_at": least(table.c.started_at, stmt.excluded.started_at),
                "last_seen_at": greatest(table.c.last_seen_at, stmt.excluded.last_seen_at),
                "page_view_count": table.c.page_view_count + stmt.excluded.page_view_count,
                "duration_seconds": greatest(table.c.duration_seconds, stmt.excluded.duration_seconds),
            },
        )
        await session.execute(stmt)

    async def claim(
        self,
        session: AsyncSession,
        tenant_id: int,
        session_id: str,
        seen_at: datetime,
        *,
        device_type: str = UNKNOWN_DIMENSION,
        location: str = UNKNOWN_DIMENSION,
    ) -> bool:
        """
        Mark the session finalized.

        Returns:
            bool: True for the single caller that flipped the flag
        """
        now = utc_now()
        result = await session.execute(
            update(SessionActivity)
            .where(
                SessionActivity.tenant_id == tenant_id,
                SessionActivity.session_id == session_id,
                SessionActivity.finalized.is_(False),
            )
            .values(finalized=True, finalized_at=now)
        )
        if result.rowcount == 1:
            return True

        # No open row: either never seen (no heartbeat reached us) or already final
        stmt = (
            dialect_insert(session)(SessionActivity.__table__)
            .values(
                tenant_id=tenant_id,
                session_id=session_id,
                started_at=seen_at,
                last_seen_at=seen_at,
                device_type=device_type,
                location=location,
                finalized=True,
                finalized_at=now,
            )
            .on_conflict_do_nothing(index_elements=["tenant_id", "session_id"])
            .returning(SessionActivity.__table__.c.id)
        )
        inserted = (await session.execute(stmt)).first()
        return inserted is not None

    async def claim_by_id(self, session: AsyncSession, activity_id: int) -> bool:
        """Finalize an open row picked by the expiry sweep."""
        result = await session.execute(
            update(SessionActivity)
            .where(SessionActivity.id == activity_id, SessionActivity.finalized.is_(False))
            .values(finalized=True, finalized_at=utc_now())
        )
        return result.rowcount == 1


class ReplaySessionLedger:
    """
    In-memory ledger for rebuilding rollups from raw events.

    Session state during a replay comes from the recorded events alone, so
    touches are ignored and claims are first-wins per (tenant, session).
    """

    def __init__(self) -> None:
        self._claimed: Set[Tuple[int, str]] = set()

    async def touch(self, session: AsyncSession, tenant_id: int, session_id: str, seen_at: datetime, **_) -> None:
        return None

    async def claim(self, session: AsyncSession, tenant_id: int, session_id: str, seen_at: datetime, **_) -> bool:
        key = (tenant_id, session_id)
        if key in self._claimed:
            return False
        self._claimed.add(key)
        return True
