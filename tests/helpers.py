"""
Query helpers shared by the integration tests
"""
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import DailyMetric, RawEvent


async def daily_totals(session: AsyncSession, tenant_id: int, metric_date: Optional[date] = None) -> dict:
    """Sum of DailyMetric counters across device and location"""
    columns = ["page_views", "unique_visitors", "new_users", "returning_users",
               "sessions", "bounce_sessions", "total_session_seconds",
               "content_views", "content_clicks", "search_queries"]
    query = select(*(func.coalesce(func.sum(getattr(DailyMetric, c)), 0).label(c) for c in columns)).where(
        DailyMetric.tenant_id == tenant_id
    )
    if metric_date is not None:
        query = query.where(DailyMetric.metric_date == metric_date)
    row = (await session.execute(query)).one()
    return dict(row._mapping)


async def count_raw_events(session: AsyncSession, **filters) -> int:
    query = select(func.count(RawEvent.id))
    for column, value in filters.items():
        query = query.where(getattr(RawEvent, column) == value)
    return (await session.execute(query)).scalar_one()

