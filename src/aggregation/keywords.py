"""
Keyword Ranking Samples

Samples are snapshots: a repeated (keyword, date, device, location) sample
overwrites the previous one. ``previous_position`` and ``change`` are
resolved against the nearest earlier sample of the same series, and the
nearest later sample is refreshed so out-of-order arrivals stay consistent.
"""

from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import KeywordRankingSample

from .deltas import KeywordSample
from .derived import keyword_sample_derived
from .upsert import dialect_insert


def _series(sample: KeywordSample):
    return (
        KeywordRankingSample.keyword_id == sample.keyword_id,
        KeywordRankingSample.device == sample.device,
        KeywordRankingSample.location == sample.location,
    )


async def write_keyword_sample(session: AsyncSession, sample: KeywordSample) -> Row:
    previous: Optional[int] = (
        await session.execute(
            select(KeywordRankingSample.position)
            .where(*_series(sample), KeywordRankingSample.sample_date < sample.sample_date)
            .order_by(KeywordRankingSample.sample_date.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    values = {
        "position": sample.position,
        "clicks": sample.clicks,
        "impressions": sample.impressions,
        "previous_position": previous,
        # Positive when the rank improved (moved towards 1)
        "change": previous - sample.position if previous is not None else None,
        **keyword_sample_derived({"clicks": sample.clicks, "impressions": sample.impressions}),
    }

    table = KeywordRankingSample.__table__
    stmt = dialect_insert(session)(table).values(
        keyword_id=sample.keyword_id,
        sample_date=sample.sample_date,
        device=sample.device,
        location=sample.location,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["keyword_id", "sample_date", "device", "location"],
        set_={name: stmt.excluded[name] for name in values},
    ).returning(*table.c)
    row = (await session.execute(stmt)).one()

    following = (
        await session.execute(
            select(KeywordRankingSample.id, KeywordRankingSample.position)
            .where(*_series(sample), KeywordRankingSample.sample_date > sample.sample_date)
            .order_by(KeywordRankingSample.sample_date.asc())
            .limit(1)
        )
    ).first()
    if following is not None:
        await session.execute(
            update(KeywordRankingSample)
            .where(KeywordRankingSample.id == following.id)
            .values(
                previous_position=sample.position,
                change=sample.position - following.position,
            )
        )

    return row
