"""
Reporting Endpoints

Read side of the analytics API. Reports are sums over the pre-aggregated
rollup rows; ratios are recomputed from the summed counters with the same
functions the aggregator uses, never averaged.
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Literal, Optional

import polars as pl
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.aggregation.deltas import SYNTHETIC_EVENT_TYPES
from src.aggregation.derived import (
    content_performance_derived,
    daily_metric_derived,
    funnel_daily_derived,
    funnel_drop_offs,
    step_drop_offs,
)
from src.aggregation.funnels import parse_steps
from src.database.connection import get_db_dependency
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

router = APIRouter()
logger = structlog.get_logger(__name__)

DAILY_COUNTERS = (
    "page_views",
    "unique_visitors",
    "new_users",
    "returning_users",
    "sessions",
    "bounce_sessions",
    "total_session_seconds",
    "content_views",
    "content_clicks",
    "social_shares",
    "form_submissions",
    "conversions",
    "search_queries",
)

CONTENT_COUNTERS = (
    "impressions",
    "clicks",
    "social_shares",
    "comment_count",
    "conversion_count",
    "total_time_on_content",
)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class TrafficFigures(BaseModel):
    """Summed DailyMetric counters with recomputed ratios"""
    page_views: int = 0
    unique_visitors: int = 0
    new_users: int = 0
    returning_users: int = 0
    sessions: int = 0
    bounce_rate: float = 0.0
    avg_session_duration: float = 0.0
    content_views: int = 0
    content_clicks: int = 0
    social_shares: int = 0
    form_submissions: int = 0
    conversions: int = 0
    search_queries: int = 0


class DailyTrafficPoint(TrafficFigures):
    date: date


class TrafficSummary(BaseModel):
    """Per-day traffic for a tenant"""
    tenant_id: int
    period_start: date
    period_end: date
    days: List[DailyTrafficPoint]
    totals: TrafficFigures


class DeviceShare(BaseModel):
    device_type: str
    page_views: int
    unique_visitors: int
    sessions: int
    bounce_rate: float
    share: float


class LocationShare(BaseModel):
    location: str
    page_views: int
    unique_visitors: int
    sessions: int
    share: float


class ReferrerShare(BaseModel):
    source: str
    visits: int
    share: float


class EventTypeCount(BaseModel):
    event_type: str
    count: int


class ContentRanking(BaseModel):
    content_type: str
    content_id: int
    title: Optional[str]
    url: Optional[str]
    impressions: int
    clicks: int
    social_shares: int
    comment_count: int
    conversion_count: int
    ctr: float
    engagement_rate: float
    conversion_rate: float
    avg_time_on_content: float


class FunnelDay(BaseModel):
    date: date
    entrances: int
    completions: int
    drop_offs: int
    step_conversions: List[int]
    step_drop_offs: List[int]
    conversion_rate: float
    avg_time_to_conversion: float


class FunnelReport(BaseModel):
    funnel_id: int
    name: str
    steps: List[str]
    conversion_goal: str
    target_conversion_rate: Optional[float]
    days: List[FunnelDay]


class KeywordPoint(BaseModel):
    date: date
    device: str
    location: str
    position: int
    previous_position: Optional[int]
    change: Optional[int]
    clicks: int
    impressions: int
    ctr: float


class KeywordReport(BaseModel):
    keyword_id: int
    keyword: str
    target_url: Optional[str]
    samples: List[KeywordPoint]


# =============================================================================
# HELPERS
# =============================================================================

def _period(start_date: Optional[date], end_date: Optional[date]) -> tuple:
    end_date = end_date or date.today()
    start_date = start_date or end_date - timedelta(days=30)
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    return start_date, end_date


def _traffic_figures(sums: Dict[str, Any]) -> Dict[str, Any]:
    figures = {name: sums.get(name) or 0 for name in DAILY_COUNTERS}
    figures.update(daily_metric_derived(figures))
    figures.pop("bounce_sessions")
    figures.pop("total_session_seconds")
    return figures


async def _daily_sums(db: AsyncSession, tenant_id: int, start_date: date, end_date: date) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(
            DailyMetric.metric_date,
            *[func.sum(getattr(DailyMetric, name)).label(name) for name in DAILY_COUNTERS],
        )
        .where(
            DailyMetric.tenant_id == tenant_id,
            DailyMetric.metric_date >= start_date,
            DailyMetric.metric_date <= end_date,
        )
        .group_by(DailyMetric.metric_date)
        .order_by(DailyMetric.metric_date)
    )
    return [dict(row._mapping) for row in result]


async def _build_summary(db: AsyncSession, tenant_id: int, start_date: date, end_date: date) -> TrafficSummary:
    rows = await _daily_sums(db, tenant_id, start_date, end_date)
    totals = {name: sum(row[name] or 0 for row in rows) for name in DAILY_COUNTERS}
    return TrafficSummary(
        tenant_id=tenant_id,
        period_start=start_date,
        period_end=end_date,
        days=[DailyTrafficPoint(date=row["metric_date"], **_traffic_figures(row)) for row in rows],
        totals=TrafficFigures(**_traffic_figures(totals)),
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/summary", response_model=TrafficSummary)
async def get_traffic_summary(
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db_dependency),
) -> TrafficSummary:
    """Daily traffic and engagement, summed across device and location."""
    start_date, end_date = _period(start_date, end_date)

    cache_key = f"summary:{tenant_id}:{start_date}:{end_date}"
    cached = await reporting_cache.get(cache_key)
    if cached:
        return TrafficSummary(**cached)

    summary = await _build_summary(db, tenant_id, start_date, end_date)
    await reporting_cache.set(cache_key, summary.model_dump(mode="json"))
    logger.debug("Traffic summary built", tenant_id=tenant_id, days=len(summary.days))
    return summary


@router.get("/devices", response_model=List[DeviceShare])
async def get_device_breakdown(
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db_dependency),
) -> List[DeviceShare]:
    """Traffic split by device type."""
    start_date, end_date = _period(start_date, end_date)

    result = await db.execute(
        select(
            DailyMetric.device_type,
            func.sum(DailyMetric.page_views).label("page_views"),
            func.sum(DailyMetric.unique_visitors).label("unique_visitors"),
            func.sum(DailyMetric.sessions).label("sessions"),
            func.sum(DailyMetric.bounce_sessions).label("bounce_sessions"),
        )
        .where(
            DailyMetric.tenant_id == tenant_id,
            DailyMetric.metric_date >= start_date,
            DailyMetric.metric_date <= end_date,
        )
        .group_by(DailyMetric.device_type)
        .order_by(func.sum(DailyMetric.page_views).desc())
    )
    rows = result.all()
    total_views = sum(row.page_views or 0 for row in rows)

    return [
        DeviceShare(
            device_type=row.device_type,
            page_views=row.page_views or 0,
            unique_visitors=row.unique_visitors or 0,
            sessions=row.sessions or 0,
            bounce_rate=daily_metric_derived(row._mapping)["bounce_rate"],
            share=round((row.page_views or 0) / total_views, 4) if total_views else 0.0,
        )
        for row in rows
    ]


@router.get("/locations", response_model=List[LocationShare])
async def get_location_breakdown(
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db_dependency),
) -> List[LocationShare]:
    """Traffic split by visitor location."""
    start_date, end_date = _period(start_date, end_date)

    page_views = func.sum(DailyMetric.page_views)
    result = await db.execute(
        select(
            DailyMetric.location,
            page_views.label("page_views"),
            func.sum(DailyMetric.unique_visitors).label("unique_visitors"),
            func.sum(DailyMetric.sessions).label("sessions"),
        )
        .where(
            DailyMetric.tenant_id == tenant_id,
            DailyMetric.metric_date >= start_date,
            DailyMetric.metric_date <= end_date,
        )
        .group_by(DailyMetric.location)
        .order_by(page_views.desc(), DailyMetric.location)
    )
    rows = result.all()
    total_views = sum(row.page_views or 0 for row in rows)

    return [
        LocationShare(
            location=row.location,
            page_views=row.page_views or 0,
            unique_visitors=row.unique_visitors or 0,
            sessions=row.sessions or 0,
            share=round((row.page_views or 0) / total_views, 4) if total_views else 0.0,
        )
        for row in rows
    ]


@router.get("/referrers", response_model=List[ReferrerShare])
async def get_top_referrers(
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db_dependency),
) -> List[ReferrerShare]:
    """Referring sources ranked by landing page views."""
    start_date, end_date = _period(start_date, end_date)

    period = (
        ReferrerDailyStat.tenant_id == tenant_id,
        ReferrerDailyStat.stat_date >= start_date,
        ReferrerDailyStat.stat_date <= end_date,
    )
    total = (
        await db.execute(select(func.coalesce(func.sum(ReferrerDailyStat.visits), 0)).where(*period))
    ).scalar_one()

    visits = func.sum(ReferrerDailyStat.visits)
    result = await db.execute(
        select(ReferrerDailyStat.source, visits.label("visits"))
        .where(*period)
        .group_by(ReferrerDailyStat.source)
        .order_by(visits.desc(), ReferrerDailyStat.source)
        .limit(limit)
    )

    return [
        ReferrerShare(
            source=row.source,
            visits=row.visits,
            share=round(row.visits / total, 4) if total else 0.0,
        )
        for row in result.all()
    ]


@router.get("/events/counts", response_model=List[EventTypeCount])
async def get_event_counts(
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db_dependency),
) -> List[EventTypeCount]:
    """Tracked events per type, read from the raw event store."""
    start_date, end_date = _period(start_date, end_date)

    count = func.count(RawEvent.id)
    result = await db.execute(
        select(RawEvent.event_type, count.label("count"))
        .where(
            RawEvent.tenant_id == tenant_id,
            RawEvent.occurred_at >= datetime.combine(start_date, time.min),
            RawEvent.occurred_at < datetime.combine(end_date + timedelta(days=1), time.min),
            RawEvent.event_type.not_in(sorted(SYNTHETIC_EVENT_TYPES)),
        )
        .group_by(RawEvent.event_type)
        .order_by(count.desc(), RawEvent.event_type)
    )
    return [EventTypeCount(event_type=row.event_type, count=row.count) for row in result.all()]


@router.get("/top-content", response_model=List[ContentRanking])
async def get_top_content(
    tenant_id: int = Query(..., gt=0),
    metric: Literal[
        "impressions", "clicks", "social_shares", "conversion_count", "ctr", "engagement_rate"
    ] = "impressions",
    content_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db_dependency),
) -> List[ContentRanking]:
    """Content items ranked by a counter or a recomputed ratio."""
    start_date, end_date = _period(start_date, end_date)

    cache_key = f"top:{tenant_id}:{metric}:{content_type}:{start_date}:{end_date}:{limit}"
    cached = await reporting_cache.get(cache_key)
    if cached:
        return [ContentRanking(**item) for item in cached]

    sums = {name: func.sum(getattr(ContentPerformanceScore, name)) for name in CONTENT_COUNTERS}
    impressions = func.nullif(sums["impressions"], 0)
    order_by = {
        "ctr": func.coalesce(sums["clicks"] * 1.0 / impressions, 0),
        "engagement_rate": func.coalesce(
            (sums["clicks"] + sums["social_shares"] + sums["comment_count"]) * 1.0 / impressions, 0
        ),
    }.get(metric, sums.get(metric))

    query = (
        select(
            ContentPerformanceScore.content_type,
            ContentPerformanceScore.content_id,
            func.max(ContentPerformanceScore.title).label("title"),
            func.max(ContentPerformanceScore.url).label("url"),
            *[expr.label(name) for name, expr in sums.items()],
        )
        .where(
            ContentPerformanceScore.tenant_id == tenant_id,
            ContentPerformanceScore.score_date >= start_date,
            ContentPerformanceScore.score_date <= end_date,
        )
        .group_by(ContentPerformanceScore.content_type, ContentPerformanceScore.content_id)
        .order_by(order_by.desc(), ContentPerformanceScore.content_id)
        .limit(limit)
    )
    if content_type:
        query = query.where(ContentPerformanceScore.content_type == content_type.lower())

    rankings = []
    for row in (await db.execute(query)).all():
        counters = {name: row._mapping[name] or 0 for name in CONTENT_COUNTERS}
        derived = content_performance_derived(counters)
        counters.pop("total_time_on_content")
        rankings.append(ContentRanking(
            content_type=row.content_type,
            content_id=row.content_id,
            title=row.title,
            url=row.url,
            **counters,
            **derived,
        ))

    await reporting_cache.set(cache_key, [item.model_dump(mode="json") for item in rankings])
    return rankings


@router.get("/funnels/{funnel_id}", response_model=FunnelReport)
async def get_funnel_report(
    funnel_id: int,
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db_dependency),
) -> FunnelReport:
    """Per-day entrances, step conversions, drop-offs and completions."""
    start_date, end_date = _period(start_date, end_date)

    funnel = await db.get(FunnelDefinition, funnel_id)
    if funnel is None or funnel.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Funnel not found")
    steps = parse_steps(funnel.steps, funnel.conversion_goal)

    stats = (
        await db.execute(
            select(FunnelDailyStat)
            .where(
                FunnelDailyStat.funnel_id == funnel_id,
                FunnelDailyStat.stat_date >= start_date,
                FunnelDailyStat.stat_date <= end_date,
            )
            .order_by(FunnelDailyStat.stat_date)
        )
    ).scalars().all()

    step_rows = (
        await db.execute(
            select(FunnelStepDailyStat).where(
                FunnelStepDailyStat.funnel_id == funnel_id,
                FunnelStepDailyStat.stat_date >= start_date,
                FunnelStepDailyStat.stat_date <= end_date,
            )
        )
    ).scalars().all()
    step_counts: Dict[date, List[int]] = {}
    for row in step_rows:
        counts = step_counts.setdefault(row.stat_date, [0] * len(steps))
        if row.step_index < len(counts):
            counts[row.step_index] = row.conversions

    days = []
    for stat in stats:
        conversions = step_counts.get(stat.stat_date, [0] * len(steps))
        days.append(FunnelDay(
            date=stat.stat_date,
            entrances=stat.entrances,
            completions=stat.completions,
            drop_offs=funnel_drop_offs(stat.entrances, stat.completions),
            step_conversions=conversions,
            step_drop_offs=step_drop_offs(conversions),
            **funnel_daily_derived({
                "entrances": stat.entrances,
                "completions": stat.completions,
                "total_seconds_to_conversion": stat.total_seconds_to_conversion,
            }),
        ))

    return FunnelReport(
        funnel_id=funnel.id,
        name=funnel.name,
        steps=[step.name for step in steps],
        conversion_goal=funnel.conversion_goal,
        target_conversion_rate=funnel.target_conversion_rate,
        days=days,
    )


@router.get("/keywords/{keyword_id}", response_model=KeywordReport)
async def get_keyword_history(
    keyword_id: int,
    tenant_id: int = Query(..., gt=0),
    device: Optional[str] = None,
    location: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db_dependency),
) -> KeywordReport:
    """Ranking history of a tracked keyword."""
    start_date, end_date = _period(start_date, end_date)

    keyword = await db.get(TrackedKeyword, keyword_id)
    if keyword is None or keyword.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Keyword not found")

    query = (
        select(KeywordRankingSample)
        .where(
            KeywordRankingSample.keyword_id == keyword_id,
            KeywordRankingSample.sample_date >= start_date,
            KeywordRankingSample.sample_date <= end_date,
        )
        .order_by(KeywordRankingSample.sample_date, KeywordRankingSample.device, KeywordRankingSample.location)
    )
    if device:
        query = query.where(KeywordRankingSample.device == device)
    if location:
        query = query.where(KeywordRankingSample.location == location)

    samples = (await db.execute(query)).scalars().all()
    return KeywordReport(
        keyword_id=keyword.id,
        keyword=keyword.keyword,
        target_url=keyword.target_url,
        samples=[
            KeywordPoint(
                date=sample.sample_date,
                device=sample.device,
                location=sample.location,
                position=sample.position,
                previous_position=sample.previous_position,
                change=sample.change,
                clicks=sample.clicks,
                impressions=sample.impressions,
                ctr=sample.ctr,
            )
            for sample in samples
        ],
    )


@router.get("/export")
async def export_daily_metrics(
    tenant_id: int = Query(..., gt=0),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    format: Literal["csv", "json"] = "csv",
    db: AsyncSession = Depends(get_db_dependency),
) -> Response:
    """Daily traffic summary as a CSV or JSON download."""
    start_date, end_date = _period(start_date, end_date)
    summary = await _build_summary(db, tenant_id, start_date, end_date)

    df = pl.DataFrame(
        [point.model_dump() for point in summary.days],
        schema={
            "date": pl.Date,
            **{
                name: pl.Int64 if field.annotation is int else pl.Float64
                for name, field in TrafficFigures.model_fields.items()
            },
        },
    )
    filename = f"daily_metrics_{tenant_id}_{start_date}_{end_date}.{format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}

    logger.info("Exporting daily metrics", tenant_id=tenant_id, rows=df.height, format=format)
    if format == "json":
        return Response(content=df.write_json(), media_type="application/json", headers=headers)
    return Response(content=df.write_csv(), media_type="text/csv", headers=headers)
