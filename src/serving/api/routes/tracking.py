"""
Tracking Endpoints

Write side of the analytics API, called by the capture client. Every
accepted envelope is answered with 201 whatever happens downstream;
only validation failures are reported back (400).
"""

from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header
from sqlalchemy import select

from src.core import ValidationError
from src.database import get_db
from src.database.models import TrackedKeyword
from src.ingestion.metrics import EVENTS_RECEIVED, INGEST_LATENCY
from src.ingestion.normalize import (
    normalize_content,
    normalize_engagement,
    normalize_event,
    normalize_keyword_sample,
)
from src.ingestion.pipeline import IngestionPipeline, IngestResult, get_pipeline
from src.ingestion.schemas import (
    IngestResponse,
    KeywordRankingRequest,
    TrackContentPerformanceRequest,
    TrackEngagementRequest,
    TrackEventRequest,
)

router = APIRouter()
logger = structlog.get_logger(__name__)


def _respond(route: str, result: IngestResult) -> IngestResponse:
    EVENTS_RECEIVED.labels(route=route, status=result.status).inc()
    return IngestResponse(success=True, status=result.status)


@router.post("/track-event", response_model=IngestResponse, status_code=201)
async def track_event(
    payload: TrackEventRequest,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    user_agent: Optional[str] = Header(default=None),
) -> IngestResponse:
    """Record a tracked interaction (page view, click, conversion, ...)."""
    with INGEST_LATENCY.labels(route="track-event").time():
        event = normalize_event(payload, user_agent=user_agent)
        result = await pipeline.ingest(event, background_tasks)
    return _respond("track-event", result)


@router.post("/track-user-engagement", response_model=IngestResponse, status_code=201)
async def track_user_engagement(
    payload: TrackEngagementRequest,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    user_agent: Optional[str] = Header(default=None),
) -> IngestResponse:
    """Add a traffic/session delta to the day's DailyMetric row."""
    with INGEST_LATENCY.labels(route="track-user-engagement").time():
        delta = normalize_engagement(payload, user_agent=user_agent)
        result = await pipeline.ingest(delta.to_raw_event(), background_tasks)
    return _respond("track-user-engagement", result)


@router.post("/track-content-performance", response_model=IngestResponse, status_code=201)
async def track_content_performance(
    payload: TrackContentPerformanceRequest,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Add a per-content delta to the day's ContentPerformanceScore row."""
    with INGEST_LATENCY.labels(route="track-content-performance").time():
        delta = normalize_content(payload)
        result = await pipeline.ingest(delta.to_raw_event(), background_tasks)
    return _respond("track-content-performance", result)


@router.post("/keyword-rankings", response_model=IngestResponse, status_code=201)
async def record_keyword_ranking(
    payload: KeywordRankingRequest,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> IngestResponse:
    """Record a search-position sample for a tracked keyword."""
    async with get_db() as db:
        keyword = await db.scalar(
            select(TrackedKeyword.id).where(
                TrackedKeyword.id == payload.keyword_id,
                TrackedKeyword.tenant_id == payload.tenant_id,
            )
        )
    if keyword is None:
        raise ValidationError(
            "Unknown keyword for tenant",
            [{"loc": ["keywordId"], "msg": f"keyword {payload.keyword_id} is not tracked"}],
        )

    with INGEST_LATENCY.labels(route="keyword-rankings").time():
        sample = normalize_keyword_sample(payload)
        result = await pipeline.ingest(sample.to_raw_event(), background_tasks)
    return _respond("keyword-rankings", result)
