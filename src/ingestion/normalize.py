"""
Envelope Normalization

Turns validated request models into the facts the pipeline stores: trims
and truncates text to column limits, derives ``path`` from ``pageUrl``,
keeps only scalar ``extra`` entries, falls back to the User-Agent header
for device and browser, and converts timestamps to naive UTC.
"""

from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from src.aggregation.deltas import (
    SYNTHETIC_EVENT_TYPES,
    ContentDelta,
    EngagementDelta,
    KeywordSample,
)
from src.capture.useragent import classify_browser, classify_device
from src.config import get_settings
from src.core import ValidationError, to_utc_naive
from src.database.models import RawEvent

from .schemas import (
    KeywordRankingRequest,
    TrackContentPerformanceRequest,
    TrackEngagementRequest,
    TrackEventRequest,
)

settings = get_settings()


def clean_text(value: Any, max_len: int) -> Optional[str]:
    text = str(value or "").strip()
    if not text:
        return None
    return text[:max_len]


def clean_extra(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Keep scalar entries only, with bounded key count and text length."""
    if not value:
        return None
    max_len = settings.ingestion.max_text_length
    cleaned: Dict[str, Any] = {}
    for key, raw in value.items():
        key_text = clean_text(key, 80)
        if not key_text:
            continue
        if isinstance(raw, str):
            cleaned[key_text] = raw[:max_len]
        elif isinstance(raw, (int, float, bool)) or raw is None:
            cleaned[key_text] = raw
        else:
            continue
        if len(cleaned) >= settings.ingestion.max_extra_keys:
            break
    return cleaned or None


def path_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parts = urlsplit(url)
    return parts.path or "/"


def normalize_event(request: TrackEventRequest, user_agent: Optional[str] = None) -> RawEvent:
    """
    Build the RawEvent for a tracked interaction.

    The referrer is taken from the envelope only. The Referer header of the
    tracking call names the forum page that sent it, not where the visitor
    came from.

    Raises:
        ValidationError: The event type collides with an internal fact type
    """
    event_type = request.event_type.strip().lower()
    if event_type in SYNTHETIC_EVENT_TYPES:
        raise ValidationError(
            f"eventType '{event_type}' is reserved",
            [{"loc": ["eventType"], "msg": "reserved event type"}],
        )

    return RawEvent(
        event_id=request.event_id,
        tenant_id=request.tenant_id,
        event_type=event_type,
        category=clean_text(request.category, 50),
        action=clean_text(request.action, 100),
        label=clean_text(request.label, 1000),
        numeric_value=request.value,
        session_id=request.session_id or None,
        path=clean_text(request.path or path_from_url(request.page_url), 500),
        device_type=clean_text(request.device_type, 20) or (classify_device(user_agent) if user_agent else None),
        browser=clean_text(request.browser, 50) or (classify_browser(user_agent) if user_agent else None),
        referrer=clean_text(request.referrer, 2000),
        location=clean_text(request.location, 100),
        extra=clean_extra(request.extra),
        occurred_at=to_utc_naive(request.timestamp),
    )


def normalize_engagement(request: TrackEngagementRequest, user_agent: Optional[str] = None) -> EngagementDelta:
    return EngagementDelta(
        tenant_id=request.tenant_id,
        metric_date=request.metric_date,
        device_type=clean_text(request.device_type, 20) or (classify_device(user_agent) if user_agent else None),
        location=clean_text(request.location, 100),
        page_views=request.page_views,
        unique_visitors=request.unique_visitors,
        new_users=request.new_users,
        returning_users=request.returning_users,
        session_id=request.session_id or None,
        session_seconds=request.avg_session_duration,
        bounce=request.bounce_rate,
        event_id=request.event_id,
        referrer=clean_text(request.referrer, 2000),
    )


def normalize_content(request: TrackContentPerformanceRequest) -> ContentDelta:
    return ContentDelta(
        tenant_id=request.tenant_id,
        content_type=request.content_type.lower(),
        content_id=request.content_id,
        score_date=request.score_date,
        title=clean_text(request.title, 1000),
        url=clean_text(request.url, 2000),
        impressions=request.impressions,
        clicks=request.clicks,
        social_shares=request.social_shares,
        comment_count=request.comment_count,
        conversion_count=request.conversion_count,
        avg_time_on_content=request.avg_time_on_content,
        session_id=request.session_id or None,
        event_id=request.event_id,
    )


def normalize_keyword_sample(request: KeywordRankingRequest) -> KeywordSample:
    return KeywordSample(
        tenant_id=request.tenant_id,
        keyword_id=request.keyword_id,
        sample_date=request.sample_date,
        position=request.position,
        device=clean_text(request.device, 20),
        location=clean_text(request.location, 100),
        clicks=request.clicks,
        impressions=request.impressions,
        event_id=request.event_id,
    )
