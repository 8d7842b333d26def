"""
Aggregation Deltas

Typed increments applied by the RollupAggregator. Every delta round-trips
through a RawEvent (``to_raw_event`` / ``from_raw_event``) so that the event
store alone is enough to rebuild the rollups.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from src.core import utc_now
from src.database.models import RawEvent, UNKNOWN_DIMENSION

# Synthetic event types recorded for non-event facts
ENGAGEMENT_EVENT = "engagement"
CONTENT_PERFORMANCE_EVENT = "content_performance"
KEYWORD_SAMPLE_EVENT = "keyword_sample"
SESSION_EXPIRED_EVENT = "session_expired"

SYNTHETIC_EVENT_TYPES = frozenset({
    ENGAGEMENT_EVENT,
    CONTENT_PERFORMANCE_EVENT,
    KEYWORD_SAMPLE_EVENT,
    SESSION_EXPIRED_EVENT,
})

# Interaction event type -> DailyMetric counter it owns
INTERACTION_COUNTERS: Dict[str, str] = {
    "content_view": "content_views",
    "content_click": "content_clicks",
    "social_share": "social_shares",
    "form_submit": "form_submissions",
    "conversion": "conversions",
    "search": "search_queries",
}


def dimension(value: Optional[str]) -> str:
    value = (value or "").strip()
    return value or UNKNOWN_DIMENSION


def referrer_source(referrer: Optional[str]) -> Optional[str]:
    """
    Referring source of a landing page view: the referrer's host, lowercased
    and without ``www.``. Referrers without a host are kept as given.
    """
    referrer = (referrer or "").strip()
    if not referrer:
        return None
    host = urlsplit(referrer).hostname if "//" in referrer else None
    if not host:
        return referrer[:255].lower()
    if host.startswith("www."):
        host = host[4:]
    return host[:255]


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


@dataclass
class EngagementDelta:
    """Traffic and session counters for one (tenant, day, device, location)"""

    tenant_id: int
    metric_date: date
    device_type: str = UNKNOWN_DIMENSION
    location: str = UNKNOWN_DIMENSION
    page_views: int = 0
    unique_visitors: int = 0
    new_users: int = 0
    returning_users: int = 0
    session_id: Optional[str] = None
    # Session part, present only on session-end deltas
    session_seconds: Optional[float] = None
    bounce: Optional[float] = None
    event_id: Optional[str] = None
    referrer: Optional[str] = None

    def __post_init__(self) -> None:
        self.device_type = dimension(self.device_type)
        self.location = dimension(self.location)

    @property
    def has_session_part(self) -> bool:
        return self.session_seconds is not None or self.bounce is not None

    def traffic_counters(self) -> Dict[str, int]:
        counters = {
            "page_views": self.page_views,
            "unique_visitors": self.unique_visitors,
            "new_users": self.new_users,
            "returning_users": self.returning_users,
        }
        return {name: value for name, value in counters.items() if value}

    def session_counters(self) -> Dict[str, float]:
        return {
            "sessions": 1,
            "bounce_sessions": float(self.bounce or 0),
            "total_session_seconds": float(self.session_seconds or 0),
        }

    def to_raw_event(self, received_at: Optional[datetime] = None) -> RawEvent:
        extra: Dict[str, Any] = {
            "metricDate": self.metric_date.isoformat(),
            "pageViews": self.page_views,
            "uniqueVisitors": self.unique_visitors,
            "newUsers": self.new_users,
            "returningUsers": self.returning_users,
        }
        if self.session_seconds is not None:
            extra["avgSessionDuration"] = self.session_seconds
        if self.bounce is not None:
            extra["bounceRate"] = self.bounce
        return RawEvent(
            event_id=self.event_id,
            tenant_id=self.tenant_id,
            event_type=ENGAGEMENT_EVENT,
            session_id=self.session_id,
            device_type=self.device_type,
            location=self.location,
            referrer=self.referrer,
            extra=extra,
            occurred_at=received_at or utc_now(),
        )

    @classmethod
    def from_raw_event(cls, event: RawEvent) -> "EngagementDelta":
        extra = event.extra or {}
        return cls(
            tenant_id=event.tenant_id,
            metric_date=_parse_date(extra.get("metricDate") or event.occurred_at.date()),
            device_type=event.device_type,
            location=event.location,
            page_views=int(extra.get("pageViews") or 0),
            unique_visitors=int(extra.get("uniqueVisitors") or 0),
            new_users=int(extra.get("newUsers") or 0),
            returning_users=int(extra.get("returningUsers") or 0),
            session_id=event.session_id,
            session_seconds=extra.get("avgSessionDuration"),
            bounce=extra.get("bounceRate"),
            event_id=event.event_id,
            referrer=event.referrer,
        )


@dataclass
class ContentDelta:
    """Per-content counters for one (tenant, content, day)"""

    tenant_id: int
    content_type: str
    content_id: int
    score_date: date
    title: Optional[str] = None
    url: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    social_shares: int = 0
    comment_count: int = 0
    conversion_count: int = 0
    avg_time_on_content: Optional[float] = None
    session_id: Optional[str] = None
    event_id: Optional[str] = None

    def counters(self) -> Dict[str, Any]:
        counters: Dict[str, Any] = {
            "impressions": self.impressions,
            "clicks": self.clicks,
            "social_shares": self.social_shares,
            "comment_count": self.comment_count,
            "conversion_count": self.conversion_count,
        }
        if self.avg_time_on_content:
            # The client reports an average over the impressions it sends
            counters["total_time_on_content"] = float(self.avg_time_on_content) * max(self.impressions, 1)
        return {name: value for name, value in counters.items() if value}

    def to_raw_event(self, received_at: Optional[datetime] = None) -> RawEvent:
        extra: Dict[str, Any] = {
            "contentType": self.content_type,
            "contentId": self.content_id,
            "scoreDate": self.score_date.isoformat(),
            "impressions": self.impressions,
            "clicks": self.clicks,
            "socialShares": self.social_shares,
            "commentCount": self.comment_count,
            "conversionCount": self.conversion_count,
        }
        if self.avg_time_on_content is not None:
            extra["avgTimeOnContent"] = self.avg_time_on_content
        return RawEvent(
            event_id=self.event_id,
            tenant_id=self.tenant_id,
            event_type=CONTENT_PERFORMANCE_EVENT,
            category=self.content_type,
            label=self.title,
            path=self.url,
            session_id=self.session_id,
            extra=extra,
            occurred_at=received_at or utc_now(),
        )

    @classmethod
    def from_raw_event(cls, event: RawEvent) -> "ContentDelta":
        extra = event.extra or {}
        return cls(
            tenant_id=event.tenant_id,
            content_type=extra.get("contentType") or event.category,
            content_id=int(extra["contentId"]),
            score_date=_parse_date(extra.get("scoreDate") or event.occurred_at.date()),
            title=event.label,
            url=event.path,
            impressions=int(extra.get("impressions") or 0),
            clicks=int(extra.get("clicks") or 0),
            social_shares=int(extra.get("socialShares") or 0),
            comment_count=int(extra.get("commentCount") or 0),
            conversion_count=int(extra.get("conversionCount") or 0),
            avg_time_on_content=extra.get("avgTimeOnContent"),
            session_id=event.session_id,
            event_id=event.event_id,
        )


@dataclass
class KeywordSample:
    """One search-position observation; a snapshot, not an increment"""

    tenant_id: int
    keyword_id: int
    sample_date: date
    position: int
    device: str = UNKNOWN_DIMENSION
    location: str = UNKNOWN_DIMENSION
    clicks: int = 0
    impressions: int = 0
    event_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.device = dimension(self.device)
        self.location = dimension(self.location)

    def to_raw_event(self, received_at: Optional[datetime] = None) -> RawEvent:
        return RawEvent(
            event_id=self.event_id,
            tenant_id=self.tenant_id,
            event_type=KEYWORD_SAMPLE_EVENT,
            device_type=self.device,
            location=self.location,
            numeric_value=float(self.position),
            extra={
                "keywordId": self.keyword_id,
                "sampleDate": self.sample_date.isoformat(),
                "position": self.position,
                "clicks": self.clicks,
                "impressions": self.impressions,
            },
            occurred_at=received_at or utc_now(),
        )

    @classmethod
    def from_raw_event(cls, event: RawEvent) -> "KeywordSample":
        extra = event.extra or {}
        return cls(
            tenant_id=event.tenant_id,
            keyword_id=int(extra["keywordId"]),
            sample_date=_parse_date(extra.get("sampleDate") or event.occurred_at.date()),
            position=int(extra["position"]),
            device=event.device_type,
            location=event.location,
            clicks=int(extra.get("clicks") or 0),
            impressions=int(extra.get("impressions") or 0),
            event_id=event.event_id,
        )


@dataclass
class SessionSummary:
    """Final figures of a session closed by the expiry sweep"""

    tenant_id: int
    session_id: str
    started_at: datetime
    duration_seconds: float
    page_view_count: int
    device_type: str = UNKNOWN_DIMENSION
    location: str = UNKNOWN_DIMENSION

    @property
    def is_bounce(self) -> bool:
        return self.page_view_count <= 1

    def to_engagement_delta(self) -> EngagementDelta:
        return EngagementDelta(
            tenant_id=self.tenant_id,
            metric_date=self.started_at.date(),
            device_type=self.device_type,
            location=self.location,
            session_id=self.session_id,
            session_seconds=max(0.0, self.duration_seconds),
            bounce=1.0 if self.is_bounce else 0.0,
        )

    def to_raw_event(self, received_at: Optional[datetime] = None) -> RawEvent:
        return RawEvent(
            tenant_id=self.tenant_id,
            event_type=SESSION_EXPIRED_EVENT,
            session_id=self.session_id,
            device_type=self.device_type,
            location=self.location,
            numeric_value=self.duration_seconds,
            extra={
                "startedAt": self.started_at.isoformat(),
                "durationSeconds": self.duration_seconds,
                "pageViewCount": self.page_view_count,
            },
            occurred_at=received_at or utc_now(),
        )

    @classmethod
    def from_raw_event(cls, event: RawEvent) -> "SessionSummary":
        extra = event.extra or {}
        started_at = extra.get("startedAt")
        return cls(
            tenant_id=event.tenant_id,
            session_id=event.session_id,
            started_at=datetime.fromisoformat(started_at) if started_at else event.occurred_at,
            duration_seconds=float(extra.get("durationSeconds") or 0),
            page_view_count=int(extra.get("pageViewCount") or 0),
            device_type=dimension(event.device_type),
            location=dimension(event.location),
        )
