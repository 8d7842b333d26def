"""
Ingestion Envelopes

Request models for the tracking endpoints. Field names follow the capture
client's camelCase wire format; the aliases sent by older clients
(``forumId``, ``eventCategory``, ``browserInfo``, ...) are accepted too.
"""

from datetime import date, datetime
from typing import Any, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Envelope(BaseModel):
    """Common envelope behaviour"""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")

    tenant_id: int = Field(gt=0, validation_alias=AliasChoices("tenantId", "forumId", "tenant_id"))
    event_id: Optional[str] = Field(
        default=None, min_length=1, max_length=64, validation_alias=AliasChoices("eventId", "event_id")
    )
    session_id: Optional[str] = Field(
        default=None, max_length=100, validation_alias=AliasChoices("sessionId", "session_id")
    )


class TrackEventRequest(Envelope):
    """One tracked interaction"""

    event_type: str = Field(min_length=1, max_length=50, validation_alias=AliasChoices("eventType", "event_type"))
    timestamp: datetime
    path: Optional[str] = None
    page_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("pageUrl", "page_url"))
    device_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceType", "device_type"))
    browser: Optional[str] = Field(default=None, validation_alias=AliasChoices("browser", "browserInfo"))
    referrer: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = Field(default=None, validation_alias=AliasChoices("category", "eventCategory"))
    action: Optional[str] = Field(default=None, validation_alias=AliasChoices("action", "eventAction"))
    label: Optional[str] = Field(default=None, validation_alias=AliasChoices("label", "eventLabel"))
    value: Optional[float] = Field(default=None, validation_alias=AliasChoices("value", "eventValue"))
    extra: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("extra", "additionalData"))

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> Any:
        # Epoch numbers are ambiguous (s vs ms), quoted or not; only ISO-8601 is accepted
        if isinstance(v, datetime):
            return v
        if not isinstance(v, str) or v.lstrip("+-").replace(".", "", 1).isdigit():
            raise ValueError("timestamp must be an ISO-8601 string")
        try:
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("timestamp must be an ISO-8601 string") from None


class TrackEngagementRequest(Envelope):
    """Traffic and session delta for one day"""

    metric_date: date = Field(validation_alias=AliasChoices("date", "metricDate"))
    page_views: int = Field(default=0, ge=0, validation_alias=AliasChoices("pageViews", "page_views"))
    unique_visitors: int = Field(default=0, ge=0, validation_alias=AliasChoices("uniqueVisitors", "unique_visitors"))
    new_users: int = Field(default=0, ge=0, validation_alias=AliasChoices("newUsers", "new_users"))
    returning_users: int = Field(default=0, ge=0, validation_alias=AliasChoices("returningUsers", "returning_users"))
    avg_session_duration: Optional[float] = Field(
        default=None, ge=0, validation_alias=AliasChoices("avgSessionDuration", "avg_session_duration")
    )
    bounce_rate: Optional[float] = Field(
        default=None, ge=0, le=1, validation_alias=AliasChoices("bounceRate", "bounce_rate")
    )
    device_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceType", "device_type"))
    location: Optional[str] = None
    referrer: Optional[str] = None


class TrackContentPerformanceRequest(Envelope):
    """Per-content delta for one day"""

    content_type: str = Field(min_length=1, max_length=50, validation_alias=AliasChoices("contentType", "content_type"))
    content_id: int = Field(gt=0, validation_alias=AliasChoices("contentId", "content_id"))
    score_date: date = Field(validation_alias=AliasChoices("scoreDate", "score_date"))
    title: Optional[str] = None
    url: Optional[str] = None
    impressions: int = Field(default=0, ge=0)
    clicks: int = Field(default=0, ge=0)
    social_shares: int = Field(default=0, ge=0, validation_alias=AliasChoices("socialShares", "social_shares"))
    comment_count: int = Field(default=0, ge=0, validation_alias=AliasChoices("commentCount", "comment_count"))
    conversion_count: int = Field(default=0, ge=0, validation_alias=AliasChoices("conversionCount", "conversion_count"))
    avg_time_on_content: Optional[float] = Field(
        default=None, ge=0, validation_alias=AliasChoices("avgTimeOnContent", "avg_time_on_content")
    )


class KeywordRankingRequest(Envelope):
    """One search-position sample for a tracked keyword"""

    keyword_id: int = Field(gt=0, validation_alias=AliasChoices("keywordId", "keyword_id"))
    sample_date: date = Field(validation_alias=AliasChoices("date", "sampleDate", "sample_date"))
    position: int = Field(ge=1)
    device: Optional[str] = None
    location: Optional[str] = None
    clicks: int = Field(default=0, ge=0)
    impressions: int = Field(default=0, ge=0)


class IngestResponse(BaseModel):
    """Response of every tracking endpoint"""
    success: bool = True
    status: Literal["recorded", "duplicate", "queued", "dropped"]
