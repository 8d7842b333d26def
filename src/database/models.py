"""
Database Models - Event Store and Daily Rollups

This module defines the persisted schema of the analytics engine. It consists of:

Event Store:
- RawEvent: append-only record of every accepted envelope

Rollup Tables (one row per natural key, additive counters):
- DailyMetric: traffic and engagement per tenant/day/device/location
- ContentPerformanceScore: per content item per day
- FunnelDailyStat / FunnelStepDailyStat: funnel entrances, steps, completions
- ReferrerDailyStat: landing page views per referring source
- KeywordRankingSample: search position samples

Configuration and bookkeeping:
- FunnelDefinition: ordered funnel steps per tenant
- TrackedKeyword: keywords whose rankings are sampled
- SessionActivity: server-side session heartbeat/expiry state
- FunnelSessionProgress: furthest funnel step each session reached

Every rollup table carries a UNIQUE constraint on its natural key; the
aggregator relies on it for insert-or-increment upserts.
"""

from datetime import datetime, date
from typing import Optional, List

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

UNKNOWN_DIMENSION = "unknown"


# =============================================================================
# EVENT STORE
# =============================================================================

class RawEvent(Base):
    """
    Raw Event Table

    Immutable record of one accepted envelope. Written once by the ingestion
    pipeline before any aggregation happens, and the source for replays.
    """
    __tablename__ = "raw_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Client-generated idempotency key; NULL for legacy clients
    event_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)

    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    action: Mapped[Optional[str]] = mapped_column(String(100))
    label: Mapped[Optional[str]] = mapped_column(Text)
    numeric_value: Mapped[Optional[float]] = mapped_column(Float)

    # Context
    session_id: Mapped[Optional[str]] = mapped_column(String(100))
    path: Mapped[Optional[str]] = mapped_column(String(500))
    device_type: Mapped[Optional[str]] = mapped_column(String(20))
    browser: Mapped[Optional[str]] = mapped_column(String(50))
    referrer: Mapped[Optional[str]] = mapped_column(String(2000))
    location: Mapped[Optional[str]] = mapped_column(String(100))

    extra: Mapped[Optional[dict]] = mapped_column(JSONType)

    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_raw_events_tenant_time", "tenant_id", "occurred_at"),
        Index("ix_raw_events_session", "session_id"),
        Index("ix_raw_events_type", "event_type"),
    )


# =============================================================================
# ROLLUP TABLES
# =============================================================================

class DailyMetric(Base):
    """
    Daily Metric Rollup

    Grain: one row per (tenant, date, device, location). The per-tenant/day
    figure is a read-side sum across device and location.
    """
    __tablename__ = "daily_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    device_type: Mapped[str] = mapped_column(String(20), nullable=False, default=UNKNOWN_DIMENSION)
    location: Mapped[str] = mapped_column(String(100), nullable=False, default=UNKNOWN_DIMENSION)

    # Traffic counters
    page_views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_visitors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    returning_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Session counters
    sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bounce_sessions: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    total_session_seconds: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    # Content interaction counters
    content_views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    content_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    social_shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    form_submissions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    search_queries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Derived
    bounce_rate: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    avg_session_duration: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "metric_date", "device_type", "location",
            name="uq_daily_metrics_key",
        ),
        Index("ix_daily_metrics_tenant_date", "tenant_id", "metric_date"),
    )


class ContentPerformanceScore(Base):
    """
    Content Performance Rollup

    Grain: one row per (tenant, content type, content id, day).
    """
    __tablename__ = "content_performance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(String(50), nullable=False)
    content_id: Mapped[int] = mapped_column(Integer, nullable=False)
    score_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Descriptive, last non-null value wins
    title: Mapped[Optional[str]] = mapped_column(Text)
    url: Mapped[Optional[str]] = mapped_column(String(2000))

    # Additive counters
    impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    social_shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversion_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_time_on_content: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    # Derived
    ctr: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    engagement_rate: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    avg_time_on_content: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "content_type", "content_id", "score_date",
            name="uq_content_performance_key",
        ),
        Index("ix_content_performance_tenant_date", "tenant_id", "score_date"),
    )


# =============================================================================
# FUNNELS
# =============================================================================

class FunnelDefinition(Base):
    """
    Conversion Funnel Definition

    Authored by operators; the engine only reads it. ``steps`` is an ordered
    JSON list of step names or matcher mappings.
    """
    __tablename__ = "conversion_funnels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    steps: Mapped[list] = mapped_column(JSONType, nullable=False)
    conversion_goal: Mapped[str] = mapped_column(String(100), nullable=False)
    target_conversion_rate: Mapped[Optional[float]] = mapped_column(Float)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    daily_stats: Mapped[List["FunnelDailyStat"]] = relationship(
        back_populates="funnel", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_conversion_funnels_tenant_active", "tenant_id", "is_active"),
    )


class FunnelDailyStat(Base):
    """
    Funnel Daily Rollup

    Grain: one row per (funnel, day). Step counts live in
    FunnelStepDailyStat; drop-offs are derived, never stored.
    """
    __tablename__ = "funnel_daily_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funnel_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversion_funnels.id", ondelete="CASCADE"), nullable=False
    )
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)

    entrances: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_seconds_to_conversion: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    # Derived
    conversion_rate: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    avg_time_to_conversion: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    funnel: Mapped["FunnelDefinition"] = relationship(back_populates="daily_stats")

    __table_args__ = (
        UniqueConstraint("funnel_id", "stat_date", name="uq_funnel_daily_stats_key"),
    )


class FunnelStepDailyStat(Base):
    """
    Funnel Step Daily Rollup

    Grain: one row per (funnel, day, step index). Count of sessions that
    reached the step, attributed to the session's entry day.
    """
    __tablename__ = "funnel_step_daily_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funnel_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversion_funnels.id", ondelete="CASCADE"), nullable=False
    )
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "funnel_id", "stat_date", "step_index",
            name="uq_funnel_step_daily_stats_key",
        ),
    )


class ReferrerDailyStat(Base):
    """
    Referrer Daily Rollup

    Grain: one row per (tenant, day, source). ``source`` is the referring
    host without a leading ``www.``.
    """
    __tablename__ = "referrer_daily_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    visits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "stat_date", "source", name="uq_referrer_daily_stats_key"),
        Index("ix_referrer_daily_stats_tenant_date", "tenant_id", "stat_date"),
    )


# =============================================================================
# KEYWORD RANKINGS
# =============================================================================

class TrackedKeyword(Base):
    """Keyword tracked for search position"""
    __tablename__ = "tracked_keywords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    target_url: Mapped[Optional[str]] = mapped_column(String(2000))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "keyword", name="uq_tracked_keywords_tenant_keyword"),
    )


class KeywordRankingSample(Base):
    """
    Keyword Ranking Sample

    Grain: one row per (keyword, date, device, location). ``previous_position``
    caches the position of the prior sample with the same keyword/device/
    location; ``change`` is positive when the rank improved.
    """
    __tablename__ = "keyword_ranking_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    keyword_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_keywords.id", ondelete="CASCADE"), nullable=False
    )
    sample_date: Mapped[date] = mapped_column(Date, nullable=False)
    device: Mapped[str] = mapped_column(String(20), nullable=False, default=UNKNOWN_DIMENSION)
    location: Mapped[str] = mapped_column(String(100), nullable=False, default=UNKNOWN_DIMENSION)

    position: Mapped[int] = mapped_column(Integer, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ctr: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    previous_position: Mapped[Optional[int]] = mapped_column(Integer)
    change: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint(
            "keyword_id", "sample_date", "device", "location",
            name="uq_keyword_ranking_samples_key",
        ),
        Index("ix_keyword_ranking_samples_series", "keyword_id", "device", "location", "sample_date"),
    )


# =============================================================================
# SESSION BOOKKEEPING
# =============================================================================

class SessionActivity(Base):
    """
    Session Activity

    Server-side view of a client session, kept current by page views and
    heartbeats. A session's duration/bounce contribution is counted exactly
    once: whoever flips ``finalized`` first (client session_end delta or the
    expiry sweep) writes it.
    """
    __tablename__ = "session_activity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    page_view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    device_type: Mapped[str] = mapped_column(String(20), nullable=False, default=UNKNOWN_DIMENSION)
    location: Mapped[str] = mapped_column(String(100), nullable=False, default=UNKNOWN_DIMENSION)

    finalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("tenant_id", "session_id", name="uq_session_activity_key"),
        Index("ix_session_activity_open", "finalized", "last_seen_at"),
    )


class FunnelSessionProgress(Base):
    """
    Funnel Session Progress

    Furthest step one session reached in one funnel. Advanced in the same
    transaction that counts the step, so a failed count never leaves the
    session ahead of the rollups. Rows idle past the progress TTL are pruned
    by the expiry sweep.
    """
    __tablename__ = "funnel_session_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funnel_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversion_funnels.id", ondelete="CASCADE"), nullable=False
    )
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)

    step_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    entered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("funnel_id", "session_id", name="uq_funnel_session_progress_key"),
        Index("ix_funnel_session_progress_updated", "updated_at"),
    )
