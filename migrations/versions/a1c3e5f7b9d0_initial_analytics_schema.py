"""initial_analytics_schema

Revision ID: a1c3e5f7b9d0
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d0"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "raw_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(length=64), nullable=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=True),
        sa.Column("label", sa.Text(), nullable=True),
        sa.Column("numeric_value", sa.Float(), nullable=True),
        sa.Column("session_id", sa.String(length=100), nullable=True),
        sa.Column("path", sa.String(length=500), nullable=True),
        sa.Column("device_type", sa.String(length=20), nullable=True),
        sa.Column("browser", sa.String(length=50), nullable=True),
        sa.Column("referrer", sa.String(length=2000), nullable=True),
        sa.Column("location", sa.String(length=100), nullable=True),
        sa.Column("extra", JSON_TYPE, nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("received_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index("ix_raw_events_tenant_time", "raw_events", ["tenant_id", "occurred_at"], unique=False)
    op.create_index("ix_raw_events_session", "raw_events", ["session_id"], unique=False)
    op.create_index("ix_raw_events_type", "raw_events", ["event_type"], unique=False)

    op.create_table(
        "daily_metrics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("metric_date", sa.Date(), nullable=False),
        sa.Column("device_type", sa.String(length=20), nullable=False, server_default="unknown"),
        sa.Column("location", sa.String(length=100), nullable=False, server_default="unknown"),
        sa.Column("page_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_visitors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("returning_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bounce_sessions", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_session_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("content_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("social_shares", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("form_submissions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("search_queries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bounce_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_session_duration", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("bounce_rate >= 0 AND bounce_rate <= 1", name="ck_daily_metrics_bounce_rate_range"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "metric_date", "device_type", "location", name="uq_daily_metrics_key"),
    )
    op.create_index("ix_daily_metrics_tenant_date", "daily_metrics", ["tenant_id", "metric_date"], unique=False)

    op.create_table(
        "content_performance",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("content_type", sa.String(length=50), nullable=False),
        sa.Column("content_id", sa.Integer(), nullable=False),
        sa.Column("score_date", sa.Date(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("url", sa.String(length=2000), nullable=True),
        sa.Column("impressions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("social_shares", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_time_on_content", sa.Float(), nullable=False, server_default="0"),
        sa.Column("ctr", sa.Float(), nullable=False, server_default="0"),
        sa.Column("engagement_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_time_on_content", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("ctr >= 0 AND ctr <= 1", name="ck_content_performance_ctr_range"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id", "content_type", "content_id", "score_date", name="uq_content_performance_key"
        ),
    )
    op.create_index(
        "ix_content_performance_tenant_date", "content_performance", ["tenant_id", "score_date"], unique=False
    )

    op.create_table(
        "conversion_funnels",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("steps", JSON_TYPE, nullable=False),
        sa.Column("conversion_goal", sa.String(length=100), nullable=False),
        sa.Column("target_conversion_rate", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_conversion_funnels_tenant_active", "conversion_funnels", ["tenant_id", "is_active"], unique=False
    )

    op.create_table(
        "funnel_daily_stats",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("funnel_id", sa.Integer(), nullable=False),
        sa.Column("stat_date", sa.Date(), nullable=False),
        sa.Column("entrances", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_seconds_to_conversion", sa.Float(), nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_time_to_conversion", sa.Float(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["funnel_id"], ["conversion_funnels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("funnel_id", "stat_date", name="uq_funnel_daily_stats_key"),
    )

    op.create_table(
        "funnel_step_daily_stats",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("funnel_id", sa.Integer(), nullable=False),
        sa.Column("stat_date", sa.Date(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("conversions", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["funnel_id"], ["conversion_funnels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("funnel_id", "stat_date", "step_index", name="uq_funnel_step_daily_stats_key"),
    )

    op.create_table(
        "tracked_keywords",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("keyword", sa.String(length=255), nullable=False),
        sa.Column("target_url", sa.String(length=2000), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "keyword", name="uq_tracked_keywords_tenant_keyword"),
    )

    op.create_table(
        "keyword_ranking_samples",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("keyword_id", sa.Integer(), nullable=False),
        sa.Column("sample_date", sa.Date(), nullable=False),
        sa.Column("device", sa.String(length=20), nullable=False, server_default="unknown"),
        sa.Column("location", sa.String(length=100), nullable=False, server_default="unknown"),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("impressions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ctr", sa.Float(), nullable=False, server_default="0"),
        sa.Column("previous_position", sa.Integer(), nullable=True),
        sa.Column("change", sa.Integer(), nullable=True),
        sa.CheckConstraint("position >= 1", name="ck_keyword_ranking_samples_position_positive"),
        sa.ForeignKeyConstraint(["keyword_id"], ["tracked_keywords.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "keyword_id", "sample_date", "device", "location", name="uq_keyword_ranking_samples_key"
        ),
    )
    op.create_index(
        "ix_keyword_ranking_samples_series",
        "keyword_ranking_samples",
        ["keyword_id", "device", "location", "sample_date"],
        unique=False,
    )

    op.create_table(
        "session_activity",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("page_view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("device_type", sa.String(length=20), nullable=False, server_default="unknown"),
        sa.Column("location", sa.String(length=100), nullable=False, server_default="unknown"),
        sa.Column("finalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("finalized_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "session_id", name="uq_session_activity_key"),
    )
    op.create_index("ix_session_activity_open", "session_activity", ["finalized", "last_seen_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_session_activity_open", table_name="session_activity")
    op.drop_table("session_activity")
    op.drop_index("ix_keyword_ranking_samples_series", table_name="keyword_ranking_samples")
    op.drop_table("keyword_ranking_samples")
    op.drop_table("tracked_keywords")
    op.drop_table("funnel_step_daily_stats")
    op.drop_table("funnel_daily_stats")
    op.drop_index("ix_conversion_funnels_tenant_active", table_name="conversion_funnels")
    op.drop_table("conversion_funnels")
    op.drop_index("ix_content_performance_tenant_date", table_name="content_performance")
    op.drop_table("content_performance")
    op.drop_index("ix_daily_metrics_tenant_date", table_name="daily_metrics")
    op.drop_table("daily_metrics")
    op.drop_index("ix_raw_events_type", table_name="raw_events")
    op.drop_index("ix_raw_events_session", table_name="raw_events")
    op.drop_index("ix_raw_events_tenant_time", table_name="raw_events")
    op.drop_table("raw_events")
