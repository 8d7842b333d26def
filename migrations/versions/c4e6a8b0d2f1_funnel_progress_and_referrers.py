"""funnel_progress_and_referrers

Revision ID: c4e6a8b0d2f1
Revises: a1c3e5f7b9d0
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "c4e6a8b0d2f1"
down_revision: Union[str, None] = "a1c3e5f7b9d0"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "referrer_daily_stats",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("stat_date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(length=255), nullable=False),
        sa.Column("visits", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "stat_date", "source", name="uq_referrer_daily_stats_key"),
    )
    op.create_index(
        "ix_referrer_daily_stats_tenant_date", "referrer_daily_stats", ["tenant_id", "stat_date"], unique=False
    )

    op.create_table(
        "funnel_session_progress",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("funnel_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("entered_at", sa.DateTime(), nullable=False),
        sa.Column("entry_date", sa.Date(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["funnel_id"], ["conversion_funnels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("funnel_id", "session_id", name="uq_funnel_session_progress_key"),
    )
    op.create_index(
        "ix_funnel_session_progress_updated", "funnel_session_progress", ["updated_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_funnel_session_progress_updated", table_name="funnel_session_progress")
    op.drop_table("funnel_session_progress")
    op.drop_index("ix_referrer_daily_stats_tenant_date", table_name="referrer_daily_stats")
    op.drop_table("referrer_daily_stats")
