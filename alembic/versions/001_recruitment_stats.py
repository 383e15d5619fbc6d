"""Recruitment events and daily stats tables.

The daily stats key index uses NULLS NOT DISTINCT (PostgreSQL 15+) so the
overall (brand_id NULL, job_id NULL) row can be the target of ON CONFLICT.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Raw events written by the ingestion pipeline
    op.create_table(
        "recruitment_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("candidate_key", sa.String(255), nullable=True),
        sa.Column("candidate_name", sa.String(255), nullable=True),
        sa.Column("session_id", sa.String(128), nullable=True),
        sa.Column("brand_id", sa.Integer, nullable=True),
        sa.Column("job_id", sa.Integer, nullable=True),
        sa.Column(
            "unread_count_before_reply", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column(
            "was_unread_before_reply", sa.Boolean, nullable=False, server_default="false"
        ),
        sa.CheckConstraint(
            "event_type IN ('message_sent', 'message_received', 'candidate_contacted', "
            "'wechat_exchanged', 'interview_booked', 'candidate_hired')",
            name="ck_recruitment_events_type",
        ),
    )
    op.create_index(
        "ix_recruitment_events_agent_time",
        "recruitment_events",
        ["agent_id", "event_time"],
    )

    # Per-agent daily aggregates, owned by the aggregation worker
    op.create_table(
        "recruitment_daily_stats",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.String(128), nullable=False),
        sa.Column("stat_date", sa.Date, nullable=False),
        sa.Column("brand_id", sa.Integer, nullable=True),
        sa.Column("job_id", sa.Integer, nullable=True),
        sa.Column("total_events", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unique_candidates", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unique_sessions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("messages_sent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("messages_received", sa.Integer, nullable=False, server_default="0"),
        sa.Column("inbound_candidates", sa.Integer, nullable=False, server_default="0"),
        sa.Column("candidates_replied", sa.Integer, nullable=False, server_default="0"),
        sa.Column("unread_replied", sa.Integer, nullable=False, server_default="0"),
        sa.Column("proactive_outreach", sa.Integer, nullable=False, server_default="0"),
        sa.Column("proactive_responded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("wechat_exchanged", sa.Integer, nullable=False, server_default="0"),
        sa.Column("interviews_booked", sa.Integer, nullable=False, server_default="0"),
        sa.Column("candidates_hired", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reply_rate", sa.Integer, nullable=True),
        sa.Column("wechat_rate", sa.Integer, nullable=True),
        sa.Column("interview_rate", sa.Integer, nullable=True),
        sa.Column(
            "last_computed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("total_events >= 0", name="ck_recruitment_daily_stats_total"),
    )
    op.create_index(
        "uq_recruitment_daily_stats_key",
        "recruitment_daily_stats",
        ["agent_id", "stat_date", "brand_id", "job_id"],
        unique=True,
        postgresql_nulls_not_distinct=True,
    )
    op.create_index(
        "ix_recruitment_daily_stats_date",
        "recruitment_daily_stats",
        ["stat_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_recruitment_daily_stats_date", table_name="recruitment_daily_stats")
    op.drop_index("uq_recruitment_daily_stats_key", table_name="recruitment_daily_stats")
    op.drop_table("recruitment_daily_stats")
    op.drop_index("ix_recruitment_events_agent_time", table_name="recruitment_events")
    op.drop_table("recruitment_events")
