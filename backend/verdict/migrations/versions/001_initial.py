"""Create insights, outcomes, creator_scores and resolution_runs.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "insights",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("creator_id", sa.String(64), nullable=True),
        sa.Column("canonical", sa.Text(), nullable=False),
        sa.Column("resolver_kind", sa.String(10), nullable=False),
        sa.Column("resolver_ref", sa.Text(), nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="OPEN", nullable=False),
        sa.Column("stated_probability", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("resolver_kind IN ('PRICE','URL','TEXT')", name="ck_insights_resolver_kind"),
        sa.CheckConstraint("status IN ('OPEN','COMMITTED','RESOLVED')", name="ck_insights_status"),
    )
    op.create_index("ix_insights_creator_id", "insights", ["creator_id"])
    op.create_index("idx_insights_status_deadline", "insights", ["status", "deadline"])

    op.create_table(
        "outcomes",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("insight_id", sa.String(64), nullable=False),
        sa.Column("result", sa.String(10), nullable=False),
        sa.Column("evidence_url", sa.Text(), nullable=True),
        sa.Column("evidence_meta", postgresql.JSONB(), nullable=True),
        sa.Column("decided_by", sa.String(10), nullable=False),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["insight_id"], ["insights.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("insight_id", name="uq_outcomes_insight_id"),
        sa.CheckConstraint("result IN ('YES','NO','INVALID')", name="ck_outcomes_result"),
        sa.CheckConstraint("decided_by IN ('AGENT','USER')", name="ck_outcomes_decided_by"),
    )
    op.create_index("idx_outcomes_decided_at", "outcomes", ["decided_at"])

    op.create_table(
        "creator_scores",
        sa.Column("creator_id", sa.String(64), nullable=False),
        sa.Column("score_window", sa.String(10), nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.Column("mean_brier", sa.Float(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=False),
        sa.Column("reliability", sa.Float(), server_default="0.0", nullable=True),
        sa.Column("resolution", sa.Float(), server_default="0.0", nullable=True),
        sa.Column("uncertainty", sa.Float(), server_default="0.0", nullable=True),
        sa.Column("calibration", postgresql.JSONB(), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("creator_id", "score_window"),
        sa.CheckConstraint("score_window IN ('ALL','90D')", name="ck_creator_scores_window"),
    )
    op.create_index("idx_creator_scores_window_score", "creator_scores", ["score_window", "score"])

    op.create_table(
        "resolution_runs",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("run_trigger", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("took_ms", sa.Integer(), server_default="0", nullable=True),
        sa.Column("considered", sa.Integer(), server_default="0", nullable=True),
        sa.Column("resolved", sa.Integer(), server_default="0", nullable=True),
        sa.Column("failed", sa.Integer(), server_default="0", nullable=True),
        sa.Column("skipped", sa.Integer(), server_default="0", nullable=True),
        sa.Column("deferred", sa.Integer(), server_default="0", nullable=True),
        sa.Column("cancelled", sa.Boolean(), server_default="false", nullable=True),
        sa.Column("outcomes", postgresql.JSONB(), nullable=True),
        sa.Column("failures", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_resolution_runs_started_at", "resolution_runs", ["started_at"])


def downgrade() -> None:
    op.drop_index("ix_resolution_runs_started_at", table_name="resolution_runs")
    op.drop_table("resolution_runs")
    op.drop_index("idx_creator_scores_window_score", table_name="creator_scores")
    op.drop_table("creator_scores")
    op.drop_index("idx_outcomes_decided_at", table_name="outcomes")
    op.drop_table("outcomes")
    op.drop_index("idx_insights_status_deadline", table_name="insights")
    op.drop_index("ix_insights_creator_id", table_name="insights")
    op.drop_table("insights")
