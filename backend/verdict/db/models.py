"""
SQLAlchemy ORM models for the Verdict service.

The insights table is owned by the authoring service; this service only
flips its status. Outcomes, creator scores and the run audit log are owned here.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from verdict.infrastructure.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

class InsightModel(Base):
    __tablename__ = "insights"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    creator_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    canonical: Mapped[str] = mapped_column(Text, nullable=False)
    resolver_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    resolver_ref: Mapped[Optional[str]] = mapped_column(Text)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="OPEN", nullable=False)
    stated_probability: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("resolver_kind IN ('PRICE','URL','TEXT')", name="ck_insights_resolver_kind"),
        CheckConstraint("status IN ('OPEN','COMMITTED','RESOLVED')", name="ck_insights_status"),
        Index("idx_insights_status_deadline", "status", "deadline"),
    )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class OutcomeModel(Base):
    __tablename__ = "outcomes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    insight_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("insights.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    result: Mapped[str] = mapped_column(String(10), nullable=False)
    evidence_url: Mapped[Optional[str]] = mapped_column(Text)
    evidence_meta: Mapped[Optional[dict]] = mapped_column(JSONType)
    decided_by: Mapped[str] = mapped_column(String(10), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("result IN ('YES','NO','INVALID')", name="ck_outcomes_result"),
        CheckConstraint("decided_by IN ('AGENT','USER')", name="ck_outcomes_decided_by"),
        Index("idx_outcomes_decided_at", "decided_at"),
    )


# ---------------------------------------------------------------------------
# Creator scores
# ---------------------------------------------------------------------------

class CreatorScoreModel(Base):
    __tablename__ = "creator_scores"

    creator_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    window: Mapped[str] = mapped_column("score_window", String(10), primary_key=True)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)
    mean_brier: Mapped[float] = mapped_column(Float, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    reliability: Mapped[float] = mapped_column(Float, default=0.0)
    resolution: Mapped[float] = mapped_column(Float, default=0.0)
    uncertainty: Mapped[float] = mapped_column(Float, default=0.0)
    calibration: Mapped[Optional[list]] = mapped_column(JSONType)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("score_window IN ('ALL','90D')", name="ck_creator_scores_window"),
        Index("idx_creator_scores_window_score", "score_window", "score"),
    )


# ---------------------------------------------------------------------------
# Resolution run audit log
# ---------------------------------------------------------------------------

class ResolutionRunModel(Base):
    __tablename__ = "resolution_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trigger: Mapped[str] = mapped_column("run_trigger", String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    took_ms: Mapped[int] = mapped_column(Integer, default=0)
    considered: Mapped[int] = mapped_column(Integer, default=0)
    resolved: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    deferred: Mapped[int] = mapped_column(Integer, default=0)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    outcomes: Mapped[Optional[dict]] = mapped_column(JSONType)
    failures: Mapped[Optional[list]] = mapped_column(JSONType)
    error: Mapped[Optional[str]] = mapped_column(Text)
