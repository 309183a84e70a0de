"""
Scoring data models.
Per-creator score records, calibration histograms, and leaderboard views.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from verdict.models.resolution import OutcomeResult


class ScoreWindow(str, Enum):
    """Period a score record covers."""
    ALL = "ALL"
    D90 = "90D"

    @classmethod
    def parse(cls, value: str) -> "ScoreWindow":
        normalized = (value or "").strip().upper()
        if normalized in ("ALL", "ALL_TIME", "ALLTIME"):
            return cls.ALL
        if normalized in ("90D", "D90", "90"):
            return cls.D90
        raise ValueError(f"Unknown score window: {value!r}")


@dataclass(frozen=True)
class ScoredPrediction:
    """One resolved insight as seen by the score calculator."""
    probability: float
    result: OutcomeResult
    decided_at: Optional[datetime] = None


class CalibrationBucket(BaseModel):
    """One decile of the calibration histogram."""
    bucket: int = Field(..., ge=0, le=9)
    lower: float
    upper: float
    count: int = 0
    predicted_mean: Optional[float] = None
    realized_frequency: Optional[float] = None


class BrierDecomposition(BaseModel):
    reliability: float = 0.0
    resolution: float = 0.0
    uncertainty: float = 0.0


class CreatorScore(BaseModel):
    """Score record for one creator in one window."""
    creator_id: str
    window: ScoreWindow
    sample_count: int
    mean_brier: float
    score: float
    accuracy: float
    reliability: float = 0.0
    resolution: float = 0.0
    uncertainty: float = 0.0
    calibration: List[CalibrationBucket] = Field(default_factory=list)
    computed_at: datetime


class CreatorScoreView(BaseModel):
    """Both windows for one creator. A missing window means no matured insights."""
    creator_id: str
    all_time: Optional[CreatorScore] = None
    last_90d: Optional[CreatorScore] = None


class LeaderboardEntry(BaseModel):
    rank: int
    creator_id: str
    score: float
    accuracy: float
    mean_brier: float
    sample_count: int
    is_provisional: bool = False
    badges: List[str] = Field(default_factory=list)


class PercentileBand(BaseModel):
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0


class LeaderboardPercentiles(BaseModel):
    score: PercentileBand = Field(default_factory=PercentileBand)
    accuracy: PercentileBand = Field(default_factory=PercentileBand)
    brier: PercentileBand = Field(default_factory=PercentileBand)


class Leaderboard(BaseModel):
    window: ScoreWindow
    generated_at: datetime
    total_creators: int = 0
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    percentiles: LeaderboardPercentiles = Field(default_factory=LeaderboardPercentiles)


class RecomputeFailure(BaseModel):
    creator_id: str
    error_class: str
    message: str


class RecomputeSummary(BaseModel):
    creators: int = 0
    updated: int = 0
    failed: int = 0
    took_ms: int = 0
    failures: List[RecomputeFailure] = Field(default_factory=list)
