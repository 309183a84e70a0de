"""
Pydantic models for the Verdict service.
"""

from verdict.models.resolution import (
    ComparisonOperator,
    ConfirmOutcomeRequest,
    DecisionAgent,
    Insight,
    InsightStatus,
    Outcome,
    OutcomeResult,
    PriceCondition,
    PriceQuote,
    RepairReport,
    ResolutionFailure,
    ResolutionResult,
    ResolutionRunSummary,
    ResolverKind,
)
from verdict.models.scoring import (
    BrierDecomposition,
    CalibrationBucket,
    CreatorScore,
    CreatorScoreView,
    Leaderboard,
    LeaderboardEntry,
    LeaderboardPercentiles,
    PercentileBand,
    RecomputeSummary,
    ScoredPrediction,
    ScoreWindow,
)

__all__ = [
    "ComparisonOperator",
    "ConfirmOutcomeRequest",
    "DecisionAgent",
    "Insight",
    "InsightStatus",
    "Outcome",
    "OutcomeResult",
    "PriceCondition",
    "PriceQuote",
    "RepairReport",
    "ResolutionFailure",
    "ResolutionResult",
    "ResolutionRunSummary",
    "ResolverKind",
    "BrierDecomposition",
    "CalibrationBucket",
    "CreatorScore",
    "CreatorScoreView",
    "Leaderboard",
    "LeaderboardEntry",
    "LeaderboardPercentiles",
    "PercentileBand",
    "RecomputeSummary",
    "ScoredPrediction",
    "ScoreWindow",
]
