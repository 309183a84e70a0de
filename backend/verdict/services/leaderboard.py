"""
Leaderboard Builder.

Ranks stored score records for one window and attaches percentile bands.
"""

import math
from datetime import datetime
from functools import lru_cache
from typing import List, Optional, Sequence

import structlog

from verdict.infrastructure.clock import utc_now
from verdict.infrastructure.config import get_settings
from verdict.models.scoring import (
    CreatorScore,
    Leaderboard,
    LeaderboardEntry,
    LeaderboardPercentiles,
    PercentileBand,
    ScoreWindow,
)
from verdict.services.score_service import ScoreService, get_score_service

logger = structlog.get_logger(__name__)

BADGES = ("top1", "top2", "top3")


def _sort_key(record: CreatorScore):
    return (-record.score, -record.sample_count, record.creator_id)


def build_leaderboard(
    records: Sequence[CreatorScore],
    window: ScoreWindow,
    provisional_min_samples: int = 50,
    limit: Optional[int] = None,
) -> List[LeaderboardEntry]:
    """
    Order by score desc, then sample_count desc, then creator_id asc.

    Provisional creators stay in the ranking; they are only flagged.
    """
    ranked = sorted((r for r in records if r.window == window), key=_sort_key)
    if limit is not None:
        ranked = ranked[:max(0, limit)]

    entries = []
    for position, record in enumerate(ranked, start=1):
        entries.append(LeaderboardEntry(
            rank=position,
            creator_id=record.creator_id,
            score=record.score,
            accuracy=record.accuracy,
            mean_brier=record.mean_brier,
            sample_count=record.sample_count,
            is_provisional=record.sample_count < provisional_min_samples,
            badges=[BADGES[position - 1]] if position <= len(BADGES) else [],
        ))
    return entries


def percentile(sorted_values: Sequence[float], q: float) -> float:
    """Linear interpolation between closest ranks. q in [0, 1]."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    position = (len(sorted_values) - 1) * q
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def _band(values: List[float]) -> PercentileBand:
    values = sorted(values)
    return PercentileBand(
        p25=percentile(values, 0.25),
        p50=percentile(values, 0.50),
        p75=percentile(values, 0.75),
        p90=percentile(values, 0.90),
    )


def compute_percentiles(records: Sequence[CreatorScore]) -> LeaderboardPercentiles:
    return LeaderboardPercentiles(
        score=_band([r.score for r in records]),
        accuracy=_band([r.accuracy for r in records]),
        brier=_band([r.mean_brier for r in records]),
    )


class LeaderboardService:
    """Reads stored scores and builds the public leaderboard."""

    def __init__(self, score_service: ScoreService, provisional_min_samples: int = 50):
        self.score_service = score_service
        self.provisional_min_samples = provisional_min_samples

    async def get_leaderboard(
        self,
        window: ScoreWindow,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Leaderboard:
        records = await self.score_service.list_scores(window)
        entries = build_leaderboard(records, window, self.provisional_min_samples, limit)

        logger.debug("leaderboard_built", window=window.value, creators=len(records), returned=len(entries))

        return Leaderboard(
            window=window,
            generated_at=now or utc_now(),
            total_creators=len(records),
            entries=entries,
            percentiles=compute_percentiles(records),
        )


@lru_cache()
def get_leaderboard_service() -> LeaderboardService:
    """Get singleton leaderboard service."""
    return LeaderboardService(
        get_score_service(),
        provisional_min_samples=get_settings().provisional_min_samples,
    )
