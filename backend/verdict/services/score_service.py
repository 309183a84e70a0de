"""
Score Service.

Storage side of scoring: loads each creator's resolved insights, runs the
score calculator for the ALL and 90D windows, and replaces that creator's
creator_scores rows in a single transaction.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import delete, select

from verdict.db.models import CreatorScoreModel, InsightModel, OutcomeModel
from verdict.infrastructure.clock import as_utc, utc_now
from verdict.infrastructure.config import get_settings
from verdict.infrastructure.database import get_session
from verdict.models.resolution import OutcomeResult
from verdict.models.scoring import (
    CalibrationBucket,
    CreatorScore,
    CreatorScoreView,
    RecomputeFailure,
    RecomputeSummary,
    ScoredPrediction,
    ScoreWindow,
)
from verdict.services.score_calculator import score_window

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# ORM <-> Pydantic converters
# ---------------------------------------------------------------------------

def _score_to_pydantic(row: CreatorScoreModel) -> CreatorScore:
    return CreatorScore(
        creator_id=row.creator_id,
        window=ScoreWindow(row.window),
        sample_count=row.sample_count,
        mean_brier=row.mean_brier,
        score=row.score,
        accuracy=row.accuracy,
        reliability=row.reliability or 0.0,
        resolution=row.resolution or 0.0,
        uncertainty=row.uncertainty or 0.0,
        calibration=[CalibrationBucket(**b) for b in (row.calibration or [])],
        computed_at=as_utc(row.computed_at),
    )


def _score_to_model(score: CreatorScore) -> CreatorScoreModel:
    return CreatorScoreModel(
        creator_id=score.creator_id,
        window=score.window.value,
        sample_count=score.sample_count,
        mean_brier=score.mean_brier,
        score=score.score,
        accuracy=score.accuracy,
        reliability=score.reliability,
        resolution=score.resolution,
        uncertainty=score.uncertainty,
        calibration=[b.model_dump() for b in score.calibration],
        computed_at=score.computed_at,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ScoreService:
    """Recomputes and serves per-creator score records."""

    def __init__(self, window_days: int = 90, concurrency: int = 4):
        self.window_days = window_days
        self.concurrency = max(1, concurrency)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _creator_lock(self, creator_id: str) -> AsyncIterator[None]:
        """Serialise work per creator; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(creator_id, asyncio.Lock())
        self._lock_holders[creator_id] = self._lock_holders.get(creator_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[creator_id] -= 1
            if not self._lock_holders[creator_id]:
                del self._lock_holders[creator_id]
                del self._locks[creator_id]

    async def _load_predictions(self, session, creator_id: str) -> List[ScoredPrediction]:
        result = await session.execute(
            select(
                InsightModel.stated_probability,
                OutcomeModel.result,
                OutcomeModel.decided_at,
            )
            .join(OutcomeModel, OutcomeModel.insight_id == InsightModel.id)
            .where(InsightModel.creator_id == creator_id)
        )
        predictions = []
        for probability, outcome, decided_at in result.all():
            if probability is None:
                continue
            predictions.append(ScoredPrediction(
                probability=probability,
                result=OutcomeResult(outcome),
                decided_at=as_utc(decided_at),
            ))
        return predictions

    async def recompute_creator(
        self, creator_id: str, now: Optional[datetime] = None,
    ) -> Dict[ScoreWindow, Optional[CreatorScore]]:
        """
        Recompute both windows for one creator and replace their stored rows.

        A window with no matured predictions ends up with no row. Running it
        twice over the same data produces the same rows.
        """
        now = as_utc(now) if now else utc_now()

        async with self._creator_lock(creator_id):
            async with get_session() as session:
                predictions = await self._load_predictions(session, creator_id)

                scores = {
                    window: score_window(creator_id, predictions, window, now, self.window_days)
                    for window in ScoreWindow
                }

                await session.execute(
                    delete(CreatorScoreModel).where(CreatorScoreModel.creator_id == creator_id)
                )
                for score in scores.values():
                    if score is not None:
                        session.add(_score_to_model(score))

        logger.info(
            "creator_rescored",
            creator_id=creator_id,
            samples_all=scores[ScoreWindow.ALL].sample_count if scores[ScoreWindow.ALL] else 0,
            samples_90d=scores[ScoreWindow.D90].sample_count if scores[ScoreWindow.D90] else 0,
        )
        return scores

    async def list_creators_with_outcomes(self) -> List[str]:
        async with get_session() as session:
            result = await session.execute(
                select(InsightModel.creator_id)
                .join(OutcomeModel, OutcomeModel.insight_id == InsightModel.id)
                .where(InsightModel.creator_id.is_not(None))
                .distinct()
                .order_by(InsightModel.creator_id)
            )
            return [row[0] for row in result.all()]

    async def recompute_many(
        self, creator_ids: List[str], now: Optional[datetime] = None,
    ) -> RecomputeSummary:
        """Recompute the given creators with bounded concurrency."""
        started = time.monotonic()
        now = as_utc(now) if now else utc_now()
        summary = RecomputeSummary(creators=len(creator_ids))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(creator_id: str):
            async with semaphore:
                try:
                    await self.recompute_creator(creator_id, now)
                    summary.updated += 1
                except Exception as exc:
                    logger.error(
                        "creator_rescore_failed",
                        creator_id=creator_id,
                        error_class=type(exc).__name__,
                        error=str(exc),
                    )
                    summary.failed += 1
                    summary.failures.append(RecomputeFailure(
                        creator_id=creator_id,
                        error_class=type(exc).__name__,
                        message=str(exc),
                    ))

        await asyncio.gather(*(_one(cid) for cid in creator_ids))
        summary.took_ms = int((time.monotonic() - started) * 1000)
        return summary

    async def recompute_all(self, now: Optional[datetime] = None) -> RecomputeSummary:
        """Recompute every creator with at least one outcome."""
        creator_ids = await self.list_creators_with_outcomes()
        summary = await self.recompute_many(creator_ids, now)
        logger.info(
            "scores_recomputed",
            creators=summary.creators,
            updated=summary.updated,
            failed=summary.failed,
            took_ms=summary.took_ms,
        )
        return summary

    async def get_creator_scores(self, creator_id: str) -> CreatorScoreView:
        async with get_session() as session:
            result = await session.execute(
                select(CreatorScoreModel).where(CreatorScoreModel.creator_id == creator_id)
            )
            rows = {row.window: _score_to_pydantic(row) for row in result.scalars().all()}

        return CreatorScoreView(
            creator_id=creator_id,
            all_time=rows.get(ScoreWindow.ALL.value),
            last_90d=rows.get(ScoreWindow.D90.value),
        )

    async def list_scores(self, window: ScoreWindow) -> List[CreatorScore]:
        async with get_session() as session:
            result = await session.execute(
                select(CreatorScoreModel).where(CreatorScoreModel.window == window.value)
            )
            return [_score_to_pydantic(row) for row in result.scalars().all()]


@lru_cache()
def get_score_service() -> ScoreService:
    """Get singleton score service."""
    settings = get_settings()
    return ScoreService(
        window_days=settings.score_window_days,
        concurrency=settings.score_recompute_concurrency,
    )
