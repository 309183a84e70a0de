"""
Score Calculator.

Pure functions that turn a creator's matured predictions into a score record:
mean Brier, score (1 - mean Brier), accuracy, the Murphy decomposition and a
10-bucket calibration histogram. No I/O; ScoreService does the storage side.

INVALID outcomes never count as samples.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from verdict.infrastructure.clock import as_utc
from verdict.models.resolution import OutcomeResult
from verdict.models.scoring import (
    BrierDecomposition,
    CalibrationBucket,
    CreatorScore,
    ScoredPrediction,
    ScoreWindow,
)

BUCKET_COUNT = 10


def clamp_probability(p: float) -> float:
    return max(0.0, min(1.0, float(p)))


def outcome_value(result: OutcomeResult) -> Optional[int]:
    """1 for YES, 0 for NO, None for INVALID."""
    if result == OutcomeResult.YES:
        return 1
    if result == OutcomeResult.NO:
        return 0
    return None


def brier_for_outcome(p: float, result: OutcomeResult) -> Optional[float]:
    """(p - o)^2, or None when the outcome is INVALID."""
    o = outcome_value(result)
    if o is None:
        return None
    return (clamp_probability(p) - o) ** 2


def bucket_index(p: float) -> int:
    """[0, .1) -> 0, ..., [.9, 1.0] -> 9."""
    return min(int(clamp_probability(p) * BUCKET_COUNT), BUCKET_COUNT - 1)


def matured(predictions: Iterable[ScoredPrediction]) -> List[ScoredPrediction]:
    return [p for p in predictions if outcome_value(p.result) is not None]


def compute_calibration(predictions: Sequence[ScoredPrediction]) -> List[CalibrationBucket]:
    """Equal-width calibration histogram. Empty buckets carry None means."""
    sums = [0.0] * BUCKET_COUNT
    hits = [0] * BUCKET_COUNT
    counts = [0] * BUCKET_COUNT

    for prediction in matured(predictions):
        idx = bucket_index(prediction.probability)
        sums[idx] += clamp_probability(prediction.probability)
        hits[idx] += outcome_value(prediction.result)
        counts[idx] += 1

    buckets = []
    for idx in range(BUCKET_COUNT):
        n = counts[idx]
        buckets.append(CalibrationBucket(
            bucket=idx,
            lower=round(idx / BUCKET_COUNT, 1),
            upper=round((idx + 1) / BUCKET_COUNT, 1),
            count=n,
            predicted_mean=sums[idx] / n if n else None,
            realized_frequency=hits[idx] / n if n else None,
        ))
    return buckets


def decompose_brier(
    predictions: Sequence[ScoredPrediction],
    buckets: Optional[Sequence[CalibrationBucket]] = None,
) -> BrierDecomposition:
    """
    Murphy decomposition over the calibration buckets.

    reliability = sum n_k (pbar_k - obar_k)^2 / N
    resolution  = sum n_k (obar_k - obar)^2 / N
    uncertainty = obar (1 - obar)
    """
    samples = matured(predictions)
    n = len(samples)
    if n == 0:
        return BrierDecomposition()

    if buckets is None:
        buckets = compute_calibration(samples)
    base_rate = sum(outcome_value(p.result) for p in samples) / n

    reliability = 0.0
    resolution = 0.0
    for bucket in buckets:
        if not bucket.count:
            continue
        reliability += bucket.count * (bucket.predicted_mean - bucket.realized_frequency) ** 2
        resolution += bucket.count * (bucket.realized_frequency - base_rate) ** 2

    return BrierDecomposition(
        reliability=reliability / n,
        resolution=resolution / n,
        uncertainty=base_rate * (1 - base_rate),
    )


def accuracy_for(predictions: Sequence[ScoredPrediction]) -> float:
    """Share of predictions whose stated side (YES when p >= 0.5) came true."""
    samples = matured(predictions)
    if not samples:
        return 0.0
    correct = 0
    for prediction in samples:
        stated_yes = clamp_probability(prediction.probability) >= 0.5
        if stated_yes == (prediction.result == OutcomeResult.YES):
            correct += 1
    return correct / len(samples)


def filter_window(
    predictions: Sequence[ScoredPrediction],
    window: ScoreWindow,
    now: datetime,
    window_days: int = 90,
) -> List[ScoredPrediction]:
    """Predictions whose outcome was decided inside the window."""
    if window == ScoreWindow.ALL:
        return list(predictions)
    cutoff = as_utc(now) - timedelta(days=window_days)
    return [
        p for p in predictions
        if p.decided_at is not None and as_utc(p.decided_at) >= cutoff
    ]


def score_window(
    creator_id: str,
    predictions: Sequence[ScoredPrediction],
    window: ScoreWindow,
    now: datetime,
    window_days: int = 90,
) -> Optional[CreatorScore]:
    """Score record for one window, or None when nothing in it has matured."""
    samples = matured(filter_window(predictions, window, now, window_days))
    if not samples:
        return None

    briers = [brier_for_outcome(p.probability, p.result) for p in samples]
    mean_brier = sum(briers) / len(briers)
    buckets = compute_calibration(samples)
    decomposition = decompose_brier(samples, buckets)

    return CreatorScore(
        creator_id=creator_id,
        window=window,
        sample_count=len(samples),
        mean_brier=mean_brier,
        score=1.0 - mean_brier,
        accuracy=accuracy_for(samples),
        reliability=decomposition.reliability,
        resolution=decomposition.resolution,
        uncertainty=decomposition.uncertainty,
        calibration=buckets,
        computed_at=as_utc(now),
    )
