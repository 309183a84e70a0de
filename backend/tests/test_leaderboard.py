"""
Tests for leaderboard ranking and percentile bands.
"""
import pytest

from conftest import NOW
from verdict.models.scoring import CreatorScore, ScoreWindow
from verdict.services.leaderboard import LeaderboardService, build_leaderboard, compute_percentiles, percentile


def _record(creator_id, score, samples=60, window=ScoreWindow.ALL, accuracy=0.5):
    return CreatorScore(
        creator_id=creator_id,
        window=window,
        sample_count=samples,
        mean_brier=1.0 - score,
        score=score,
        accuracy=accuracy,
        computed_at=NOW,
    )


class TestBuildLeaderboard:

    def test_orders_by_score_then_samples_then_id(self):
        records = [
            _record("carol", 0.80, samples=60),
            _record("bob", 0.90, samples=60),
            _record("dave", 0.80, samples=90),
            _record("alice", 0.80, samples=60),
        ]
        entries = build_leaderboard(records, ScoreWindow.ALL)

        assert [e.creator_id for e in entries] == ["bob", "dave", "alice", "carol"]
        assert [e.rank for e in entries] == [1, 2, 3, 4]

    def test_top_three_badges(self):
        records = [_record(f"c{i}", 0.9 - i * 0.01) for i in range(5)]
        entries = build_leaderboard(records, ScoreWindow.ALL)

        assert [e.badges for e in entries] == [["top1"], ["top2"], ["top3"], [], []]

    def test_provisional_creators_stay_ranked(self):
        records = [_record("fresh", 0.99, samples=3), _record("veteran", 0.7, samples=500)]
        entries = build_leaderboard(records, ScoreWindow.ALL, provisional_min_samples=50)

        assert entries[0].creator_id == "fresh"
        assert entries[0].is_provisional is True
        assert entries[1].is_provisional is False

    def test_limit_and_window_filter(self):
        records = [
            _record("a", 0.9),
            _record("b", 0.8),
            _record("c", 0.7),
            _record("z", 0.99, window=ScoreWindow.D90),
        ]
        entries = build_leaderboard(records, ScoreWindow.ALL, limit=2)
        assert [e.creator_id for e in entries] == ["a", "b"]

        assert build_leaderboard(records, ScoreWindow.D90)[0].creator_id == "z"


class TestPercentiles:

    def test_linear_interpolation(self):
        values = [1.0, 2.0, 3.0, 4.0]
        assert percentile(values, 0.25) == pytest.approx(1.75)
        assert percentile(values, 0.50) == pytest.approx(2.5)
        assert percentile(values, 0.75) == pytest.approx(3.25)
        assert percentile(values, 0.90) == pytest.approx(3.7)

    def test_single_and_empty(self):
        assert percentile([0.4], 0.9) == 0.4
        assert percentile([], 0.5) == 0.0

    def test_bands_per_metric(self):
        records = [_record(f"c{i}", s, accuracy=a) for i, (s, a) in enumerate([(0.6, 0.1), (0.8, 0.3)])]
        bands = compute_percentiles(records)

        assert bands.score.p50 == pytest.approx(0.7)
        assert bands.accuracy.p50 == pytest.approx(0.2)
        assert bands.brier.p50 == pytest.approx(0.3)

    def test_empty_records_give_zero_bands(self):
        bands = compute_percentiles([])
        assert bands.score.p90 == 0.0
        assert bands.brier.p25 == 0.0


class TestLeaderboardService:

    async def test_reads_stored_scores(self, add_resolved, score_service):
        await add_resolved("i1", "alice", 0.9, "YES")
        await add_resolved("i2", "bob", 0.6, "YES")
        await score_service.recompute_all(now=NOW)

        service = LeaderboardService(score_service, provisional_min_samples=50)
        board = await service.get_leaderboard(ScoreWindow.ALL, limit=10, now=NOW)

        assert board.window == ScoreWindow.ALL
        assert board.total_creators == 2
        assert [e.creator_id for e in board.entries] == ["alice", "bob"]
        assert all(e.is_provisional for e in board.entries)
        assert board.generated_at == NOW
