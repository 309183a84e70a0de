"""
Tests for the resolution engine against a real SQLite database.
"""
import asyncio
import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import BTC_STATEMENT, NOW, FakeSource, make_resolver
from verdict.db.models import InsightModel
from verdict.infrastructure import database
from verdict.infrastructure.exceptions import (
    AlreadyResolvedError,
    InsightConflictError,
    InsightNotFoundError,
    InvalidConfirmationError,
    SourceUnavailable,
)
from verdict.models.resolution import DecisionAgent, OutcomeResult, ResolutionResult
from verdict.services.resolution_engine import ResolutionEngine


def _engine(*sources, score_service=None, **kwargs) -> ResolutionEngine:
    if not sources:
        sources = (FakeSource("coingecko", [Decimal("105000.00")]),)
    kwargs.setdefault("concurrency", 2)
    kwargs.setdefault("batch_pause", 0)
    return ResolutionEngine(make_resolver(*sources), score_service, **kwargs)


async def _status(insight_id: str) -> str:
    async with database.get_session() as session:
        row = await session.get(InsightModel, insight_id)
        return row.status


class TestFindReady:

    async def test_only_past_deadline_and_unresolved(self, add_insight):
        await add_insight("due-open")
        await add_insight("due-committed", status="COMMITTED")
        await add_insight("due-resolved", status="RESOLVED")
        await add_insight("future", deadline=NOW + timedelta(days=1))
        await add_insight("exactly-now", deadline=NOW)

        ready = await _engine().find_ready(NOW)

        assert {i.id for i in ready} == {"due-open", "due-committed", "exactly-now"}

    async def test_oldest_deadline_first(self, add_insight):
        await add_insight("b", deadline=NOW - timedelta(days=1))
        await add_insight("a", deadline=NOW - timedelta(days=1))
        await add_insight("c", deadline=NOW - timedelta(days=5))

        ready = await _engine().find_ready(NOW)
        assert [i.id for i in ready] == ["c", "a", "b"]


class TestRun:

    async def test_resolves_price_and_skips_manual_kinds(self, add_insight):
        await add_insight("price-1")
        await add_insight("url-1", resolver_kind="URL", canonical="Launch announced on example.com")
        await add_insight("text-1", resolver_kind="TEXT", canonical="It will rain in Lisbon")

        engine = _engine()
        summary = await engine.run(trigger="manual", now=NOW)

        assert summary.considered == 3
        assert summary.resolved == 1
        assert summary.skipped == 2
        assert summary.failed == 0
        assert summary.outcomes == {"YES": 1, "NO": 0, "INVALID": 0}
        assert sorted(summary.skipped_ids) == ["text-1", "url-1"]

        outcome = await engine.get_outcome("price-1")
        assert outcome.result == OutcomeResult.YES
        assert outcome.decided_by == DecisionAgent.AGENT
        assert outcome.evidence_meta["quote"]["source"] == "coingecko"
        assert await _status("price-1") == "RESOLVED"
        assert await _status("url-1") == "OPEN"

    async def test_one_failure_does_not_abort_the_run(self, add_insight):
        for insight_id in ("a", "boom", "c"):
            await add_insight(insight_id)

        engine = _engine()
        real_resolve = engine.price_resolver.resolve

        async def flaky(insight):
            if insight.id == "boom":
                raise RuntimeError("database hiccup")
            return await real_resolve(insight)

        engine.price_resolver.resolve = flaky
        summary = await engine.run(now=NOW)

        assert summary.resolved == 2
        assert summary.failed == 1
        assert summary.failures[0].insight_id == "boom"
        assert summary.failures[0].error_class == "RuntimeError"
        assert await _status("boom") == "OPEN"

    async def test_second_run_is_a_no_op(self, add_insight):
        await add_insight("once")
        engine = _engine()

        first = await engine.run(now=NOW)
        second = await engine.run(now=NOW)

        assert first.resolved == 1
        assert second.considered == 0
        assert second.resolved == 0

    async def test_exhausted_sources_resolve_invalid(self, add_insight):
        await add_insight("dark")
        engine = _engine(
            FakeSource("coingecko", [SourceUnavailable("down", source="coingecko")]),
            FakeSource("coincap", [SourceUnavailable("down", source="coincap")]),
        )

        summary = await engine.run(now=NOW)

        assert summary.outcomes["INVALID"] == 1
        outcome = await engine.get_outcome("dark")
        assert outcome.result == OutcomeResult.INVALID
        assert outcome.evidence_url is None
        assert len(outcome.evidence_meta["failures"]) == 2
        assert await _status("dark") == "RESOLVED"

    async def test_resolver_ref_drives_price_check(self, add_insight):
        ref = json.dumps({"asset": "BTC", "operator": ">", "threshold": 110000})
        await add_insight("ref", canonical=BTC_STATEMENT, resolver_ref=ref)

        engine = _engine()
        await engine.run(now=NOW)
        assert (await engine.get_outcome("ref")).result == OutcomeResult.NO

    async def test_cancel_between_batches_defers_remaining(self, add_insight):
        for i in range(5):
            await add_insight(f"i{i}", deadline=NOW - timedelta(hours=5 - i))

        cancel = asyncio.Event()

        async def pause(seconds):
            cancel.set()

        engine = _engine(concurrency=2, batch_pause=1.0, sleep=pause)
        summary = await engine.run(now=NOW, cancel_event=cancel)

        assert summary.cancelled is True
        assert summary.resolved == 2
        assert summary.deferred == 3
        assert await _status("i4") == "OPEN"

    async def test_past_run_deadline_defers_everything(self, add_insight):
        await add_insight("late")
        summary = await _engine().run(now=NOW, run_deadline=NOW - timedelta(days=365))

        assert summary.cancelled is True
        assert summary.deferred == 1
        assert summary.resolved == 0

    async def test_rescores_creators_after_run(self, add_insight, score_service):
        await add_insight("a1", creator_id="alice", probability=0.9)
        await add_insight("b1", creator_id="bob", probability=0.2)

        engine = _engine(score_service=score_service)
        summary = await engine.run(now=NOW)

        assert summary.creators_rescored == 2
        alice = await score_service.get_creator_scores("alice")
        assert alice.all_time.sample_count == 1
        assert alice.all_time.score == pytest.approx(0.99)

    async def test_run_is_audited(self, add_insight):
        await add_insight("audited")
        engine = _engine()

        assert await engine.get_last_run() is None
        summary = await engine.run(trigger="cron", now=NOW)

        last = await engine.get_last_run()
        assert last["run_id"] == summary.run_id
        assert last["trigger"] == "cron"
        assert last["resolved"] == 1
        assert last["outcomes"]["YES"] == 1
        assert engine.last_run is summary

    async def test_out_of_range_row_fails_alone(self, add_insight):
        await add_insight("good")
        await add_insight("bad-prob", probability=1.5)

        engine = _engine()
        summary = await engine.run(now=NOW)

        assert summary.considered == 2
        assert summary.resolved == 1
        assert summary.failed == 1
        assert summary.failures[0].insight_id == "bad-prob"
        assert summary.failures[0].error_class == "ValidationError"
        assert await _status("good") == "RESOLVED"
        assert await _status("bad-prob") == "OPEN"

        assert [i.id for i in await engine.find_ready(NOW)] == []

    async def test_rescore_failure_is_audited(self, add_insight):
        await add_insight("a1")
        scores = Mock(recompute_many=AsyncMock(side_effect=RuntimeError("scores table locked")))

        engine = _engine(score_service=scores)
        summary = await engine.run(now=NOW)

        assert summary.resolved == 1
        assert "scores table locked" in summary.error
        assert (await engine.get_last_run())["error"] == summary.error


class TestRecordOutcome:

    async def test_second_write_is_rejected(self, add_insight):
        await add_insight("x")
        engine = _engine()
        verdict = ResolutionResult(result=OutcomeResult.NO)

        await engine.record_outcome("x", verdict)
        with pytest.raises(AlreadyResolvedError):
            await engine.record_outcome("x", ResolutionResult(result=OutcomeResult.YES))

        assert (await engine.get_outcome("x")).result == OutcomeResult.NO

    async def test_failed_insert_rolls_back_status_flip(self, add_insight, add_outcome):
        await add_insight("half")
        await add_outcome("half", "YES")

        with pytest.raises(AlreadyResolvedError):
            await _engine().record_outcome("half", ResolutionResult(result=OutcomeResult.NO))

        assert await _status("half") == "OPEN"
        assert (await _engine().get_outcome("half")).result == OutcomeResult.YES


class TestConfirmOutcome:

    async def test_confirms_url_insight(self, add_insight, score_service):
        await add_insight("url-1", resolver_kind="URL", canonical="Launch announced", probability=0.8)
        engine = _engine(score_service=score_service)

        outcome = await engine.confirm_outcome(
            "url-1", OutcomeResult.YES, evidence_url="https://example.com/launch", reasoning="press release",
        )

        assert outcome.decided_by == DecisionAgent.USER
        assert outcome.evidence_url == "https://example.com/launch"
        assert outcome.evidence_meta == {"confirmed_via": "manual", "reasoning": "press release"}
        assert await _status("url-1") == "RESOLVED"
        view = await score_service.get_creator_scores("alice")
        assert view.all_time.sample_count == 1

    async def test_unknown_insight(self, db):
        with pytest.raises(InsightNotFoundError):
            await _engine().confirm_outcome("missing", OutcomeResult.YES)

    async def test_already_resolved(self, add_insight):
        await add_insight("t", resolver_kind="TEXT", canonical="Something")
        engine = _engine()
        await engine.confirm_outcome("t", OutcomeResult.NO)

        with pytest.raises(InsightConflictError):
            await engine.confirm_outcome("t", OutcomeResult.YES)

    async def test_price_insights_cannot_be_confirmed(self, add_insight):
        await add_insight("p")
        with pytest.raises(InvalidConfirmationError):
            await _engine().confirm_outcome("p", OutcomeResult.YES)


class TestRepair:

    async def test_flips_and_reports(self, add_insight, add_outcome):
        await add_insight("half-written")
        await add_outcome("half-written", "YES")
        await add_insight("orphan", status="RESOLVED")
        await add_insight("fine")

        report = await _engine().repair()

        assert report.status_flipped == ["half-written"]
        assert report.missing_outcome == ["orphan"]
        assert await _status("half-written") == "RESOLVED"
        assert await _status("orphan") == "RESOLVED"

        again = await _engine().repair()
        assert again.status_flipped == []
