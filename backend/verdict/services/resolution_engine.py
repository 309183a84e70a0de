"""
Resolution Engine.

Finds insights whose deadline has passed, adjudicates them by resolver kind,
and writes each outcome atomically with the status flip to RESOLVED. Work is
done in small concurrent batches with a pause in between so providers are
not hammered. After a run, creators with newly resolved insights are
rescored and the run is written to the resolution_runs audit table.

Manual confirmation of URL / TEXT insights and the consistency repair pass
go through the same atomic write.
"""

import asyncio
import time
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from verdict.db.models import InsightModel, OutcomeModel, ResolutionRunModel
from verdict.infrastructure.clock import as_utc, utc_now
from verdict.infrastructure.config import Settings, get_settings
from verdict.infrastructure.database import get_session
from verdict.infrastructure.exceptions import (
    AlreadyResolvedError,
    InsightConflictError,
    InsightNotFoundError,
    InvalidConfirmationError,
)
from verdict.models.resolution import (
    RESOLVABLE_STATUSES,
    DecisionAgent,
    Insight,
    InsightStatus,
    Outcome,
    OutcomeResult,
    RepairReport,
    ResolutionFailure,
    ResolutionResult,
    ResolutionRunSummary,
    ResolverKind,
)
from verdict.services.price_resolver import PriceResolver
from verdict.services.score_service import ScoreService, get_score_service

logger = structlog.get_logger(__name__)


def _generate_id(prefix: str) -> str:
    """Generate a short unique ID with a prefix."""
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# ORM <-> Pydantic converters
# ---------------------------------------------------------------------------

def _insight_to_pydantic(row: InsightModel) -> Insight:
    return Insight(
        id=row.id,
        creator_id=row.creator_id,
        canonical=row.canonical,
        resolver_kind=row.resolver_kind,
        resolver_ref=row.resolver_ref,
        deadline=as_utc(row.deadline),
        status=row.status,
        stated_probability=row.stated_probability,
    )


def _outcome_to_pydantic(row: OutcomeModel) -> Outcome:
    return Outcome(
        id=row.id,
        insight_id=row.insight_id,
        result=row.result,
        evidence_url=row.evidence_url,
        evidence_meta=row.evidence_meta,
        decided_by=row.decided_by,
        decided_at=as_utc(row.decided_at),
    )


def _run_to_dict(row: ResolutionRunModel) -> Dict[str, Any]:
    return {
        "run_id": row.id,
        "trigger": row.trigger,
        "started_at": as_utc(row.started_at).isoformat(),
        "finished_at": as_utc(row.finished_at).isoformat() if row.finished_at else None,
        "took_ms": row.took_ms,
        "considered": row.considered,
        "resolved": row.resolved,
        "failed": row.failed,
        "skipped": row.skipped,
        "deferred": row.deferred,
        "cancelled": row.cancelled,
        "outcomes": row.outcomes or {},
        "error": row.error,
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ResolutionEngine:
    """Batch resolver for matured insights."""

    def __init__(
        self,
        price_resolver: PriceResolver,
        score_service: Optional[ScoreService] = None,
        *,
        concurrency: int = 3,
        batch_pause: float = 1.0,
        enabled: bool = True,
        sleep=asyncio.sleep,
    ):
        self.price_resolver = price_resolver
        self.score_service = score_service
        self.concurrency = max(1, concurrency)
        self.batch_pause = batch_pause
        self.enabled = enabled
        self._sleep = sleep
        self.last_run: Optional[ResolutionRunSummary] = None

    @classmethod
    def from_settings(cls, settings: Settings, score_service: Optional[ScoreService] = None) -> "ResolutionEngine":
        return cls(
            PriceResolver.from_settings(settings),
            score_service,
            concurrency=settings.resolution_concurrency,
            batch_pause=settings.resolution_batch_pause_seconds,
            enabled=settings.resolution_enabled,
        )

    # =========================================================================
    # READ
    # =========================================================================

    async def _ready_rows(self, now: datetime, limit: Optional[int] = None) -> List[InsightModel]:
        now = as_utc(now)
        async with get_session() as session:
            stmt = (
                select(InsightModel)
                .where(
                    InsightModel.deadline <= now,
                    InsightModel.status.in_(RESOLVABLE_STATUSES),
                )
                .order_by(InsightModel.deadline, InsightModel.id)
            )
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_ready(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Insight]:
        """
        Unresolved insights whose deadline is at or before now, oldest first.

        Rows the authoring service wrote with out-of-range values are logged
        and left out; run() reports them as per-insight failures instead.
        """
        insights = []
        for row in await self._ready_rows(now or utc_now(), limit):
            try:
                insights.append(_insight_to_pydantic(row))
            except ValidationError as exc:
                logger.warning("insight_row_invalid", insight_id=row.id, error=str(exc))
        return insights

    async def get_outcome(self, insight_id: str) -> Optional[Outcome]:
        async with get_session() as session:
            result = await session.execute(
                select(OutcomeModel).where(OutcomeModel.insight_id == insight_id)
            )
            row = result.scalar_one_or_none()
            return _outcome_to_pydantic(row) if row else None

    # =========================================================================
    # DISPATCH / PERSIST
    # =========================================================================

    async def resolve_insight(self, insight: Insight) -> Optional[ResolutionResult]:
        """Adjudicate one insight. None means it waits for manual confirmation."""
        if insight.resolver_kind == ResolverKind.PRICE:
            return await self.price_resolver.resolve(insight)
        if insight.resolver_kind in (ResolverKind.URL, ResolverKind.TEXT):
            return None
        raise ValueError(f"Unhandled resolver kind: {insight.resolver_kind}")

    async def record_outcome(
        self,
        insight_id: str,
        verdict: ResolutionResult,
        decided_at: Optional[datetime] = None,
    ) -> Outcome:
        """
        Flip the insight to RESOLVED and insert its outcome in one transaction.

        Raises:
            AlreadyResolvedError: the insight was no longer OPEN/COMMITTED, or an
                outcome row already existed. Nothing is written in either case.
        """
        decided_at = as_utc(decided_at) if decided_at else utc_now()
        row = OutcomeModel(
            id=_generate_id("out"),
            insight_id=insight_id,
            result=verdict.result.value,
            evidence_url=verdict.evidence_url,
            evidence_meta=verdict.evidence_meta or None,
            decided_by=verdict.decided_by.value,
            decided_at=decided_at,
        )

        try:
            async with get_session() as session:
                flipped = await session.execute(
                    update(InsightModel)
                    .where(
                        InsightModel.id == insight_id,
                        InsightModel.status.in_(RESOLVABLE_STATUSES),
                    )
                    .values(status=InsightStatus.RESOLVED.value)
                )
                if flipped.rowcount == 0:
                    raise AlreadyResolvedError(insight_id)
                session.add(row)
                await session.flush()
        except IntegrityError as exc:
            raise AlreadyResolvedError(insight_id) from exc

        return _outcome_to_pydantic(row)

    async def _process(self, row: InsightModel, summary: ResolutionRunSummary, creators: set):
        insight_id = row.id
        try:
            insight = _insight_to_pydantic(row)
            verdict = await self.resolve_insight(insight)
            if verdict is None:
                summary.skipped += 1
                summary.skipped_ids.append(insight_id)
                logger.info(
                    "resolution_skipped",
                    insight_id=insight_id,
                    resolver_kind=insight.resolver_kind.value,
                    reason="awaiting_manual_confirmation",
                )
                return
            outcome = await self.record_outcome(insight_id, verdict)
        except AlreadyResolvedError:
            summary.skipped += 1
            summary.skipped_ids.append(insight_id)
            logger.info("resolution_skipped", insight_id=insight_id, reason="already_resolved")
            return
        except Exception as exc:
            error_class = getattr(exc, "error_class", type(exc).__name__)
            summary.failed += 1
            summary.failures.append(ResolutionFailure(
                insight_id=insight_id,
                error_class=error_class,
                message=str(exc),
            ))
            logger.error(
                "insight_resolution_failed",
                insight_id=insight_id,
                error_class=error_class,
                error=str(exc),
            )
            return

        summary.resolved += 1
        summary.outcomes[outcome.result.value] = summary.outcomes.get(outcome.result.value, 0) + 1
        if insight.creator_id:
            creators.add(insight.creator_id)
        logger.info(
            "insight_resolved",
            insight_id=insight_id,
            result=outcome.result.value,
            evidence_url=outcome.evidence_url,
        )

    # =========================================================================
    # RUN
    # =========================================================================

    def _should_stop(self, cancel_event: Optional[asyncio.Event], run_deadline: Optional[datetime]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        if run_deadline is not None and utc_now() >= as_utc(run_deadline):
            return True
        return False

    async def run(
        self,
        trigger: str = "manual",
        now: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
        run_deadline: Optional[datetime] = None,
    ) -> ResolutionRunSummary:
        """
        Resolve every ready insight in paced batches.

        Cancellation and the run deadline are checked before each batch: work
        already in flight completes, everything not yet scheduled is deferred.
        Per-insight failures are collected in the summary and never abort
        the run.
        """
        started = time.monotonic()
        summary = ResolutionRunSummary(
            run_id=_generate_id("run"),
            trigger=trigger,
            started_at=utc_now(),
        )
        creators: set = set()

        ready = await self._ready_rows(now or utc_now())
        summary.considered = len(ready)
        logger.info("resolution_run_started", run_id=summary.run_id, trigger=trigger, ready=len(ready))

        for offset in range(0, len(ready), self.concurrency):
            if offset and self.batch_pause > 0:
                await self._sleep(self.batch_pause)
            if self._should_stop(cancel_event, run_deadline):
                summary.cancelled = True
                summary.deferred = len(ready) - offset
                logger.warning(
                    "resolution_run_cancelled",
                    run_id=summary.run_id,
                    deferred=summary.deferred,
                )
                break

            batch = ready[offset:offset + self.concurrency]
            await asyncio.gather(*(self._process(row, summary, creators) for row in batch))

        if creators and self.score_service is not None:
            try:
                rescored = await self.score_service.recompute_many(sorted(creators), now)
                summary.creators_rescored = rescored.updated
                if rescored.failed:
                    summary.error = f"rescore failed for {rescored.failed} of {rescored.creators} creators"
            except Exception as exc:
                summary.error = f"rescore failed: {type(exc).__name__}: {exc}"
                logger.error("post_run_rescore_failed", run_id=summary.run_id, error=str(exc))

        summary.finished_at = utc_now()
        summary.took_ms = int((time.monotonic() - started) * 1000)
        self.last_run = summary
        await self._record_run(summary)

        logger.info(
            "resolution_run_complete",
            run_id=summary.run_id,
            trigger=trigger,
            considered=summary.considered,
            resolved=summary.resolved,
            failed=summary.failed,
            skipped=summary.skipped,
            deferred=summary.deferred,
            outcomes=summary.outcomes,
            took_ms=summary.took_ms,
        )
        return summary

    async def _record_run(self, summary: ResolutionRunSummary):
        try:
            async with get_session() as session:
                session.add(ResolutionRunModel(
                    id=summary.run_id,
                    trigger=summary.trigger,
                    started_at=summary.started_at,
                    finished_at=summary.finished_at,
                    took_ms=summary.took_ms,
                    considered=summary.considered,
                    resolved=summary.resolved,
                    failed=summary.failed,
                    skipped=summary.skipped,
                    deferred=summary.deferred,
                    cancelled=summary.cancelled,
                    outcomes=dict(summary.outcomes),
                    failures=[f.model_dump() for f in summary.failures],
                    error=summary.error,
                ))
        except Exception as exc:
            logger.error("resolution_run_audit_failed", run_id=summary.run_id, error=str(exc))

    async def get_last_run(self) -> Optional[Dict[str, Any]]:
        async with get_session() as session:
            result = await session.execute(
                select(ResolutionRunModel).order_by(ResolutionRunModel.started_at.desc()).limit(1)
            )
            row = result.scalar_one_or_none()
            return _run_to_dict(row) if row else None

    # =========================================================================
    # MANUAL CONFIRMATION
    # =========================================================================

    async def confirm_outcome(
        self,
        insight_id: str,
        result: OutcomeResult,
        evidence_url: Optional[str] = None,
        reasoning: Optional[str] = None,
    ) -> Outcome:
        """Record a USER outcome for a URL / TEXT insight."""
        async with get_session() as session:
            row = await session.get(InsightModel, insight_id)
            insight = _insight_to_pydantic(row) if row else None

        if insight is None:
            raise InsightNotFoundError(insight_id)
        if insight.status == InsightStatus.RESOLVED:
            raise InsightConflictError(insight_id)
        if insight.resolver_kind == ResolverKind.PRICE:
            raise InvalidConfirmationError(
                "PRICE insights are resolved automatically",
                details={"insight_id": insight_id, "resolver_kind": insight.resolver_kind.value},
            )

        meta: Dict[str, Any] = {"confirmed_via": "manual"}
        if reasoning:
            meta["reasoning"] = reasoning

        try:
            outcome = await self.record_outcome(
                insight_id,
                ResolutionResult(
                    result=result,
                    evidence_url=evidence_url,
                    evidence_meta=meta,
                    decided_by=DecisionAgent.USER,
                ),
            )
        except AlreadyResolvedError as exc:
            raise InsightConflictError(insight_id) from exc

        logger.info("insight_confirmed", insight_id=insight_id, result=result.value)

        if insight.creator_id and self.score_service is not None:
            try:
                await self.score_service.recompute_creator(insight.creator_id)
            except Exception as exc:
                logger.error("post_confirm_rescore_failed", insight_id=insight_id, error=str(exc))

        return outcome

    # =========================================================================
    # REPAIR
    # =========================================================================

    async def repair(self) -> RepairReport:
        """
        Reconcile insight status with outcome rows.

        Insights with an outcome but a non-RESOLVED status are flipped.
        RESOLVED insights without an outcome are only reported.
        """
        report = RepairReport()
        async with get_session() as session:
            flippable = await session.execute(
                select(InsightModel.id)
                .join(OutcomeModel, OutcomeModel.insight_id == InsightModel.id)
                .where(InsightModel.status != InsightStatus.RESOLVED.value)
                .order_by(InsightModel.id)
            )
            report.status_flipped = [row[0] for row in flippable.all()]
            if report.status_flipped:
                await session.execute(
                    update(InsightModel)
                    .where(InsightModel.id.in_(report.status_flipped))
                    .values(status=InsightStatus.RESOLVED.value)
                )

            orphaned = await session.execute(
                select(InsightModel.id)
                .outerjoin(OutcomeModel, OutcomeModel.insight_id == InsightModel.id)
                .where(
                    InsightModel.status == InsightStatus.RESOLVED.value,
                    OutcomeModel.id.is_(None),
                )
                .order_by(InsightModel.id)
            )
            report.missing_outcome = [row[0] for row in orphaned.all()]

        logger.info(
            "resolution_repair_complete",
            status_flipped=len(report.status_flipped),
            missing_outcome=len(report.missing_outcome),
        )
        if report.missing_outcome:
            logger.warning("resolved_insights_without_outcome", insight_ids=report.missing_outcome)
        return report

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        status = {"enabled": self.enabled, "concurrency": self.concurrency}
        status.update(self.price_resolver.status())
        return status

    async def close(self):
        await self.price_resolver.close()


@lru_cache()
def get_resolution_engine() -> ResolutionEngine:
    """Get singleton resolution engine built from settings."""
    return ResolutionEngine.from_settings(get_settings(), get_score_service())
