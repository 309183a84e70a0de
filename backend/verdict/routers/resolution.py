"""
Resolution Router.
Operator triggers for the resolution engine, manual confirmation of
URL / TEXT insights, and the public status view.
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
import structlog

from verdict.infrastructure.auth import require_operator
from verdict.infrastructure.clock import utc_now
from verdict.infrastructure.config import get_settings
from verdict.infrastructure.exceptions import ResolutionDisabledError
from verdict.models.resolution import ConfirmOutcomeRequest

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/run", dependencies=[Depends(require_operator)])
async def run_resolution(
    budget_seconds: Optional[float] = Query(
        None, gt=0, le=3600, description="Stop scheduling new batches after this many seconds",
    ),
):
    """Run one resolution pass. Returns 200 with the summary even when insights failed."""
    from verdict.services.resolution_engine import get_resolution_engine
    engine = get_resolution_engine()
    if not engine.enabled:
        raise ResolutionDisabledError()

    run_deadline = utc_now() + timedelta(seconds=budget_seconds) if budget_seconds else None
    summary = await engine.run(trigger="manual", run_deadline=run_deadline)
    return summary.model_dump(mode="json")


@router.get("/status")
async def resolution_status():
    """Whether resolution is enabled, provider order, breaker states and the last run."""
    from verdict.services.resolution_engine import get_resolution_engine
    engine = get_resolution_engine()
    status = engine.status()
    status["configured"] = bool(get_settings().resolution_key)
    status["last_run"] = await engine.get_last_run()
    return status


@router.post("/confirm", dependencies=[Depends(require_operator)])
async def confirm_outcome(request: ConfirmOutcomeRequest):
    """Record a manual (USER) outcome for a URL or TEXT insight."""
    from verdict.services.resolution_engine import get_resolution_engine
    engine = get_resolution_engine()
    outcome = await engine.confirm_outcome(
        request.insight_id,
        request.result,
        evidence_url=request.evidence_url,
        reasoning=request.reasoning,
    )
    return {"success": True, "outcome": outcome.model_dump(mode="json")}


@router.post("/repair", dependencies=[Depends(require_operator)])
async def repair_resolution_state():
    """Reconcile insight status with outcome rows."""
    from verdict.services.resolution_engine import get_resolution_engine
    report = await get_resolution_engine().repair()
    return report.model_dump()
