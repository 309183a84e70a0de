"""
Scores Router.
Read-only leaderboard and per-creator score views, plus the operator-only
full recompute.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
import structlog

from verdict.infrastructure.auth import require_operator
from verdict.models.scoring import ScoreWindow

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/leaderboard")
async def get_leaderboard(
    window: str = Query("all", description="Score window: all or 90d"),
    limit: Optional[int] = Query(50, ge=1, le=500),
):
    """Ranked creators for a window, with percentile bands."""
    try:
        score_window = ScoreWindow.parse(window)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    from verdict.services.leaderboard import get_leaderboard_service
    board = await get_leaderboard_service().get_leaderboard(score_window, limit=limit)
    return board.model_dump(mode="json")


@router.get("/creators/{creator_id}/score")
async def get_creator_score(creator_id: str):
    """Both score windows for one creator. A null window has no matured insights."""
    from verdict.services.score_service import get_score_service
    view = await get_score_service().get_creator_scores(creator_id)
    return view.model_dump(mode="json")


@router.post("/scores/recompute", dependencies=[Depends(require_operator)])
async def recompute_scores():
    """Recompute every creator's score records."""
    from verdict.services.score_service import get_score_service
    summary = await get_score_service().recompute_all()
    return summary.model_dump()
