# Services
from verdict.services.leaderboard import LeaderboardService, get_leaderboard_service
from verdict.services.price_resolver import PriceResolver
from verdict.services.resolution_engine import ResolutionEngine, get_resolution_engine
from verdict.services.score_service import ScoreService, get_score_service

__all__ = [
    "LeaderboardService", "get_leaderboard_service",
    "PriceResolver",
    "ResolutionEngine", "get_resolution_engine",
    "ScoreService", "get_score_service",
]
