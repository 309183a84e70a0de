"""
Startup validation for the Verdict API.

Runs from the lifespan before the scheduler is started. A failed critical
check keeps the scheduler off; the API still serves reads and /health.
"""

from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import inspect
import structlog

from verdict.infrastructure.config import get_settings
from verdict.infrastructure.database import get_engine

logger = structlog.get_logger(__name__)

REQUIRED_TABLES = ("insights", "outcomes", "creator_scores", "resolution_runs")


@dataclass
class CheckResult:
    name: str
    critical: bool
    status: str                       # pass | warn | fail | error
    detail: Optional[str] = None

    @property
    def blocking(self) -> bool:
        return self.critical and self.status in ("fail", "error")


class StartupChecker:
    """Runs each check once and keeps the results for /health."""

    def __init__(self):
        self.results: List[CheckResult] = []

    def _checks(self) -> List[tuple]:
        return [
            ("schema_present", self._check_schema, True),
            ("price_sources", self._check_price_sources, True),
            ("operator_credential", self._check_operator_credential, False),
        ]

    async def _run_one(self, name: str, check: Callable[[], Awaitable[Optional[str]]], critical: bool) -> CheckResult:
        try:
            problem = await check()
        except Exception as e:
            logger.error("startup_check_error", check=name, error_class=type(e).__name__, error=str(e))
            return CheckResult(name, critical, "error", str(e))

        if problem is None:
            return CheckResult(name, critical, "pass")
        status = "fail" if critical else "warn"
        log = logger.error if critical else logger.warning
        log("startup_check_" + status, check=name, detail=problem)
        return CheckResult(name, critical, status, problem)

    async def run_all(self) -> bool:
        """True when no critical check failed."""
        self.results = [await self._run_one(*check) for check in self._checks()]

        blocking = [r.name for r in self.results if r.blocking]
        if blocking:
            logger.error("startup_checks_critical_failure", failed=blocking)
        else:
            logger.info(
                "startup_checks_passed",
                passed=sum(r.status == "pass" for r in self.results),
                total=len(self.results),
            )
        return not blocking

    def report(self) -> List[Dict[str, Any]]:
        return [asdict(r) for r in self.results]

    # Each check returns None when fine, or a short description of the problem.

    async def _check_schema(self) -> Optional[str]:
        async with get_engine().connect() as conn:
            present = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = [t for t in REQUIRED_TABLES if t not in present]
        return f"missing tables: {', '.join(missing)}" if missing else None

    async def _check_price_sources(self) -> Optional[str]:
        from verdict.services.price_sources import SOURCE_TYPES

        order = get_settings().source_order
        if not order:
            return "no price source configured"
        unknown = [name for name in order if name not in SOURCE_TYPES]
        if unknown:
            return f"unknown price sources: {', '.join(unknown)} (known: {', '.join(sorted(SOURCE_TYPES))})"
        return None

    async def _check_operator_credential(self) -> Optional[str]:
        if not get_settings().resolution_key:
            return "VERDICT_RESOLUTION_KEY unset; manual triggers answer 503"
        return None


_last_checker: Optional[StartupChecker] = None


async def run_startup_checks() -> bool:
    """Run every startup check. Returns True if the critical ones pass."""
    global _last_checker
    _last_checker = StartupChecker()
    return await _last_checker.run_all()


def last_startup_report() -> List[Dict[str, Any]]:
    return _last_checker.report() if _last_checker else []
