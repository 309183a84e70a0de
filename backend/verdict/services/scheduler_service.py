"""
In-process scheduling for the Verdict service.

Optional: by default an external cron calls ``python -m scripts.resolve_due``
or POST /api/resolve/run. With VERDICT_SCHEDULER_ENABLED=true two jobs run here:

- resolve_due       resolution pass   (VERDICT_RESOLUTION_CRON, every 15 min)
- score_recompute   full rescoring    (VERDICT_SCORE_RECOMPUTE_CRON, nightly)

Resolution runs are audited in resolution_runs by the engine itself.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from verdict.infrastructure.config import get_settings
from verdict.services.resolution_engine import get_resolution_engine
from verdict.services.score_service import get_score_service

logger = structlog.get_logger(__name__)


class SchedulerService:
    """
    Manages the scheduled resolution and rescoring jobs.

    Uses APScheduler for reliable cron-based execution.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._running = False
        self._jobs: Dict[str, str] = {}  # job_name -> job_id

    def _schedule(self) -> Dict[str, Dict[str, Any]]:
        settings = get_settings()
        return {
            "resolve_due": {
                "cron": settings.resolution_cron,
                "description": "Resolve insights past their deadline",
                "enabled": settings.resolution_enabled,
            },
            "score_recompute": {
                "cron": settings.score_recompute_cron,
                "description": "Recompute every creator's score",
                "enabled": True,
            },
        }

    async def start(self):
        """Start the scheduler with all configured jobs."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        logger.info("scheduler_starting")

        for job_name, config in self._schedule().items():
            if config.get("enabled", True):
                self._register_job(job_name, config)

        self.scheduler.start()
        self._running = True

        logger.info("scheduler_started", jobs=list(self._jobs.keys()))

    async def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return

        logger.info("scheduler_stopping")
        self.scheduler.shutdown(wait=False)
        self._running = False
        self._jobs.clear()
        logger.info("scheduler_stopped")

    def _register_job(self, job_name: str, config: Dict[str, Any]):
        handler = self._get_handler(job_name)
        if not handler:
            logger.warning("no_handler_for_job", job=job_name)
            return

        async def timed_handler(_name=job_name, _handler=handler):
            await self._run_timed(_name, _handler)

        job = self.scheduler.add_job(
            timed_handler,
            trigger=CronTrigger.from_crontab(config["cron"]),
            id=job_name,
            name=config.get("description", job_name),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._jobs[job_name] = job.id
        logger.info("job_registered", job=job_name, cron=config["cron"])

    async def _run_timed(self, job_name: str, handler: Callable[[], Awaitable[Any]]):
        """Execute a handler; failures are logged and never stop the scheduler."""
        t0 = time.monotonic()
        status = "completed"
        try:
            await handler()
        except Exception as e:
            status = "failed"
            logger.error("job_failed", job=job_name, error_class=type(e).__name__, error=str(e))
        finally:
            logger.info("job_finished", job=job_name, status=status,
                        duration=round(time.monotonic() - t0, 2))

    def _get_handler(self, job_name: str) -> Optional[Callable[[], Awaitable[Any]]]:
        handlers = {
            "resolve_due": self._run_resolve_due,
            "score_recompute": self._run_score_recompute,
        }
        return handlers.get(job_name)

    async def _run_resolve_due(self):
        await get_resolution_engine().run(trigger="scheduled")

    async def _run_score_recompute(self):
        await get_score_service().recompute_all()

    def get_status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            })

        return {
            "running": self._running,
            "jobs": jobs,
            "job_count": len(jobs),
        }


# ============================================
# SINGLETON
# ============================================

_scheduler_service: Optional[SchedulerService] = None


def get_scheduler_service() -> SchedulerService:
    """Get the singleton scheduler service instance."""
    global _scheduler_service
    if _scheduler_service is None:
        _scheduler_service = SchedulerService()
    return _scheduler_service


async def start_scheduler():
    """Start the scheduler (call from app startup)."""
    await get_scheduler_service().start()


async def stop_scheduler():
    """Stop the scheduler (call from app shutdown)."""
    await get_scheduler_service().stop()
