"""
Run one resolution pass against the configured database.

Meant for cron. SIGINT / SIGTERM stop scheduling new batches; in-flight
insights finish and the rest are reported as deferred.

Usage:
    python -m scripts.resolve_due
    python -m scripts.resolve_due --budget-seconds 240 --recompute-scores
"""

import argparse
import asyncio
import signal
import sys
from datetime import timedelta
from pathlib import Path

# Add parent dir to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from verdict.infrastructure.clock import utc_now
from verdict.infrastructure.config import get_settings
from verdict.infrastructure.database import close_database, create_tables, init_database
from verdict.services.resolution_engine import get_resolution_engine
from verdict.services.score_service import get_score_service


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve insights past their deadline.")
    parser.add_argument("--budget-seconds", type=float, default=None,
                        help="Stop scheduling new batches after this many seconds")
    parser.add_argument("--recompute-scores", action="store_true",
                        help="Recompute every creator's score after the pass")
    parser.add_argument("--create-tables", action="store_true",
                        help="Create missing tables first (local development)")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()

    print("=" * 60)
    print("Verdict: resolution pass")
    print("=" * 60)
    print(f"Database: {settings.database_url.split('@')[-1]}")
    print(f"Sources:  {' -> '.join(settings.source_order)}")

    if not settings.resolution_enabled:
        print("Resolution is disabled (VERDICT_RESOLUTION_ENABLED=false); nothing to do.")
        return 2

    await init_database(settings.database_url)
    if args.create_tables:
        await create_tables()

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            break

    engine = get_resolution_engine()
    run_deadline = utc_now() + timedelta(seconds=args.budget_seconds) if args.budget_seconds else None

    try:
        summary = await engine.run(trigger="cli", cancel_event=cancel_event, run_deadline=run_deadline)

        print()
        print(f"Run {summary.run_id}: {summary.took_ms} ms")
        print(f"  Considered: {summary.considered}")
        print(f"  Resolved:   {summary.resolved}  {summary.outcomes}")
        print(f"  Skipped:    {summary.skipped}")
        print(f"  Deferred:   {summary.deferred}{' (cancelled)' if summary.cancelled else ''}")
        print(f"  Failed:     {summary.failed}")
        for failure in summary.failures:
            print(f"    {failure.insight_id}: {failure.error_class}: {failure.message}")

        if args.recompute_scores:
            recompute = await get_score_service().recompute_all()
            print(f"  Rescored:   {recompute.updated}/{recompute.creators} creators")
    finally:
        await engine.close()
        await close_database()

    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
