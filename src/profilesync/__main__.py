"""
Main entrypoint: runs the APScheduler maintenance loop.

FastAPI runs separately under uvicorn (for the sync endpoints).

Usage:
    python -m profilesync           # starts the scheduler (run sweep)
    python -m profilesync dedup     # one-off duplicate reconciliation
    python -m profilesync sweep     # one-off archive of expired runs
    uvicorn profilesync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys
from datetime import timedelta

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_dedup() -> None:
    from profilesync.config import get_settings
    from profilesync.db.engine import get_engine
    from profilesync.db.migrations import run_migrations
    from profilesync.sync.dedup import DedupPolicy, DedupReconciler

    engine = get_engine()
    result = DedupReconciler(engine, DedupPolicy.from_settings(get_settings())).run()
    for entity_type, count in result.removed.items():
        logger.info("  %-12s %d removed", entity_type, count)
    skipped = run_migrations(engine)
    if skipped:
        logger.warning("Indexes still pending: %s", ", ".join(skipped))


def _run_sweep() -> None:
    from profilesync.config import get_settings
    from profilesync.db.engine import get_engine
    from profilesync.sync.checkpoints import SyncRunRepository

    settings = get_settings()
    repository = SyncRunRepository(get_engine(), error_log_limit=settings.error_log_limit)
    archived = repository.sweep_expired(timedelta(hours=settings.run_retention_hours))
    logger.info("Archived %d expired sync runs", archived)


async def _run_scheduler() -> None:
    from profilesync.config import get_settings
    from profilesync.db.engine import get_engine
    from profilesync.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (run sweep every %d min, retention %dh)",
        settings.sweep_interval_minutes,
        settings.run_retention_hours,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m profilesync dedup|sweep` or just `python -m profilesync`
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "dedup":
        _run_dedup()
    elif command == "sweep":
        _run_sweep()
    elif command is None:
        asyncio.run(_run_scheduler())
    else:
        logger.error("Unknown command %r (expected: dedup, sweep)", command)
        sys.exit(2)
