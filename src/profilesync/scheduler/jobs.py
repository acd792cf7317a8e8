"""
APScheduler jobs for background maintenance.

The run sweep archives finished sync runs once they are older than the
retention window and drops their checkpoint logs, so run state does not
grow without bound.

The scheduler runs inside the `python -m profilesync` process.
"""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from profilesync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine the sweep runs against.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _sweep_runs,
        trigger="interval",
        minutes=settings.sweep_interval_minutes,
        id="sync_run_sweep",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _sweep_runs(engine) -> None:
    """
    Interval job: archive terminal runs past the retention window.

    Idempotent; archived runs are never selected again.
    """
    from profilesync.sync.checkpoints import SyncRunRepository

    settings = get_settings()
    logger.info("Run sweep starting at %s", datetime.utcnow().isoformat())

    try:
        repository = SyncRunRepository(engine, error_log_limit=settings.error_log_limit)
        archived = repository.sweep_expired(timedelta(hours=settings.run_retention_hours))
        logger.info("Run sweep archived %d runs", archived)
    except Exception as exc:
        logger.error("Run sweep failed: %s", exc)
