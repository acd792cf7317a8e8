"""Tests for APScheduler job configuration and the run sweep job body."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from profilesync.models.sync import RunStatus, SyncRun
from profilesync.scheduler.jobs import _sweep_runs, build_scheduler
from profilesync.sync.checkpoints import SyncRunRepository
from profilesync.sync.errors import SyncRunNotFound


class TestBuildScheduler:
    def test_returns_scheduler(self):
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_sweep_job_registered(self):
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        job_ids = [job.id for job in scheduler.get_jobs()]
        assert "sync_run_sweep" in job_ids

    def test_sweep_is_interval(self):
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        job = next(j for j in scheduler.get_jobs() if j.id == "sync_run_sweep")
        assert job.trigger.__class__.__name__ == "IntervalTrigger"

    def test_interval_from_settings(self):
        """Scheduler respects the SWEEP_INTERVAL_MINUTES setting."""
        engine = MagicMock()
        with patch("profilesync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.sweep_interval_minutes = 15
            scheduler = build_scheduler(engine)

        job = next(j for j in scheduler.get_jobs() if j.id == "sync_run_sweep")
        assert job.trigger.interval == timedelta(minutes=15)

    def test_scheduler_not_running_on_creation(self):
        """build_scheduler should not auto-start."""
        engine = MagicMock()
        scheduler = build_scheduler(engine)
        assert not scheduler.running


# ─── _sweep_runs job body ──────────────────────────────────────────────────────

class TestSweepJob:
    """SyncRunRepository is lazily imported inside the job body, so it is
    patched at its source module path."""

    @pytest.mark.asyncio
    async def test_sweeps_with_retention_from_settings(self):
        mock_repo = MagicMock()
        mock_repo.sweep_expired.return_value = 2

        with patch("profilesync.sync.checkpoints.SyncRunRepository", return_value=mock_repo), \
             patch("profilesync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.run_retention_hours = 24
            mock_settings.return_value.error_log_limit = 50
            await _sweep_runs(engine=MagicMock())

        mock_repo.sweep_expired.assert_called_once_with(timedelta(hours=24))

    @pytest.mark.asyncio
    async def test_exception_does_not_propagate(self):
        """The sweep catches all exceptions so the scheduler stays alive."""
        mock_repo = MagicMock()
        mock_repo.sweep_expired.side_effect = Exception("database is locked")

        with patch("profilesync.sync.checkpoints.SyncRunRepository", return_value=mock_repo), \
             patch("profilesync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.run_retention_hours = 24
            mock_settings.return_value.error_log_limit = 50
            # Should not raise
            await _sweep_runs(engine=MagicMock())

    @pytest.mark.asyncio
    async def test_archives_real_expired_run(self, engine):
        repo = SyncRunRepository(engine)
        run = repo.create("owner-1")
        repo.transition(run.id, RunStatus.IN_PROGRESS)
        repo.transition(run.id, RunStatus.COMPLETED)
        with Session(engine) as s:
            row = s.get(SyncRun, run.id)
            row.completed_at = datetime.utcnow() - timedelta(days=30)
            s.add(row)
            s.commit()

        with patch("profilesync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.run_retention_hours = 72
            mock_settings.return_value.error_log_limit = 50
            await _sweep_runs(engine=engine)

        with pytest.raises(SyncRunNotFound):
            repo.get(run.id)
