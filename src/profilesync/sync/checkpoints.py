"""
SyncRunRepository: durable run state, checkpoint log and bounded error log.

The repository is the only handle through which a run's state is read or
mutated; the orchestrator and the progress emitter are given it explicitly.
Every method opens its own short session and returns detached, fully
loaded rows.

Invariants kept here rather than by callers:
  - checkpoints are append-only, and a (step, location_ref) pair is stored at
    most once per run (unique constraint, duplicate append is a no-op);
  - progress percentage never decreases, and never changes once the run is
    terminal;
  - the inline error log keeps the newest ``error_log_limit`` records.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import delete
from sqlalchemy import exc as sa_exc
from sqlmodel import Session, select

from profilesync.models.sync import TERMINAL_STATUSES, RunStatus, SyncCheckpoint, SyncRun
from profilesync.sync.errors import SyncRunNotFound

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.IN_PROGRESS, RunStatus.FAILED},
    # in_progress -> in_progress covers resuming a run whose process died
    RunStatus.IN_PROGRESS: {
        RunStatus.IN_PROGRESS, RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED,
    },
    RunStatus.PAUSED: {RunStatus.IN_PROGRESS, RunStatus.FAILED},
    RunStatus.FAILED: {RunStatus.IN_PROGRESS},
    RunStatus.COMPLETED: set(),
}


class InvalidTransition(ValueError):
    pass


def compute_percentage(completed: int, total: int) -> int:
    """floor(completed / total * 100), clamped to 0..100."""
    if total <= 0:
        return 0
    return max(0, min(100, (completed * 100) // total))


class SyncRunRepository:
    def __init__(self, engine, error_log_limit: int = 50):
        self.engine = engine
        self.error_log_limit = error_log_limit

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def create(self, owner_id: str, run_config: Optional[Dict[str, Any]] = None) -> SyncRun:
        run = SyncRun(owner_id=owner_id, run_config=run_config or {})
        with Session(self.engine) as s:
            s.add(run)
            s.commit()
            s.refresh(run)
        logger.info("Created sync run %s for owner %s", run.id, owner_id)
        return run

    def get(self, run_id: str) -> SyncRun:
        with Session(self.engine) as s:
            run = s.get(SyncRun, run_id)
            if run is None or run.archived:
                raise SyncRunNotFound(f"Sync run not found: {run_id}")
            return run

    def transition(self, run_id: str, status: RunStatus, *, step: Optional[str] = None) -> SyncRun:
        """Move a run to ``status``, enforcing the state machine."""
        with Session(self.engine) as s:
            run = self._load(s, run_id)
            if status not in _ALLOWED_TRANSITIONS[run.status]:
                raise InvalidTransition(f"Cannot move run {run_id} from {run.status.value} to {status.value}")
            now = datetime.utcnow()
            run.status = status
            if step:
                run.current_step = step
            if status == RunStatus.IN_PROGRESS:
                run.completed_at = None
            if status == RunStatus.COMPLETED:
                run.progress_percentage = 100
                run.progress_completed = max(run.progress_completed, run.progress_total)
            if status in TERMINAL_STATUSES:
                run.completed_at = now
            run.last_updated_at = now
            s.add(run)
            s.commit()
            s.refresh(run)
        logger.info("Sync run %s -> %s", run_id, status.value)
        return run

    # ─── Progress ────────────────────────────────────────────────────────────

    def update_progress(
        self,
        run_id: str,
        *,
        completed: int,
        total: int,
        step: Optional[str] = None,
    ) -> SyncRun:
        """
        Persist unit counts and the displayed percentage.

        The stored percentage is max(previous, floor(completed/total*100)):
        ``total`` grows as locations are discovered, which would otherwise
        make the displayed value dip.
        """
        with Session(self.engine) as s:
            run = self._load(s, run_id)
            if run.status in TERMINAL_STATUSES:
                return run
            run.progress_total = max(total, completed)
            run.progress_completed = completed
            run.progress_percentage = max(
                run.progress_percentage, compute_percentage(completed, run.progress_total)
            )
            if step:
                run.current_step = step
            run.last_updated_at = datetime.utcnow()
            s.add(run)
            s.commit()
            s.refresh(run)
            return run

    # ─── Checkpoints ─────────────────────────────────────────────────────────

    def append_checkpoint(
        self,
        run_id: str,
        step: str,
        location_ref: str,
        records_processed: int,
    ) -> Optional[SyncCheckpoint]:
        """Append a checkpoint. Returns None if the unit was already checkpointed."""
        checkpoint = SyncCheckpoint(
            run_id=run_id,
            step=step,
            location_ref=location_ref,
            records_processed=records_processed,
        )
        try:
            with Session(self.engine) as s:
                s.add(checkpoint)
                s.commit()
                s.refresh(checkpoint)
        except sa_exc.IntegrityError:
            logger.debug("Checkpoint (%s, %s) already recorded for run %s", step, location_ref, run_id)
            return None
        return checkpoint

    def list_checkpoints(self, run_id: str) -> List[SyncCheckpoint]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncCheckpoint)
                .where(SyncCheckpoint.run_id == run_id)
                .order_by(SyncCheckpoint.id)
            ).all())

    def completed_units(self, run_id: str) -> Set[Tuple[str, str]]:
        """The (step, location_ref) pairs resume logic treats as done."""
        return {(c.step, c.location_ref) for c in self.list_checkpoints(run_id)}

    # ─── Error log ───────────────────────────────────────────────────────────

    def record_error(self, run_id: str, record: Dict[str, Any]) -> SyncRun:
        """Append an ErrorRecord, evicting the oldest beyond the limit."""
        with Session(self.engine) as s:
            run = self._load(s, run_id)
            errors = list(run.errors or []) + [record]
            overflow = len(errors) - self.error_log_limit
            if overflow > 0:
                errors = errors[overflow:]
                run.errors_dropped += overflow
            # Reassign so the JSON column is flagged dirty
            run.errors = errors
            run.last_updated_at = datetime.utcnow()
            s.add(run)
            s.commit()
            s.refresh(run)
            return run

    # ─── Retention ───────────────────────────────────────────────────────────

    def sweep_expired(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """
        Archive terminal runs that finished more than ``retention`` ago.

        Their checkpoints are deleted; the run row is kept with archived=True.
        Returns the number of runs archived.
        """
        now = now or datetime.utcnow()
        cutoff = now - retention
        with Session(self.engine) as s:
            expired = s.exec(
                select(SyncRun).where(
                    SyncRun.archived == False,  # noqa: E712
                    SyncRun.status.in_([RunStatus.COMPLETED, RunStatus.FAILED]),
                    SyncRun.completed_at != None,  # noqa: E711
                    SyncRun.completed_at < cutoff,
                )
            ).all()
            for run in expired:
                s.exec(delete(SyncCheckpoint).where(SyncCheckpoint.run_id == run.id))
                run.archived = True
                run.archived_at = now
                s.add(run)
            s.commit()
        if expired:
            logger.info("Archived %d expired sync runs", len(expired))
        return len(expired)

    @staticmethod
    def _load(s: Session, run_id: str) -> SyncRun:
        run = s.get(SyncRun, run_id)
        if run is None:
            raise SyncRunNotFound(f"Sync run not found: {run_id}")
        return run
