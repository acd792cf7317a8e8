"""Sync run state: the durable progress record and its append-only checkpoint log."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class RunStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED}


def _new_run_id() -> str:
    return uuid4().hex


class SyncRun(SQLModel, table=True):
    """One row per sync invocation. Mutated only by the orchestrator."""

    id: str = Field(default_factory=_new_run_id, primary_key=True)
    owner_id: str = Field(index=True)
    status: RunStatus = RunStatus.PENDING
    current_step: str = "initialization"

    progress_total: int = 0
    progress_completed: int = 0
    progress_percentage: int = 0

    # Bounded ring of ErrorRecord dicts, oldest first
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    errors_dropped: int = 0

    # Request config the run was started with, replayed on resume
    run_config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    started_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    archived: bool = False
    archived_at: Optional[datetime] = None

    def progress_dict(self) -> Dict[str, int]:
        return {
            "total": self.progress_total,
            "completed": self.progress_completed,
            "percentage": self.progress_percentage,
        }


class SyncCheckpoint(SQLModel, table=True):
    """Immutable marker: one (step, location) unit of a run is durably complete."""

    __table_args__ = (
        UniqueConstraint("run_id", "step", "location_ref", name="uq_checkpoint_unit"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="syncrun.id", index=True)
    step: str
    location_ref: str
    records_processed: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def to_event(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "locationRef": self.location_ref,
            "recordsProcessed": self.records_processed,
            "timestamp": self.created_at.isoformat(),
        }
