"""Sync streaming, resume, status, stats and dedup routes."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func
from sqlmodel import Session, select

from profilesync.api_client import BusinessDataClient, BusinessProfileClient
from profilesync.config import get_settings
from profilesync.db.engine import get_engine
from profilesync.db.migrations import run_migrations
from profilesync.models.entities import (
    Account,
    Location,
    PerformanceRecord,
    Post,
    Review,
    SearchKeyword,
)
from profilesync.models.sync import RunStatus, SyncCheckpoint
from profilesync.sync.batch_writer import BatchWriter
from profilesync.sync.checkpoints import SyncRunRepository
from profilesync.sync.dedup import DedupPolicy, DedupReconciler
from profilesync.sync.errors import SyncRunNotFound, classify, format_for_user
from profilesync.sync.orchestrator import SyncConfig, SyncOrchestrator
from profilesync.sync.progress import ProgressEmitter

logger = logging.getLogger(__name__)

router = APIRouter()

# Keeps background sync tasks referenced until they finish
_running: Set[asyncio.Task] = set()


class SyncStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tokens: Dict[str, str]
    sync_config: Dict[str, Any] = Field(default_factory=dict, alias="config")


class SyncResumeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_run_id: str = Field(alias="syncRunId")
    tokens: Dict[str, str]


class SyncRunResponse(BaseModel):
    id: str
    status: str
    current_step: str
    progress: Dict[str, int]
    errors: List[Dict[str, Any]]
    errors_dropped: int
    checkpoint_count: int
    started_at: datetime
    last_updated_at: datetime
    completed_at: Optional[datetime]


def get_client_factory() -> Callable[[Dict[str, str]], BusinessDataClient]:
    """Dependency: builds an API client from the caller's tokens."""
    settings = get_settings()

    def factory(tokens: Dict[str, str]) -> BusinessDataClient:
        return BusinessProfileClient(
            access_token=tokens["access_token"],
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_seconds,
        )

    return factory


def _require_token(tokens: Dict[str, str]) -> None:
    if not tokens.get("access_token"):
        raise HTTPException(status_code=400, detail="tokens.access_token is required")


async def _close_client(client) -> None:
    close = getattr(client, "aclose", None)
    if close is not None:
        await close()


async def _drive(orchestrator: SyncOrchestrator, emitter: ProgressEmitter, run_id: str, client) -> None:
    """Background task: run the orchestrator and send the terminal event."""
    result = None
    message = None
    try:
        result = await orchestrator.execute(run_id)
    except Exception as exc:
        logger.exception("Sync run %s crashed", run_id)
        message = format_for_user(classify(exc))
    finally:
        await _close_client(client)

    if result is not None:
        emitter.finish(result)
    else:
        emitter.fail(message or "Sync failed")


def _stream_run(engine, run_id: str, config: SyncConfig, client, *, resumed: bool) -> StreamingResponse:
    settings = get_settings()
    repository = SyncRunRepository(engine, error_log_limit=settings.error_log_limit)
    writer = BatchWriter(engine, batch_size=settings.batch_size, retry_policy=config.retry_policy)
    emitter = ProgressEmitter(heartbeat_interval=settings.heartbeat_interval_seconds)
    orchestrator = SyncOrchestrator(
        client=client,
        repository=repository,
        writer=writer,
        config=config,
        callbacks=emitter.callbacks(),
    )
    # A consumer that goes away pauses the run at the next page boundary
    emitter.on_disconnect = orchestrator.pause

    async def frames():
        emitter.start()
        emitter.send("sync_start", runId=run_id, resumed=resumed)
        task = asyncio.get_running_loop().create_task(_drive(orchestrator, emitter, run_id, client))
        _running.add(task)
        task.add_done_callback(_running.discard)
        async for frame in emitter.stream():
            yield frame

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/stream")
async def stream_sync(
    request: SyncStreamRequest,
    engine=Depends(get_engine),
    client_factory=Depends(get_client_factory),
):
    """
    Start a sync run and stream its progress as server-sent events.

    First frame is {"type": "sync_start", "runId"}; the stream ends after
    exactly one "complete" or "failed" event.
    """
    _require_token(request.tokens)
    settings = get_settings()
    try:
        config = SyncConfig.from_settings(settings, request.sync_config)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    repository = SyncRunRepository(engine, error_log_limit=settings.error_log_limit)
    run = repository.create(settings.owner_id, config.to_run_config())
    client = client_factory(request.tokens)
    return _stream_run(engine, run.id, config, client, resumed=False)


@router.post("/resume")
async def resume_sync(
    request: SyncResumeRequest,
    engine=Depends(get_engine),
    client_factory=Depends(get_client_factory),
):
    """Continue a paused or failed run from its last checkpoint, same stream contract."""
    _require_token(request.tokens)
    settings = get_settings()
    repository = SyncRunRepository(engine, error_log_limit=settings.error_log_limit)
    try:
        run = repository.get(request.sync_run_id)
    except SyncRunNotFound:
        raise HTTPException(status_code=404, detail="Sync run not found")
    if run.status == RunStatus.COMPLETED:
        raise HTTPException(status_code=409, detail="Sync run already completed")

    config = SyncConfig.from_settings(settings, run.run_config)
    client = client_factory(request.tokens)
    return _stream_run(engine, run.id, config, client, resumed=True)


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
def get_run(run_id: str, engine=Depends(get_engine)):
    """Persisted state of one sync run."""
    repository = SyncRunRepository(engine)
    try:
        run = repository.get(run_id)
    except SyncRunNotFound:
        raise HTTPException(status_code=404, detail="Sync run not found")
    with Session(engine) as s:
        checkpoint_count = s.exec(
            select(func.count(SyncCheckpoint.id)).where(SyncCheckpoint.run_id == run_id)
        ).one()
    return SyncRunResponse(
        id=run.id,
        status=run.status.value,
        current_step=run.current_step,
        progress=run.progress_dict(),
        errors=run.errors or [],
        errors_dropped=run.errors_dropped,
        checkpoint_count=checkpoint_count,
        started_at=run.started_at,
        last_updated_at=run.last_updated_at,
        completed_at=run.completed_at,
    )


@router.get("/stats")
def sync_stats(engine=Depends(get_engine)):
    """Aggregate counts from the persisted store, independent of any running sync."""
    counts = {}
    with Session(engine) as s:
        for key, model in (
            ("accounts", Account),
            ("locations", Location),
            ("reviews", Review),
            ("posts", Post),
            ("performance_records", PerformanceRecord),
            ("search_keywords", SearchKeyword),
        ):
            counts[key] = s.exec(select(func.count(model.id))).one()
        average = s.exec(select(func.avg(Review.star_rating))).one()
    counts["average_rating"] = round(float(average), 2) if average is not None else None
    return counts


@router.post("/dedup")
def run_dedup(engine=Depends(get_engine)):
    """Merge duplicate records, then retry any natural-key index duplicates blocked."""
    result = DedupReconciler(engine, DedupPolicy.from_settings(get_settings())).run()
    skipped = run_migrations(engine)
    return dict(result.to_dict(), indexes_pending=skipped)
