"""
SyncOrchestrator: walks accounts -> locations -> data types and persists
everything through the BatchWriter.

Flow for one run:
  1. Move the SyncRun to in_progress; load the set of (step, location_ref)
     units already checkpointed (empty for a fresh run).
  2. List accounts. Failure here is top-level: the run becomes failed.
  3. Per account, list locations and upsert them. A listing failure is
     recorded and that account is skipped.
  4. Per location, per data type (reviews, posts, performance, keywords),
     fetch pages and hand each one to the writer as soon as it arrives.
     A finished unit appends a checkpoint; a failed unit is recorded and
     skipped. Either way the unit counts toward progress.
  5. Completed when everything has been visited, unless the error rate
     threshold was crossed (failed) or pause() was called (paused).

Resuming runs the same flow; checkpointed units are skipped without any
API call. A unit interrupted by pause() has no checkpoint and is redone
from its first page, which is safe because every write is an upsert.
"""
import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

from profilesync.api_client import BusinessDataClient, Page
from profilesync.models.entities import LOCATION_DATA_TYPES
from profilesync.models.sync import RunStatus
from profilesync.sync.batch_writer import BatchWriter
from profilesync.sync.checkpoints import InvalidTransition, SyncRunRepository
from profilesync.sync.errors import (
    Severity,
    TopLevelSyncError,
    classify,
    format_for_user,
    log_error,
    make_error_record,
)
from profilesync.sync.normalizer import WriteContext
from profilesync.sync.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

LOCATIONS_STEP = "locations"


@dataclass
class SyncConfig:
    brand_id: str = "default"
    data_types: Tuple[str, ...] = LOCATION_DATA_TYPES
    allowed_account_refs: Optional[Tuple[str, ...]] = None
    request_timeout_seconds: float = 30.0
    max_concurrent_locations: int = 1
    error_rate_threshold: float = 0.5
    error_rate_min_units: int = 10
    performance_windows_days: Tuple[int, ...] = (7, 30, 60, 90)
    keyword_lookback_months: int = 3
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        unknown = [t for t in self.data_types if t not in LOCATION_DATA_TYPES]
        if unknown:
            raise ValueError(f"Unknown data types: {', '.join(unknown)}")
        # Processing order is fixed regardless of how the caller listed them
        self.data_types = tuple(t for t in LOCATION_DATA_TYPES if t in self.data_types)

    @classmethod
    def from_settings(cls, settings, request_config: Optional[Dict[str, Any]] = None) -> "SyncConfig":
        """
        Build a config from Settings plus a per-request config object.

        Recognised request keys: brandId, dataTypes, allowedAccountRefs,
        maxConcurrentLocations. Anything else is ignored.

        Raises:
            ValueError: unknown data type.
        """
        request_config = request_config or {}
        allowed = request_config.get("allowedAccountRefs")
        return cls(
            brand_id=request_config.get("brandId") or "default",
            data_types=tuple(request_config.get("dataTypes") or LOCATION_DATA_TYPES),
            allowed_account_refs=tuple(allowed) if allowed is not None else None,
            request_timeout_seconds=settings.request_timeout_seconds,
            max_concurrent_locations=int(
                request_config.get("maxConcurrentLocations") or settings.max_concurrent_locations
            ),
            error_rate_threshold=settings.error_rate_threshold,
            error_rate_min_units=settings.error_rate_min_units,
            performance_windows_days=tuple(settings.performance_windows_days),
            keyword_lookback_months=settings.keyword_lookback_months,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay_ms=settings.retry_base_delay_ms,
                max_delay_ms=settings.retry_max_delay_ms,
            ),
        )

    def to_run_config(self) -> Dict[str, Any]:
        """The request-level part of the config, stored on the run for resume."""
        return {
            "brandId": self.brand_id,
            "dataTypes": list(self.data_types),
            "allowedAccountRefs": (
                list(self.allowed_account_refs) if self.allowed_account_refs is not None else None
            ),
            "maxConcurrentLocations": self.max_concurrent_locations,
        }


@dataclass
class SyncCallbacks:
    on_progress: Optional[Callable[[Dict[str, Any]], None]] = None
    on_checkpoint: Optional[Callable[[Dict[str, Any]], None]] = None
    on_errors: Optional[Callable[[List[Dict[str, Any]]], None]] = None
    on_warnings: Optional[Callable[[List[str]], None]] = None


@dataclass
class SyncResult:
    run_id: str
    status: RunStatus
    counts: Dict[str, int]
    errors: List[Dict[str, Any]]
    warnings: List[str]
    progress: Dict[str, int]
    duration_seconds: float
    failure_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status.value,
            "counts": self.counts,
            "errors": self.errors,
            "warnings": self.warnings,
            "progress": self.progress,
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class _RunState:
    run_id: str
    done: Set[Tuple[str, str]]
    completed: int = 0
    total_floor: int = 0
    known_locations: int = 0
    attempted_units: int = 0
    failed_units: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class _PauseRequested(Exception):
    pass


def lookback_months(today: date, count: int) -> List[Tuple[int, int]]:
    """The ``count`` full calendar months before ``today``, newest first."""
    months = []
    year, month = today.year, today.month
    for _ in range(count):
        month -= 1
        if month == 0:
            year, month = year - 1, 12
        months.append((year, month))
    return months


class SyncOrchestrator:
    """Drives one sync run (fresh or resumed) to a terminal or paused state."""

    def __init__(
        self,
        client: BusinessDataClient,
        repository: SyncRunRepository,
        writer: BatchWriter,
        config: Optional[SyncConfig] = None,
        callbacks: Optional[SyncCallbacks] = None,
        sleep=asyncio.sleep,
        today: Callable[[], date] = date.today,
    ):
        """
        Args:
            client: Business-data API client (or a fake in tests).
            repository: Run state store; the only place run state is mutated.
            writer: BatchWriter all entity writes go through.
            config: Per-run tunables.
            callbacks: Event hooks, usually a ProgressEmitter's.
            sleep: Awaitable sleep used for retry backoff.
            today: Date source for performance windows and keyword months.
        """
        self.client = client
        self.repository = repository
        self.writer = writer
        self.config = config or SyncConfig()
        self.callbacks = callbacks or SyncCallbacks()
        self._sleep = sleep
        self._today = today
        self._pause_requested = False

    # ─── Public API ──────────────────────────────────────────────────────────

    def pause(self) -> None:
        """Stop at the next page boundary; the run is left paused."""
        if not self._pause_requested:
            logger.info("Pause requested")
        self._pause_requested = True

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    async def start(self, owner_id: str) -> SyncResult:
        run = self.repository.create(owner_id, self.config.to_run_config())
        return await self.execute(run.id)

    async def resume(self, run_id: str) -> SyncResult:
        """
        Continue a paused, failed or interrupted run from its checkpoints.

        Raises:
            SyncRunNotFound: no such run.
            InvalidTransition: the run already completed.
        """
        run = self.repository.get(run_id)
        if run.status == RunStatus.COMPLETED:
            raise InvalidTransition(f"Sync run {run_id} already completed")
        logger.info("Resuming sync run %s from %s", run_id, run.status.value)
        return await self.execute(run_id)

    async def execute(self, run_id: str) -> SyncResult:
        """Run (or continue) ``run_id`` until it is completed, failed or paused."""
        started = time.monotonic()
        done = self.repository.completed_units(run_id)
        run = self.repository.transition(run_id, RunStatus.IN_PROGRESS, step="accounts")

        state = _RunState(run_id=run_id, done=done, total_floor=run.progress_total)
        state.completed = sum(1 for step, _ in done if step in self.config.data_types)
        self._emit_progress(run.progress_dict(), run.current_step)

        failure: Optional[BaseException] = None
        failure_step = "accounts"
        accounts: List[Dict[str, Any]] = []
        try:
            accounts = await self._list_accounts(state)
        except _PauseRequested:
            pass
        except Exception as exc:
            failure = exc

        if failure is None:
            failure_step = "sync"
            try:
                for account in accounts:
                    if state.aborted or self._pause_requested:
                        break
                    await self._sync_account(state, account)
            except Exception as exc:
                logger.exception("Sync run %s aborted", run_id)
                state.aborted = True
                failure = exc

        if failure is None and state.aborted:
            failure = TopLevelSyncError(state.abort_reason or "Sync aborted")

        if failure is not None:
            self._record_error(state, failure, step=failure_step)
            run = self.repository.transition(run_id, RunStatus.FAILED)
            message = format_for_user(classify(failure))
        elif self._pause_requested:
            run = self.repository.transition(run_id, RunStatus.PAUSED)
            message = None
        else:
            run = self.repository.transition(run_id, RunStatus.COMPLETED, step="complete")
            self._emit_progress(run.progress_dict(), run.current_step)
            message = None

        logger.info(
            "Sync run %s finished as %s: %s, %d errors",
            run_id, run.status.value, state.counts, len(state.errors),
        )
        return SyncResult(
            run_id=run_id,
            status=run.status,
            counts=dict(state.counts),
            errors=list(state.errors),
            warnings=list(state.warnings),
            progress=run.progress_dict(),
            duration_seconds=time.monotonic() - started,
            failure_message=message,
        )

    # ─── Traversal ───────────────────────────────────────────────────────────

    async def _list_accounts(self, state: _RunState) -> List[Dict[str, Any]]:
        accounts = await self._collect(self.client.list_accounts, label="list accounts")
        allowed = self.config.allowed_account_refs
        if allowed is not None:
            accounts = [a for a in accounts if a.get("name") in allowed]
        logger.info("Found %d accounts", len(accounts))
        result = await self.writer.write("accounts", accounts, WriteContext(self.config.brand_id))
        self._count(state, "accounts", result.written)
        self._warn(state, result.warnings)
        return [a for a in accounts if a.get("name")]

    async def _sync_account(self, state: _RunState, account: Dict[str, Any]) -> None:
        account_ref = account["name"]
        ctx = WriteContext(brand_id=self.config.brand_id, account_ref=account_ref)
        try:
            locations = await self._collect(
                functools.partial(self.client.list_locations, account_ref),
                label=f"list locations {account_ref}",
            )
            result = await self.writer.write("locations", locations, ctx)
        except _PauseRequested:
            return
        except Exception as exc:
            self._record_error(state, exc, step=LOCATIONS_STEP, context_entity=account_ref)
            return

        self._count(state, "locations", result.written)
        self._warn(state, result.warnings)
        if (LOCATIONS_STEP, account_ref) not in state.done:
            self._checkpoint(state, LOCATIONS_STEP, account_ref, result.written)

        locations = [loc for loc in locations if loc.get("name")]
        state.known_locations += len(locations)
        self._update_progress(state, step=LOCATIONS_STEP)

        if self.config.max_concurrent_locations <= 1:
            for location in locations:
                if state.aborted or self._pause_requested:
                    return
                await self._sync_location(state, account_ref, location)
            return

        semaphore = asyncio.Semaphore(self.config.max_concurrent_locations)

        async def worker(location):
            async with semaphore:
                if state.aborted or self._pause_requested:
                    return
                try:
                    await self._sync_location(state, account_ref, location)
                except Exception:
                    # Siblings stop at their next unit boundary
                    state.aborted = True
                    raise

        # Every worker has finished before the first failure propagates
        outcomes = await asyncio.gather(*(worker(loc) for loc in locations), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                raise outcome

    async def _sync_location(self, state: _RunState, account_ref: str, location: Dict[str, Any]) -> None:
        location_ref = location["name"]
        pending = [dt for dt in self.config.data_types if (dt, location_ref) not in state.done]
        if not pending:
            return

        async def lookup() -> Optional[int]:
            return self.writer.resolve_id(
                "locations", {"brand_id": self.config.brand_id, "location_ref": location_ref}
            )

        try:
            location_id = await with_retry(
                lookup, self.config.retry_policy, label=f"resolve {location_ref}", sleep=self._sleep
            )
        except Exception as exc:
            # The location's units are skipped, not checkpointed, so a resume retries them
            state.attempted_units += 1
            info = self._record_error(state, exc, step=LOCATIONS_STEP, context_entity=location_ref)
            if info.severity != Severity.LOW:
                state.failed_units += 1
            self._check_error_rate(state)
            state.completed += len(pending)
            self._update_progress(state, step=LOCATIONS_STEP)
            return

        ctx = WriteContext(
            brand_id=self.config.brand_id,
            account_ref=account_ref,
            location_id=location_id,
            location_ref=location_ref,
        )
        for data_type in pending:
            if state.aborted or self._pause_requested:
                return
            await self._run_unit(state, data_type, ctx)

    async def _run_unit(self, state: _RunState, data_type: str, ctx: WriteContext) -> None:
        """Fetch and write every page of one (data type, location) unit."""
        written = 0
        warnings: List[str] = []
        try:
            async for page in self._unit_pages(data_type, ctx):
                result = await self.writer.write(data_type, page.items, ctx)
                written += result.written
                self._count(state, data_type, result.written)
                warnings.extend(result.warnings)
                logger.debug("%s %s: wrote page of %d", data_type, ctx.location_ref, result.written)
        except _PauseRequested:
            logger.info("Paused during %s for %s", data_type, ctx.location_ref)
            return
        except Exception as exc:
            state.attempted_units += 1
            info = self._record_error(state, exc, step=data_type, context_entity=ctx.location_ref)
            # Permission/not-found is an expected outcome, not a failing unit
            if info.severity != Severity.LOW:
                state.failed_units += 1
            self._check_error_rate(state)
        else:
            state.attempted_units += 1
            self._checkpoint(state, data_type, ctx.location_ref, written)
        finally:
            self._warn(state, warnings)

        state.completed += 1
        self._update_progress(state, step=data_type)

    async def _unit_pages(self, data_type: str, ctx: WriteContext) -> AsyncIterator[Page]:
        label = f"{data_type} {ctx.location_ref}"
        if data_type == "reviews":
            fetch = functools.partial(self.client.list_reviews, ctx.account_ref, ctx.location_ref)
            async for page in self._paginate(fetch, label):
                yield page
        elif data_type == "posts":
            fetch = functools.partial(self.client.list_posts, ctx.account_ref, ctx.location_ref)
            async for page in self._paginate(fetch, label):
                yield page
        elif data_type == "performance":
            end = self._today()
            for window in self.config.performance_windows_days:
                if self._pause_requested:
                    raise _PauseRequested()
                start = end - timedelta(days=window)
                yield await self._call(
                    functools.partial(
                        self.client.fetch_performance, ctx.location_ref, start, end, window
                    ),
                    label=f"{label} {window}d",
                )
        elif data_type == "keywords":
            for year, month in lookback_months(self._today(), self.config.keyword_lookback_months):
                fetch = functools.partial(
                    self.client.list_search_keywords, ctx.location_ref, year, month
                )
                async for page in self._paginate(fetch, f"{label} {year}-{month:02d}"):
                    yield page
        else:
            raise ValueError(f"Unknown data type: {data_type}")

    # ─── API call helpers ────────────────────────────────────────────────────

    async def _call(self, operation: Callable[[], Any], label: str) -> Page:
        """One API call, time-bounded and retried per the policy."""
        async def attempt():
            return await asyncio.wait_for(operation(), timeout=self.config.request_timeout_seconds)

        return await with_retry(attempt, self.config.retry_policy, label=label, sleep=self._sleep)

    async def _paginate(self, fetch: Callable[..., Any], label: str) -> AsyncIterator[Page]:
        """Yield pages until there is no next-page token. Pause is checked between pages."""
        token: Optional[str] = None
        while True:
            if self._pause_requested:
                raise _PauseRequested()
            page = await self._call(functools.partial(fetch, page_token=token), label)
            yield page
            token = page.next_page_token
            if not token:
                return

    async def _collect(self, fetch: Callable[..., Any], label: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        async for page in self._paginate(fetch, label):
            items.extend(page.items)
        return items

    # ─── State bookkeeping ───────────────────────────────────────────────────

    def _count(self, state: _RunState, entity_type: str, n: int) -> None:
        state.counts[entity_type] = state.counts.get(entity_type, 0) + n

    def _checkpoint(self, state: _RunState, step: str, location_ref: str, records: int) -> None:
        checkpoint = self.repository.append_checkpoint(state.run_id, step, location_ref, records)
        state.done.add((step, location_ref))
        if checkpoint is not None and self.callbacks.on_checkpoint:
            self.callbacks.on_checkpoint(checkpoint.to_event())

    def _record_error(
        self,
        state: _RunState,
        error: BaseException,
        *,
        step: str,
        context_entity: Optional[str] = None,
    ):
        info = log_error(error, f"{step} {context_entity or ''}".strip())
        record = make_error_record(error, step=step, context_entity=context_entity)
        self.repository.record_error(state.run_id, record)
        state.errors.append(record)
        if self.callbacks.on_errors:
            self.callbacks.on_errors([record])
        return info

    def _warn(self, state: _RunState, warnings: Iterable[str]) -> None:
        warnings = list(warnings)
        if not warnings:
            return
        state.warnings.extend(warnings)
        if self.callbacks.on_warnings:
            self.callbacks.on_warnings(warnings)

    def _check_error_rate(self, state: _RunState) -> None:
        if state.attempted_units < self.config.error_rate_min_units:
            return
        rate = state.failed_units / state.attempted_units
        if rate > self.config.error_rate_threshold and not state.aborted:
            state.aborted = True
            state.abort_reason = (
                f"Error rate {rate:.0%} over {state.attempted_units} units exceeds "
                f"{self.config.error_rate_threshold:.0%}"
            )
            logger.error("Sync run %s: %s", state.run_id, state.abort_reason)

    def _update_progress(self, state: _RunState, *, step: str) -> None:
        total = max(state.known_locations * len(self.config.data_types), state.total_floor)
        run = self.repository.update_progress(
            state.run_id, completed=state.completed, total=total, step=step
        )
        self._emit_progress(run.progress_dict(), run.current_step)

    def _emit_progress(self, progress: Dict[str, int], step: str) -> None:
        if self.callbacks.on_progress:
            self.callbacks.on_progress(dict(progress, currentStep=step))
