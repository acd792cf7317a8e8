"""
BatchWriter: idempotent, chunked persistence of normalized API records.

Every item is written by its natural key (see models.entities.NATURAL_KEYS):
insert if absent, otherwise update the mutable fields in place (same
surrogate id). Chunks are committed in one transaction each, so a chunk is
either fully applied or not at all, and each chunk is wrapped by the retry
policy for database-category failures.

A unique-index violation at commit time means a concurrent writer inserted
one of the keys after our lookup. That is not a failure: the chunk is
re-applied once, and the colliding rows now resolve to updates.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import exc as sa_exc
from sqlmodel import Session, SQLModel, select

from profilesync.models.entities import NATURAL_KEYS
from profilesync.sync.errors import (
    DuplicateKeyError,
    RecordValidationError,
    StoreError,
    is_duplicate_key_message,
)
from profilesync.sync.normalizer import NORMALIZERS, WriteContext
from profilesync.sync.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    entity_type: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchWriter:
    """Upserts records by natural key in fixed-size, retry-wrapped chunks."""

    def __init__(
        self,
        engine,
        batch_size: int = 50,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            batch_size: Max records per transaction.
            retry_policy: Backoff/budget for database failures.
            sleep: Awaitable sleep used between retries (injectable for tests).
        """
        self.engine = engine
        self.batch_size = max(1, batch_size)
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def write(
        self,
        entity_type: str,
        items: Sequence[Dict[str, Any]],
        context: WriteContext,
    ) -> WriteResult:
        """
        Normalize and upsert raw API records of one entity type.

        Items that fail validation are skipped and reported in
        ``WriteResult.warnings``; they never fail the chunk.

        Raises:
            KeyError: unknown entity type.
            DuplicateKeyError / StoreError: a chunk could not be applied
                within the retry budget.
        """
        model, key_columns = NATURAL_KEYS[entity_type]
        normalize = NORMALIZERS[entity_type]
        result = WriteResult(entity_type=entity_type)

        # Keyed by natural key so a repeated key within one call collapses
        # onto its last occurrence.
        rows: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        for raw in items:
            try:
                fields = normalize(raw, context)
            except RecordValidationError as exc:
                result.skipped += 1
                result.warnings.append(str(exc))
                continue
            rows[tuple(fields[c] for c in key_columns)] = fields

        for chunk in chunked(list(rows.values()), self.batch_size):
            inserted, updated = await self._write_chunk_with_retry(
                model, key_columns, chunk, entity_type
            )
            result.inserted += inserted
            result.updated += updated

        logger.debug(
            "Wrote %s: %d inserted, %d updated, %d skipped",
            entity_type, result.inserted, result.updated, result.skipped,
        )
        return result

    def resolve_id(self, entity_type: str, fields: Dict[str, Any]) -> Optional[int]:
        """Surrogate id of the stored row matching ``fields``' natural key, if any."""
        try:
            with Session(self.engine) as s:
                row = find_by_natural_key(s, entity_type, fields)
                return row.id if row is not None else None
        except sa_exc.SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    async def _write_chunk_with_retry(
        self,
        model,
        key_columns: Tuple[str, ...],
        chunk: Sequence[Dict[str, Any]],
        entity_type: str,
    ) -> Tuple[int, int]:
        async def attempt() -> Tuple[int, int]:
            try:
                return self._write_chunk(model, key_columns, chunk)
            except DuplicateKeyError as exc:
                logger.debug("Natural-key collision on %s, re-applying as update: %s", entity_type, exc)
                return self._write_chunk(model, key_columns, chunk)

        return await with_retry(
            attempt,
            self.retry_policy,
            label=f"write {entity_type} chunk",
            sleep=self._sleep,
        )

    def _write_chunk(
        self,
        model,
        key_columns: Tuple[str, ...],
        chunk: Sequence[Dict[str, Any]],
    ) -> Tuple[int, int]:
        """Apply one chunk in a single transaction. Returns (inserted, updated)."""
        inserted = updated = 0
        now = datetime.utcnow()
        try:
            with Session(self.engine) as s:
                for fields in chunk:
                    existing = s.exec(_natural_key_query(model, key_columns, fields)).first()
                    if existing:
                        for k, v in fields.items():
                            setattr(existing, k, v)
                        existing.updated_at = now
                        s.add(existing)
                        updated += 1
                    else:
                        s.add(model(**fields, created_at=now, updated_at=now))
                        inserted += 1
                s.commit()
        except sa_exc.IntegrityError as exc:
            if is_duplicate_key_message(str(exc.orig)):
                raise DuplicateKeyError(str(exc.orig)) from exc
            raise StoreError(str(exc.orig)) from exc
        except sa_exc.SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        return inserted, updated


def _natural_key_query(model, key_columns: Tuple[str, ...], fields: Dict[str, Any]):
    stmt = select(model)
    for column in key_columns:
        stmt = stmt.where(getattr(model, column) == fields[column])
    return stmt


def find_by_natural_key(session: Session, entity_type: str, fields: Dict[str, Any]) -> Optional[SQLModel]:
    """Look up the stored row for a normalized record, if any."""
    model, key_columns = NATURAL_KEYS[entity_type]
    return session.exec(_natural_key_query(model, key_columns, fields)).first()
