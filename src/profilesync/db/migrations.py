"""
Database migrations for profile sync.

Incremental schema evolution for databases created by older versions:
  - SyncRun retention/bounded-error columns, added with ALTER TABLE ADD COLUMN
    when absent;
  - the natural-key unique indexes, created when absent.

A unique index cannot be created while legacy duplicates exist. Such an
index is skipped with a warning and reported; run the dedup pass
(`python -m profilesync dedup`) and then migrations again.

Called automatically from init_db() after create_all() so both fresh
installs and existing DBs are handled without manual steps.
"""
import logging
from typing import List

from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect, text

from profilesync.models.entities import NATURAL_KEYS

logger = logging.getLogger(__name__)


def natural_key_indexes():
    """The uq_*_natural_key Index objects declared on the entity tables."""
    indexes = []
    for model, _ in NATURAL_KEYS.values():
        indexes.extend(
            idx for idx in model.__table__.indexes
            if idx.name and idx.name.endswith("_natural_key")
        )
    return indexes


def run_migrations(engine) -> List[str]:
    """Apply all pending schema migrations.

    Safe to call multiple times: checks column and index existence first.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).

    Returns:
        Names of natural-key indexes that could not be created because
        duplicate rows exist.
    """
    with engine.connect() as conn:
        # SyncRun: bounded error log overflow counter and retention archive
        _add_column_if_missing(conn, "syncrun", "errors_dropped", "INTEGER DEFAULT 0")
        _add_column_if_missing(conn, "syncrun", "archived", "BOOLEAN DEFAULT 0")
        _add_column_if_missing(conn, "syncrun", "archived_at", "DATETIME")
        conn.commit()

    skipped = []
    for index in natural_key_indexes():
        if not _create_index_if_missing(engine, index):
            skipped.append(index.name)
    if skipped:
        logger.warning(
            "Natural-key indexes not created (duplicates present, run dedup): %s",
            ", ".join(skipped),
        )
    return skipped


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "DATETIME".
    """
    existing_columns = {c["name"] for c in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
        logger.info("Added column %s.%s", table, column)


def _create_index_if_missing(engine, index) -> bool:
    """Create ``index`` unless present. False if duplicates prevented it."""
    with engine.connect() as conn:
        existing = {i["name"] for i in inspect(conn).get_indexes(index.table.name)}
        if index.name in existing:
            return True
        try:
            index.create(bind=conn)
            conn.commit()
        except sa_exc.IntegrityError as exc:
            conn.rollback()
            logger.warning("Could not create %s: %s", index.name, exc.orig)
            return False
    logger.info("Created index %s", index.name)
    return True
