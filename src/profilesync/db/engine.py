"""SQLModel engine singleton and schema initialisation."""
from sqlmodel import SQLModel, create_engine

from profilesync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # SQLite only; safe for FastAPI
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        init_db(_engine)
    return _engine


def init_db(engine) -> None:
    """Create tables and natural-key indexes (idempotent)."""
    # Import all models so metadata is populated before create_all
    from profilesync.models.entities import (  # noqa
        Account, Location, PerformanceRecord, Post, Review, SearchKeyword,
    )
    from profilesync.models.sync import SyncCheckpoint, SyncRun  # noqa
    SQLModel.metadata.create_all(engine)
    from profilesync.db.migrations import run_migrations
    run_migrations(engine)

