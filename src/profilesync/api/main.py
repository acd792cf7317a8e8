"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from profilesync.api.routes import sync as sync_routes
from profilesync.db.engine import get_engine, init_db


def create_app(engine=None) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        engine: Optional engine to use instead of the configured one
            (tests pass an in-memory SQLite engine).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Tables and natural-key indexes (idempotent)
        if engine is not None:
            init_db(engine)
        else:
            get_engine()
        yield

    app = FastAPI(
        title="Profile Sync API",
        description="Business profile data synchronization engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    if engine is not None:
        app.dependency_overrides[get_engine] = lambda: engine

    return app


# Module-level app instance for uvicorn
app = create_app()
