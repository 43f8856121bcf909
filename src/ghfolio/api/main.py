"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ghfolio.api.routes import repos, sync as sync_routes
from ghfolio.db.engine import get_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # First get_engine() call creates tables and applies migrations
    engine = get_engine()
    logger.info("Database ready (%s)", engine.url.render_as_string(hide_password=True))
    yield


def create_app() -> FastAPI:
    """Build the app. The database is only touched on startup."""
    app = FastAPI(
        title="ghfolio API",
        description="GitHub App repository sync for portfolio pages",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(repos.router, prefix="/repos", tags=["repos"])

    return app


# Module-level app instance for uvicorn
app = create_app()
