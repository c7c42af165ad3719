"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from hubris_imagegen import __version__
from hubris_imagegen.config import get_settings
from hubris_imagegen.db import create_all_tables, get_engine, get_session_factory
from hubris_imagegen.store import Store
from web.routers import builds, config, health, identity, plans


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the store on startup.
    """
    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.settings = settings
    app.state.session_factory = get_session_factory(engine)
    app.state.store = Store(settings.store_dir, app.state.session_factory)
    yield


def include_routers(application: FastAPI) -> None:
    """Mount every API router on an application."""
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(identity.router, prefix="/identity", tags=["identity"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])
    application.include_router(plans.router, prefix="/plans", tags=["plans"])


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Hubris Image Generator API",
        description="HTTP API for planning hermetic Hubris firmware image "
        "builds and browsing build history",
        version=__version__,
        lifespan=lifespan,
    )
    include_routers(application)
    return application


# Create the default application instance
app = create_app()
