"""FastAPI application with lifespan and router mounting."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from stepiq.api.routes import health
from stepiq.core.config import AppSettings
from stepiq.persistence.redis_backend import RedisDistributedLock


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize and tear down application resources."""
    settings = getattr(app.state, "settings", None) or AppSettings()
    app.state.settings = settings
    if getattr(app.state, "lock", None) is None:
        app.state.lock = RedisDistributedLock(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
        )
    yield


def create_app(settings: AppSettings | None = None, lock: RedisDistributedLock | None = None) -> FastAPI:
    """Create and configure the worker's health application."""
    app = FastAPI(
        title="StepIQ Worker",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.lock = lock
    app.include_router(health.router)
    return app
