"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from campfire_service.config import get_settings
from campfire_service.core.exceptions import register_exception_handlers
from campfire_service.core.lifespan import lifespan
from campfire_service.core.middleware import RequestValidationMiddleware
from campfire_service.routers import credits, health, tasks


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(tasks.router, tags=["Tasks"])
    app.include_router(credits.router, tags=["Credits"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
