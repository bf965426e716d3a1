"""FastAPI application factory for the job board."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI

from job_board_service.config import get_settings
from job_board_service.core.exceptions import register_exception_handlers
from job_board_service.core.lifespan import lifespan
from job_board_service.core.middleware import RequestValidationMiddleware
from job_board_service.routers import (
    applications,
    disputes,
    health,
    jobs,
    payments,
    reviews,
    tasks,
)

_ROUTERS: tuple[tuple[APIRouter, str], ...] = (
    (health.router, "Operations"),
    (jobs.router, "Jobs"),
    (applications.router, "Applications"),
    (tasks.router, "Tasks"),
    (reviews.router, "Reviews"),
    (disputes.router, "Disputes"),
    (payments.router, "Payments"),
)


def create_app() -> FastAPI:
    """Build the job board app with error handlers, routers and body validation."""
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    for router, tag in _ROUTERS:
        app.include_router(router, tags=[tag])

    # Content-Type and size checks run before routing.
    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )
    return app
