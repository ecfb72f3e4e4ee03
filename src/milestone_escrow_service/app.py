"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from milestone_escrow_service.config import get_settings
from milestone_escrow_service.core.exceptions import register_exception_handlers
from milestone_escrow_service.core.lifespan import lifespan
from milestone_escrow_service.core.middleware import RequestValidationMiddleware
from milestone_escrow_service.routers import health, jobs, milestones

_ROUTERS = (
    (health.router, "Operations"),
    (jobs.router, "Jobs"),
    (milestones.router, "Milestones"),
)


def create_app() -> FastAPI:
    """Build the escrow API; clients and the job store are created by the lifespan."""
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    for router, tag in _ROUTERS:
        app.include_router(router, tags=[tag])
    app.add_middleware(RequestValidationMiddleware, max_body_size=settings.request.max_body_size)
    return app
