"""FastAPI application wiring for the portal service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as api_router
from .config import get_settings
from .domain.errors import (
    BrokenChainError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    NotOnboardedError,
    PortalError,
    SlugTakenError,
    StorageError,
    UnauthenticatedError,
    ValidationError,
)
from .domain.service import PortalService
from .repository import PortalRepository
from .storage import S3ObjectStore

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
SETUP_PATH = "/dashboard/setup"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, object store, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    app.state.portal_service = PortalService(
        PortalRepository(pool),
        S3ObjectStore.from_settings(settings),
        settings,
    )
    try:
        yield
    finally:
        pool.close()
        pool.wait_close()


def _error_body(exc: PortalError, detail: str | None = None, **extra: object) -> dict[str, object]:
    body: dict[str, object] = {"detail": detail or exc.message}
    body.update({key: value for key, value in extra.items() if value is not None})
    return body


def status_for(exc: PortalError) -> int:
    """Map a domain error onto its HTTP status code."""
    if isinstance(exc, UnauthenticatedError):
        return 401
    if isinstance(exc, NotOnboardedError):
        return 404
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ForbiddenError):
        return 403
    if isinstance(exc, (ValidationError, SlugTakenError)):
        return 400
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, StorageError):
        return 502
    return 500


async def handle_portal_error(request: Request, exc: PortalError) -> JSONResponse:
    """Render a domain error as JSON, adding the redirect or field hint the client needs."""
    status_code = status_for(exc)
    if isinstance(exc, UnauthenticatedError):
        body = _error_body(exc, redirect_to=LOGIN_PATH)
    elif isinstance(exc, NotOnboardedError):
        body = _error_body(exc, redirect_to=SETUP_PATH)
    elif isinstance(exc, NotFoundError):
        # cross-tenant and missing resources share one response
        body = _error_body(exc, detail="not found")
    elif isinstance(exc, ValidationError):
        body = _error_body(exc, field=exc.field)
    elif isinstance(exc, SlugTakenError):
        body = _error_body(exc, field="slug")
    elif isinstance(exc, BrokenChainError):
        logger.error("broken ownership chain on %s %s: %s", request.method, request.url.path, exc.detail)
        body = _error_body(exc, detail="internal error")
    elif isinstance(exc, StorageError):
        logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc.message)
        body = _error_body(exc, detail="storage unavailable")
    elif status_code >= 500:
        logger.error("unhandled portal error on %s %s: %s", request.method, request.url.path, exc.message)
        body = _error_body(exc, detail="internal error")
    else:
        body = _error_body(exc)
    return JSONResponse(status_code=status_code, content=body)


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI application; tests pass ``with_lifespan=False`` and inject a service."""
    application = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan if with_lifespan else None,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )
    application.add_exception_handler(PortalError, handle_portal_error)

    @application.get("/healthz", tags=["health"])
    def healthz() -> dict[str, str]:
        """Return a minimal readiness indicator used by orchestration systems."""
        return {"status": "ok"}

    @application.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    application.include_router(api_router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    uvicorn.run(
        "portalpro.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
