from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.config import AppSettings
from backend.app.dependencies import get_components, get_database, get_settings, get_telemetry
from backend.app.logging_config import configure_application_logging
from backend.app.services.scheduler_service import SchedulerService
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubesync.api")
REQUEST_ID_HEADER = "X-Request-ID"


def health_check() -> JSONResponse:
    try:
        get_database().ping()
    except sqlite3.Error:
        LOGGER.warning("health check database ping failed", exc_info=True)
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "error"})
    return JSONResponse(content={"status": "ok", "database": "ok"})


def _build_scheduler(settings: AppSettings, telemetry: TelemetryClient) -> SchedulerService:
    components = get_components()
    return SchedulerService(
        components.jobs,
        components.task_runs,
        settings.scheduler_poll_interval_seconds,
        telemetry=telemetry,
        lock_path=settings.data_dir / "scheduler.lock",
    )


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    scheduler = _build_scheduler(settings, get_telemetry()) if settings.scheduler_enabled else None
    if scheduler is not None:
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if incoming is not None and incoming.strip():
        return incoming.strip()
    return str(uuid4())


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a request id to logs and telemetry, and echo it on the response."""
    request_id = _request_id(request)
    telemetry = get_telemetry().bind(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    )
    started_at = perf_counter()
    telemetry.emit("http.request.start")
    try:
        response = await call_next(request)
    except Exception as exc:
        telemetry.emit(
            "http.request.error",
            duration_ms=int((perf_counter() - started_at) * 1000),
            error_type=type(exc).__name__,
        )
        raise
    finally:
        reset_contextvars(**context_tokens)

    response.headers[REQUEST_ID_HEADER] = request_id
    telemetry.emit(
        "http.request.finish",
        duration_ms=int((perf_counter() - started_at) * 1000),
        status_code=response.status_code,
    )
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="tubesync API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
