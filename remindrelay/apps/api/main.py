from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from remindrelay.apps.api.errors import (
    http_exception_handler,
    remindrelay_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from remindrelay.apps.api.response import API_VERSION
from remindrelay.apps.api.routes.circuits import router as circuits_router
from remindrelay.apps.api.routes.health import router as health_router
from remindrelay.apps.api.routes.jobs import router as jobs_router
from remindrelay.apps.api.routes.messages import router as messages_router
from remindrelay.apps.api.routes.ops import router as ops_router
from remindrelay.core.config import get_settings
from remindrelay.core.errors import RemindRelayError
from remindrelay.core.logging import configure_logging
from remindrelay.services.jobs import build_job_engine
from remindrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_ROUTERS = (health_router, jobs_router, circuits_router, messages_router, ops_router)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    engine = getattr(app.state, "job_engine", None)
    if engine is None:
        engine = build_job_engine()
        app.state.job_engine = engine
    # In queue mode the worker owns recovery; inline mode restarts its own interrupted loops.
    if settings.job_execution_mode == "inline" and settings.job_recover_on_startup:
        recovered = await engine.recover_interrupted_jobs()
        if recovered:
            logger.info("startup_jobs_recovered count=%s", len(recovered))
    try:
        yield
    finally:
        await engine.shutdown()


def create_app() -> FastAPI:
    """Build the delivery API: job control, circuit operations, direct sends and ops views.

    Every route lives under ``/v1`` and answers with the shared success or
    error envelope. The job engine is created by the lifespan hook unless a
    caller (tests, embedding processes) has already placed one on
    ``app.state.job_engine``.
    """
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=API_VERSION,
        lifespan=lifespan,
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        increment_counter(f"http_responses_{response.status_code // 100}xx_total")
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # Most specific first; Exception is the catch-all that hides stack traces.
    for exc_type, handler in (
        (RemindRelayError, remindrelay_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (HTTPException, http_exception_handler),
        (StarletteHTTPException, starlette_http_exception_handler),
        (Exception, unhandled_exception_handler),
    ):
        app.add_exception_handler(exc_type, handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"/{API_VERSION}/docs")

    return app


app = create_app()
