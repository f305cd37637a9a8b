"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from hacklab.api.deps import Services, build_services
from hacklab.api.routes import labs_router, os_router, scores_router
from hacklab.config.settings import Settings, get_settings
from hacklab.errors import (
    AuthenticationError,
    ConfigurationError,
    HackLabError,
    NotFoundError,
    ValidationError,
    ensure_hacklab_error,
)
from hacklab.observability import get_logger
from hacklab.version import __version__


log = get_logger(__name__)


def status_code_for(error: HackLabError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, AuthenticationError):
        return 401
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConfigurationError):
        return 503
    return 500


def _error_response(error: HackLabError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(error),
        content={"success": False, "data": None, "error": error.to_dict()},
    )


async def _hacklab_error_handler(request: Request, exc: HackLabError) -> JSONResponse:
    log.warning(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        phase=exc.phase,
        error=exc.message,
    )
    return _error_response(exc)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError(
        "invalid request body",
        phase="validate",
        details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
    )
    return _error_response(error)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("request_crashed", path=request.url.path)
    return _error_response(ensure_hacklab_error(exc, phase="request"))


def create_app(
    services: Services | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the HTTP app. ``services`` is built from settings when omitted."""
    settings = settings or (services.settings if services is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        app.state.services = services or build_services(settings)
        app.state.services.metrics.set_build_info(version=__version__)

        stop = asyncio.Event()
        task: asyncio.Task | None = None
        if settings.reconciler.enabled:
            task = asyncio.create_task(
                app.state.services.reconciler.run_forever(settings.reconciler.interval_seconds, stop)
            )
        log.info("api_started", environment=settings.environment, reconciler=task is not None)
        try:
            yield
        finally:
            stop.set()
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if owned:
                await app.state.services.close()
            log.info("api_stopped")

    app = FastAPI(
        title="HackLab",
        version=__version__,
        description="Per-user lab and desktop provisioning on Kubernetes",
        lifespan=lifespan,
    )
    app.add_exception_handler(HackLabError, _hacklab_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(labs_router)
    app.include_router(os_router)
    app.include_router(scores_router)

    if settings.observability.metrics_enabled:

        @app.get("/metrics", tags=["infra"])
        def metrics(request: Request) -> PlainTextResponse:
            registry = request.app.state.services.metrics.registry
            return PlainTextResponse(
                generate_latest(registry).decode("utf-8"),
                media_type=CONTENT_TYPE_LATEST,
            )

    return app
