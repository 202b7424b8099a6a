from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.dependencies import enforce_global_rate_limit
from .api.routes.auth import router as auth_router
from .api.routes.devices import router as devices_router
from .api.routes.health import router as health_router
from .api.routes.weather import router as weather_router
from .core.config import Settings, get_settings
from .core.errors import ApiError
from .core.logging import configure_logging
from .db import configure_engine, dispose_engine, init_db
from .repositories.credential_throttle import InMemoryCredentialThrottleRepository
from .repositories.rate_limits import InMemoryRateLimitRepository
from .repositories.users import InMemoryUsersRepository
from .services.flash import FlashWorkflow
from .services.process_runner import ProcessRunner
from .services.weather import WeatherClient
from .telemetry import setup_prometheus

logger = structlog.get_logger(__name__)


async def _sweep_forever(app: FastAPI, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        windows = await app.state.rate_limiter.sweep()
        records = await app.state.credential_throttle.sweep()
        if windows or records:
            logger.debug("throttle.sweep", windows=windows, failure_records=records)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    if settings.database_url:
        configure_engine(settings.database_url)
        await init_db()
    interval = min(
        settings.auth_rate_limit_window_seconds,
        settings.global_rate_limit_window_seconds,
        settings.credential_throttle_window_seconds,
    )
    sweeper = asyncio.create_task(_sweep_forever(app, interval))
    if app.state.users_repository is not None:
        logger.warning("users.storage", backend="in-memory (demo only)")
    logger.info("app.startup", storage=app.state.storage_backend, env=settings.app_env)
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        if settings.database_url:
            await dispose_engine()
        logger.info("app.shutdown")


def _error_response(exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(),
        headers=exc.headers(),
    )


def _register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request.failed", path=request.url.path, error=exc.message)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("request.malformed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(status_code=400, content={"error": "Malformed request payload"})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404 and request.url.path.startswith(settings.api_prefix):
            return JSONResponse(status_code=404, content={"error": "Endpoint not found"})
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("request.unhandled", path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    app = FastAPI(title=settings.project_name, version="0.1.0", lifespan=lifespan)

    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.rate_limiter = InMemoryRateLimitRepository()
    app.state.credential_throttle = InMemoryCredentialThrottleRepository(
        max_failures=settings.credential_throttle_max_failures,
        window_seconds=settings.credential_throttle_window_seconds,
    )
    if settings.database_url:
        app.state.users_repository = None
        app.state.storage_backend = "database"
    else:
        app.state.users_repository = InMemoryUsersRepository(settings)
        app.state.storage_backend = "memory"
    runner = ProcessRunner(
        timeout_ms=settings.flash_timeout_ms,
        max_output_bytes=settings.flash_max_output_bytes,
        kill_grace_ms=settings.flash_kill_grace_ms,
    )
    app.state.flash_workflow = FlashWorkflow(
        runner,
        executable=settings.flash_cli_executable,
        project_root=settings.project_root,
        allowed_extensions=settings.sketch_extensions,
        probe_timeout_ms=settings.flash_probe_timeout_ms,
    )
    app.state.weather_client = WeatherClient(
        weather_endpoint=settings.weather_endpoint,
        geocode_endpoint=settings.geocode_endpoint,
        timeout_seconds=settings.weather_timeout_seconds,
    )

    allow_origins = settings.cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in allow_origins],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    _register_exception_handlers(app, settings)

    guarded = [Depends(enforce_global_rate_limit)]
    app.include_router(health_router, prefix=settings.api_prefix, dependencies=guarded)
    app.include_router(auth_router, prefix=settings.api_prefix, dependencies=guarded)
    app.include_router(devices_router, prefix=settings.api_prefix, dependencies=guarded)
    app.include_router(weather_router, prefix=settings.api_prefix, dependencies=guarded)

    if settings.enable_prometheus_metrics:
        setup_prometheus(app, settings)

    return app


app = create_app()
