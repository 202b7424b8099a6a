from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import AsyncIterator

import structlog
from fastapi import Depends, Header, Request
from jose import JWTError
from serial.tools import list_ports

from ..core.config import Settings, get_settings
from ..core.errors import RateLimited, Unauthorized
from ..core.security import decode_access_token
from ..db import get_sessionmaker
from ..domain.auth import Identity
from ..domain.rate_limits import RateLimitStatus
from ..repositories.credential_throttle import CredentialThrottleRepository
from ..repositories.rate_limits import RateLimitRepository
from ..repositories.users import SqlAlchemyUsersRepository, UsersRepository
from ..services.flash import FlashWorkflow
from ..services.serial_ports import PortLister
from ..services.weather import WeatherClient
from ..telemetry import RATE_LIMIT_DENIALS

logger = structlog.get_logger(__name__)


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_rate_limit_repository(request: Request) -> RateLimitRepository:
    return request.app.state.rate_limiter


async def get_credential_throttle(request: Request) -> CredentialThrottleRepository:
    return request.app.state.credential_throttle


async def get_users_repository(request: Request) -> AsyncIterator[UsersRepository]:
    """Yield the ephemeral store when configured, otherwise a session-bound SQL repository."""

    memory_repo = request.app.state.users_repository
    if memory_repo is not None:
        yield memory_repo
        return
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        yield SqlAlchemyUsersRepository(session, get_app_settings(request))


async def get_flash_workflow(request: Request) -> FlashWorkflow:
    return request.app.state.flash_workflow


async def get_weather_client(request: Request) -> WeatherClient:
    return request.app.state.weather_client


async def get_port_lister() -> PortLister:
    return list_ports.comports


def authenticate(raw_header: str | None, settings: Settings | None = None) -> Identity:
    """Verify ``Bearer <token>`` and return the identity it carries.

    Every failure raises the same :class:`Unauthorized` so callers cannot tell
    a forged token from an expired one.
    """

    if not raw_header:
        raise Unauthorized()
    parts = raw_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise Unauthorized()
    try:
        payload = decode_access_token(parts[1], settings)
    except JWTError as exc:
        logger.info("auth.token_rejected", error=type(exc).__name__)
        raise Unauthorized() from exc

    subject = payload.get("sub")
    email = payload.get("email")
    expires = payload.get("exp")
    if not subject or not email or expires is None:
        raise Unauthorized()
    issued = payload.get("iat")
    return Identity(
        id=str(subject),
        email=str(email),
        issued_at=datetime.fromtimestamp(issued, tz=timezone.utc) if issued is not None else None,
        expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
    )


async def get_current_identity(
    request: Request,
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> Identity:
    identity = authenticate(authorization, settings)
    request.state.identity = identity
    structlog.contextvars.bind_contextvars(user_id=identity.id)
    return identity


async def _hit(
    repo: RateLimitRepository,
    *,
    scope: str,
    key: str,
    limit: int,
    window_seconds: int,
    message: str | None,
) -> RateLimitStatus:
    status = await repo.hit(scope=scope, key=key, limit=limit, window_seconds=window_seconds)
    if not status.allowed:
        RATE_LIMIT_DENIALS.labels(scope=scope).inc()
        logger.warning("rate_limit.denied", scope=scope, key=key, retry_after=status.retry_after_seconds)
        raise RateLimited(status.retry_after_seconds, message)
    return status


def enforce_rate_limit(
    scope: str,
    *,
    message: str | None = None,
) -> Callable[..., object]:
    """Dependency factory applying the auth-endpoint quota to ``<scope>:<ip>``."""

    async def dependency(
        client_ip: str = Depends(get_client_ip),
        repo: RateLimitRepository = Depends(get_rate_limit_repository),
        settings: Settings = Depends(get_app_settings),
    ) -> RateLimitStatus:
        return await _hit(
            repo,
            scope=scope,
            key=client_ip,
            limit=settings.auth_rate_limit_max_requests,
            window_seconds=settings.auth_rate_limit_window_seconds,
            message=message,
        )

    return dependency


async def enforce_global_rate_limit(
    client_ip: str = Depends(get_client_ip),
    repo: RateLimitRepository = Depends(get_rate_limit_repository),
    settings: Settings = Depends(get_app_settings),
) -> RateLimitStatus:
    return await _hit(
        repo,
        scope="api",
        key=client_ip,
        limit=settings.global_rate_limit_max_requests,
        window_seconds=settings.global_rate_limit_window_seconds,
        message=None,
    )
