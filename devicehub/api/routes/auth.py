from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends

from ...core.config import Settings
from ...core.errors import BadInput, Conflict, InvalidCredentials, NotFound, RateLimited
from ...core.security import create_access_token
from ...domain.auth import (
    CredentialsRequest,
    Identity,
    LogoutResponse,
    RegisterResponse,
    TokenResponse,
)
from ...domain.users import MeResponse, User, UserCreate, UserSummary
from ...repositories.credential_throttle import CredentialThrottleRepository
from ...repositories.users import DuplicateUserError, UsersRepository
from ...services.validation import normalize_email, validate_password_strength
from ..dependencies import (
    enforce_rate_limit,
    get_app_settings,
    get_credential_throttle,
    get_current_identity,
    get_users_repository,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["auth"])


def _require_credentials(payload: CredentialsRequest) -> tuple[str, str]:
    if not payload.email or not payload.password:
        raise BadInput("Missing email or password")
    return payload.email, payload.password


@router.post(
    "/register",
    response_model=RegisterResponse,
    dependencies=[
        Depends(
            enforce_rate_limit(
                "register",
                message="Too many registration attempts. Please try again later.",
            )
        )
    ],
)
async def register(
    payload: CredentialsRequest,
    users_repo: UsersRepository = Depends(get_users_repository),
    settings: Settings = Depends(get_app_settings),
) -> RegisterResponse:
    raw_email, raw_password = _require_credentials(payload)
    email = normalize_email(raw_email)
    password = validate_password_strength(raw_password)

    try:
        user = await users_repo.create(UserCreate(email=email, password=password))
    except DuplicateUserError as exc:
        raise Conflict("User already exists") from exc

    logger.info("auth.register", user_id=str(user.id))
    token = create_access_token(str(user.id), user.email, settings=settings)
    return RegisterResponse(id=str(user.id), token=token)


async def verify_login(
    email: str,
    password: str,
    *,
    users_repo: UsersRepository,
    throttle: CredentialThrottleRepository,
    settings: Settings,
) -> User:
    """Check a password under the account's failure throttle.

    The whole sequence holds ``throttle.attempt(email)``, so concurrent wrong
    guesses for one account are counted one by one and at most
    ``max_failures`` of them ever reach bcrypt within a window.
    """

    async with throttle.attempt(email):
        throttle_status = await throttle.status(email)
        if throttle_status.blocked:
            logger.warning("auth.login.throttled", retry_after=throttle_status.retry_after_seconds)
            raise RateLimited(
                throttle_status.retry_after_seconds or settings.credential_throttle_window_seconds,
                "Too many failed login attempts for this account. Please try again later.",
            )

        user = await users_repo.verify_credentials(email, password)
        if user is None:
            await throttle.record_failure(email)
            logger.info("auth.login.failed")
            raise InvalidCredentials()

        await throttle.reset(email)
    return user


@router.post(
    "/login",
    response_model=TokenResponse,
    dependencies=[
        Depends(
            enforce_rate_limit(
                "login",
                message="Too many login attempts. Please try again later.",
            )
        )
    ],
)
async def login(
    payload: CredentialsRequest,
    users_repo: UsersRepository = Depends(get_users_repository),
    throttle: CredentialThrottleRepository = Depends(get_credential_throttle),
    settings: Settings = Depends(get_app_settings),
) -> TokenResponse:
    raw_email, password = _require_credentials(payload)
    email = normalize_email(raw_email)

    user = await verify_login(
        email, password, users_repo=users_repo, throttle=throttle, settings=settings
    )
    logger.info("auth.login", user_id=str(user.id))
    token = create_access_token(str(user.id), user.email, settings=settings)
    return TokenResponse(token=token)


@router.post("/logout", response_model=LogoutResponse)
async def logout(identity: Identity = Depends(get_current_identity)) -> LogoutResponse:
    # Tokens are stateless; the client discards its copy.
    logger.info("auth.logout", user_id=identity.id)
    return LogoutResponse()


@router.get("/me", response_model=MeResponse)
async def read_current_user(
    identity: Identity = Depends(get_current_identity),
    users_repo: UsersRepository = Depends(get_users_repository),
) -> MeResponse:
    try:
        user_id = UUID(identity.id)
    except ValueError as exc:
        raise NotFound("User not found") from exc
    user = await users_repo.get(user_id)
    if user is None:
        raise NotFound("User not found")
    return MeResponse(user=UserSummary(id=str(user.id), email=user.email))
