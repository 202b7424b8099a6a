"""Security utilities for password hashing and JWT creation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict

from jose import jwt
from passlib.context import CryptContext

from .config import Settings, get_settings

ALGORITHM = "HS256"


@lru_cache
def _pwd_context(rounds: int) -> CryptContext:
    return CryptContext(
        schemes=["bcrypt"],
        deprecated="auto",
        bcrypt__rounds=rounds,
    )


def hash_password(password: str, settings: Settings | None = None) -> str:
    """Hash a plaintext password using bcrypt."""

    settings = settings or get_settings()
    return _pwd_context(settings.bcrypt_rounds).hash(password)


def verify_password(
    plain_password: str,
    hashed_password: str,
    settings: Settings | None = None,
) -> bool:
    """Verify a plaintext password against a stored hash.

    The cost factor is read from the hash itself, so ``settings`` only selects
    which cached context does the work.
    """

    settings = settings or get_settings()
    return _pwd_context(settings.bcrypt_rounds).verify(plain_password, hashed_password)


def create_access_token(
    user_id: str,
    email: str,
    expires_delta: timedelta | None = None,
    settings: Settings | None = None,
) -> str:
    """Create a signed JWT carrying the user id and email."""

    settings = settings or get_settings()
    issued_at = datetime.now(timezone.utc)
    expire = issued_at + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode: Dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "iat": issued_at,
        "exp": expire,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=ALGORITHM)


def decode_access_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    """Decode a JWT access token, checking signature, expiry, issuer and audience.

    Raises :class:`jose.JWTError` on any verification failure.
    """

    settings = settings or get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGORITHM],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )
