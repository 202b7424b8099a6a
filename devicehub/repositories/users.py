"""Account storage for the auth endpoints.

Emails are stored lowercased and are unique. Password hashing and checking run
in a worker thread because bcrypt is deliberately slow.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

import structlog
from anyio import to_thread
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.security import hash_password, verify_password
from ..domain.users import User, UserCreate
from ..models.user import UserModel

logger = structlog.get_logger(__name__)


class DuplicateUserError(ValueError):
    """Raised when creating a user whose email is already registered."""


class UsersRepository(Protocol):
    async def create(self, payload: UserCreate) -> User: ...

    async def get(self, user_id: UUID) -> User | None: ...

    async def get_by_email(self, email: str) -> User | None: ...

    async def verify_credentials(self, email: str, password: str) -> User | None: ...


async def _check_password(password: str, password_hash: str, settings: Settings | None) -> bool:
    return await to_thread.run_sync(verify_password, password, password_hash, settings)


@dataclass
class _Account:
    user: User
    password_hash: str


class InMemoryUsersRepository:
    """Process-local accounts; everything is lost on restart."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._accounts: dict[str, _Account] = {}
        self._emails_by_id: dict[UUID, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, payload: UserCreate) -> User:
        email = payload.email.lower()
        password_hash = await to_thread.run_sync(hash_password, payload.password, self._settings)
        async with self._lock:
            if email in self._accounts:
                raise DuplicateUserError(email)
            user = User(email=email)
            self._accounts[email] = _Account(user=user, password_hash=password_hash)
            self._emails_by_id[user.id] = email
        logger.info("users.created", user_id=str(user.id), backend="memory")
        return user

    async def get(self, user_id: UUID) -> User | None:
        email = self._emails_by_id.get(user_id)
        return await self.get_by_email(email) if email else None

    async def get_by_email(self, email: str) -> User | None:
        account = self._accounts.get(email.lower())
        return account.user if account else None

    async def verify_credentials(self, email: str, password: str) -> User | None:
        account = self._accounts.get(email.lower())
        if account is None or not await _check_password(password, account.password_hash, self._settings):
            return None
        return account.user


class SqlAlchemyUsersRepository:
    """Accounts in the ``users`` table, one repository per request session."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings

    async def create(self, payload: UserCreate) -> User:
        row = UserModel(
            email=payload.email.lower(),
            password_hash=await to_thread.run_sync(hash_password, payload.password, self._settings),
        )
        self._session.add(row)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateUserError(payload.email.lower()) from exc
        await self._session.refresh(row)
        logger.info("users.created", user_id=str(row.id), backend="database")
        return User.model_validate(row)

    async def get(self, user_id: UUID) -> User | None:
        row = await self._first(UserModel.id == user_id)
        return User.model_validate(row) if row else None

    async def get_by_email(self, email: str) -> User | None:
        row = await self._first(UserModel.email == email.lower())
        return User.model_validate(row) if row else None

    async def verify_credentials(self, email: str, password: str) -> User | None:
        row = await self._first(UserModel.email == email.lower())
        if row is None or not await _check_password(password, row.password_hash, self._settings):
            return None
        return User.model_validate(row)

    async def _first(self, condition: Any) -> UserModel | None:
        result = await self._session.execute(select(UserModel).where(condition))
        return result.scalar_one_or_none()
