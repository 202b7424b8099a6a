"""Tests shared by the in-memory and SQLAlchemy account stores."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from conftest import PASSWORD, bearer
from devicehub.core.config import Settings
from devicehub.db import configure_engine, dispose_engine, get_sessionmaker, init_db
from devicehub.domain.users import UserCreate
from devicehub.main import create_app
from devicehub.models.user import UserModel
from devicehub.repositories.users import (
    DuplicateUserError,
    InMemoryUsersRepository,
    SqlAlchemyUsersRepository,
)

SQLITE_MEMORY = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(params=["memory", "database"])
async def users_repo(request, settings):
    if request.param == "memory":
        yield InMemoryUsersRepository(settings)
        return
    configure_engine(SQLITE_MEMORY)
    await init_db()
    async with get_sessionmaker()() as session:
        yield SqlAlchemyUsersRepository(session, settings)
    await dispose_engine()


@pytest.mark.anyio
async def test_create_lowercases_and_rejects_duplicates(users_repo):
    user = await users_repo.create(UserCreate(email="Maker@Example.com", password=PASSWORD))

    assert user.email == "maker@example.com"
    with pytest.raises(DuplicateUserError):
        await users_repo.create(UserCreate(email="maker@example.com", password=PASSWORD))


@pytest.mark.anyio
async def test_lookup_by_id_and_email(users_repo):
    user = await users_repo.create(UserCreate(email="maker@example.com", password=PASSWORD))

    assert (await users_repo.get(user.id)).email == "maker@example.com"
    assert (await users_repo.get_by_email("MAKER@example.com")).id == user.id
    assert await users_repo.get_by_email("ghost@example.com") is None


@pytest.mark.anyio
async def test_verify_credentials(users_repo):
    user = await users_repo.create(UserCreate(email="maker@example.com", password=PASSWORD))

    assert (await users_repo.verify_credentials("maker@example.com", PASSWORD)).id == user.id
    assert await users_repo.verify_credentials("maker@example.com", "wrong-pass-1") is None
    assert await users_repo.verify_credentials("ghost@example.com", PASSWORD) is None


def test_database_backed_api(project_root):
    settings = Settings(
        jwt_secret="d" * 48,
        project_root=project_root,
        enable_prometheus_metrics=False,
        database_url=SQLITE_MEMORY,
    )
    with TestClient(create_app(settings)) as client:
        health = client.get("/api/health").json()
        created = client.post("/api/register", json={"email": "db@example.com", "password": PASSWORD})
        duplicate = client.post("/api/register", json={"email": "db@example.com", "password": PASSWORD})
        me = client.get("/api/me", headers=bearer(created.json()["token"]))

    assert health["storage"] == "database"
    assert created.status_code == 200
    assert duplicate.status_code == 409
    assert me.json()["user"]["email"] == "db@example.com"


@pytest.mark.anyio
async def test_hash_cost_comes_from_the_repository_settings(project_root):
    """The process-wide default is 4 rounds; the repository's own settings win."""
    settings = Settings(jwt_secret="r" * 48, project_root=project_root, bcrypt_rounds=5)
    repo = InMemoryUsersRepository(settings)

    await repo.create(UserCreate(email="maker@example.com", password=PASSWORD))

    assert repo._accounts["maker@example.com"].password_hash.startswith("$2b$05$")
    assert (await repo.verify_credentials("maker@example.com", PASSWORD)) is not None


def test_database_backed_api_hashes_with_app_settings(project_root):
    settings = Settings(
        jwt_secret="d" * 48,
        project_root=project_root,
        enable_prometheus_metrics=False,
        database_url=SQLITE_MEMORY,
        bcrypt_rounds=5,
    )
    with TestClient(create_app(settings)) as client:
        created = client.post("/api/register", json={"email": "db@example.com", "password": PASSWORD})
        login = client.post("/api/login", json={"email": "db@example.com", "password": PASSWORD})

        async def stored_hash() -> str:
            async with get_sessionmaker()() as session:
                result = await session.execute(select(UserModel.password_hash))
                return result.scalar_one()

        password_hash = client.portal.call(stored_hash)

    assert created.status_code == 200
    assert login.status_code == 200
    assert password_hash.startswith("$2b$05$")
