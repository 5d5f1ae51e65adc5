from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import AsyncIterator
from uuid import uuid4

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.dependencies import get_current_user, get_db
from api.main import app
from shared.models import Base, User


@pytest.fixture()
def session_factory() -> async_sessionmaker[AsyncSession]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def prepare_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(prepare_schema())
    factory = async_sessionmaker(engine, expire_on_commit=False)

    yield factory

    asyncio.run(engine.dispose())


@pytest.fixture()
def client(session_factory: async_sessionmaker[AsyncSession]) -> TestClient:
    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def seed_user(
    session_factory: async_sessionmaker[AsyncSession], *, balance: int, role: str = "user"
) -> User:
    user = User(
        id=uuid4(),
        email=f"{uuid4()}@example.com",
        password_hash="hash",
        role=role,
        credits_balance=balance,
    )

    async def persist() -> None:
        async with session_factory() as session:
            session.add(user)
            await session.commit()

    asyncio.run(persist())
    return user


def test_credit_balance_for_regular_and_privileged_users(
    client: TestClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user = seed_user(session_factory, balance=30)
    app.dependency_overrides[get_current_user] = lambda: user

    body = client.get("/billing/credits").json()
    assert body == {
        "credits_balance": 30,
        "effective_balance": 30,
        "credits_per_image": 6,
        "privileged": False,
    }

    developer = seed_user(session_factory, balance=0, role="developer")
    app.dependency_overrides[get_current_user] = lambda: developer
    body = client.get("/billing/credits").json()
    assert body["effective_balance"] == 1_000_000
    assert body["privileged"] is True


def test_grants_require_admin(
    client: TestClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user = seed_user(session_factory, balance=10)
    admin = seed_user(session_factory, balance=0, role="admin")

    app.dependency_overrides[get_current_user] = lambda: user
    response = client.post("/billing/grants", json={"user_id": str(user.id), "amount": 50})
    assert response.status_code == 403

    app.dependency_overrides[get_current_user] = lambda: admin
    response = client.post("/billing/grants", json={"user_id": str(user.id), "amount": 50})
    assert response.status_code == 200
    assert response.json() == {"user_id": str(user.id), "credits_balance": 60}

    response = client.post("/billing/grants", json={"user_id": str(user.id), "amount": 0})
    assert response.status_code == 422

    response = client.post("/billing/grants", json={"user_id": str(uuid4()), "amount": 5})
    assert response.status_code == 400


def test_me_includes_role_and_balance(
    client: TestClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user = seed_user(session_factory, balance=42, role="developer")
    app.dependency_overrides[get_current_user] = lambda: user

    body = client.get("/auth/me").json()

    assert body["id"] == str(user.id)
    assert body["role"] == "developer"
    assert body["credits_balance"] == 42
