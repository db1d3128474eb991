from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.crm.api import get_current_user as crm_get_current_user
from stageflow.crm.authz import ActorUser, Role
from stageflow.main import app
from stageflow.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            org_id="org-1",
            role=Role.ADMIN,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(subject: str) -> str:
    settings = get_settings()
    return jwt.encode({"sub": subject, "roles": ["crm_admin"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_mutating_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [
        client.post("/api/crm/modules", json={"key": f"module_{index}", "name": f"Module {index}"})
        for index in range(5)
    ]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert len(limited) == 2

    body = limited[0].json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert limited[0].headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/crm/modules", json={"key": "readable", "name": "Readable"})
    assert create.status_code == 201

    responses = [client.get("/api/crm/modules") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_buckets_are_per_route_group_and_user(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/crm/modules", json={"key": f"m_{index}", "name": "M"}).status_code == 201
    assert client.post("/api/crm/modules", json={"key": "m_over", "name": "M"}).status_code == 429

    # Another route group has its own bucket.
    other_group = client.post("/api/automation/jobs/process")
    assert other_group.status_code != 429

    # Another authenticated user has its own bucket.
    other_user = client.post(
        "/api/crm/modules",
        json={"key": "m_other_user", "name": "M"},
        headers={"Authorization": f"Bearer {_token('user-2')}"},
    )
    assert other_user.status_code == 201
