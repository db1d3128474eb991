from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.crm.api import get_current_user as crm_get_current_user
from stageflow.crm.authz import ActorUser, Role
from stageflow.main import app
from stageflow.middleware.rate_limit import reset_rate_limiter
from stageflow.models import CRMNote


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> dict[str, object]:
    return {"user_id": "admin-1", "role": Role.ADMIN}


@pytest.fixture()
def client(db_session: Session, actor: dict[str, object]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=str(actor["user_id"]),
            org_id="org-1",
            role=actor["role"],  # type: ignore[arg-type]
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()




def _module(client: TestClient, key: str = "deals") -> dict:
    response = client.post(
        "/api/crm/modules",
        json={"key": key, "name": key.title(), "fields": [{"key": "priority", "label": "Priority"}]},
    )
    assert response.status_code == 201
    return response.json()


def _record(client: TestClient, module_id: str) -> dict:
    response = client.post("/api/crm/records", json={"module_id": module_id, "title": "Deal"})
    assert response.status_code == 201
    return response.json()


def _macro(client: TestClient, module_id: str, **extra: object) -> dict:
    body = {
        "module_id": module_id,
        "name": "Escalate",
        "allowed_roles": ["crm_admin", "crm_agent"],
        "actions": [
            {"order": 1, "type": "update_fields", "config": {"fields": {"priority": "high"}}},
            {"order": 2, "type": "add_note", "config": {"body": "Escalated"}},
        ],
        **extra,
    }
    response = client.post("/api/automation/macros", json=body)
    assert response.status_code == 201
    return response.json()


def test_macro_runs_actions_against_a_record(client: TestClient, db_session: Session) -> None:
    module = _module(client)
    record = _record(client, module["id"])
    macro = _macro(client, module["id"])
    assert macro["created_by"] == "admin-1"
    assert [item["type"] for item in macro["actions"]] == ["update_fields", "add_note"]

    response = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["result"]["source"] == "macro"
    assert body["result"]["macro_id"] == macro["id"]
    assert [item["status"] for item in body["result"]["actions_executed"]] == ["success", "success"]

    stored = client.get(f"/api/crm/records/{record['id']}").json()
    assert stored["data"]["priority"] == "high"
    assert db_session.scalar(select(CRMNote.body)) == "Escalated"

    runs = client.get("/api/automation/runs", params={"record_id": record["id"]}).json()
    assert [item["source"] for item in runs] == ["macro"]


def test_macro_role_gate(client: TestClient, actor: dict[str, object]) -> None:
    module = _module(client)
    record = _record(client, module["id"])
    macro = _macro(client, module["id"], allowed_roles=["crm_admin"])

    actor["role"] = Role.AGENT
    denied = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert denied.status_code == 403
    assert denied.json()["message"] == "Role crm_agent may not run this macro"

    # Agents can list macros but not manage them.
    assert client.get("/api/automation/macros").status_code == 200
    assert client.post(
        "/api/automation/macros",
        json={
            "module_id": module["id"],
            "name": "Nope",
            "allowed_roles": ["crm_agent"],
            "actions": [{"type": "add_note", "config": {"body": "x"}}],
        },
    ).status_code == 403

    actor["role"] = Role.VIEWER
    viewer = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert viewer.status_code == 403
    assert viewer.json()["message"] == "Role crm_viewer may not run this macro"


def test_viewer_runs_macro_that_allows_viewers(client: TestClient, actor: dict[str, object]) -> None:
    module = _module(client)
    record = _record(client, module["id"])
    macro = _macro(
        client,
        module["id"],
        allowed_roles=["crm_viewer"],
        actions=[{"order": 1, "type": "add_note", "config": {"body": "Viewed"}}],
    )

    actor["role"] = Role.VIEWER
    response = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["result"]["status"] == "succeeded"

    # Listing only shows macros the caller may run.
    listed = client.get("/api/automation/macros")
    assert [item["id"] for item in listed.json()] == [macro["id"]]


def test_disabled_macro_conflicts(client: TestClient) -> None:
    module = _module(client)
    record = _record(client, module["id"])
    macro = _macro(client, module["id"])

    disabled = client.patch(f"/api/automation/macros/{macro['id']}", json={"is_enabled": False})
    assert disabled.status_code == 200
    assert disabled.json()["is_enabled"] is False

    response = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert response.status_code == 409
    assert response.json()["code"] == "automation_macro_run_failed"
    assert response.json()["message"] == "macro is disabled"


def test_macro_rejects_records_of_another_module(client: TestClient) -> None:
    deals = _module(client, "deals")
    leads = _module(client, "leads")
    record = _record(client, leads["id"])
    macro = _macro(client, deals["id"])

    response = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert response.status_code == 422
    assert response.json()["message"] == "macro belongs to a different module"


def test_macro_needs_allowed_roles(client: TestClient) -> None:
    module = _module(client)
    response = client.post(
        "/api/automation/macros",
        json={
            "module_id": module["id"],
            "name": "Empty",
            "allowed_roles": [],
            "actions": [{"type": "add_note", "config": {"body": "x"}}],
        },
    )
    assert response.status_code == 422


def test_macro_failures_are_reported_per_action(client: TestClient) -> None:
    module = _module(client)
    record = _record(client, module["id"])
    macro = _macro(
        client,
        module["id"],
        actions=[
            {"order": 1, "type": "update_fields", "config": {"fields": {"stage": "won"}}},
            {"order": 2, "type": "add_note", "config": {"body": "still runs"}},
        ],
    )

    response = client.post(f"/api/automation/macros/{macro['id']}/run", json={"record_id": record["id"]})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["result"]["status"] == "failed"
    assert [item["status"] for item in body["result"]["actions_executed"]] == ["failed", "success"]

    deleted = client.delete(f"/api/automation/macros/{macro['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    assert client.get(f"/api/automation/macros/{macro['id']}").status_code == 404
