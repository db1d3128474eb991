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
from stageflow.models import AuditLog, CRMAutomationRun


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




def _module(client: TestClient) -> dict:
    response = client.post(
        "/api/crm/modules",
        json={
            "key": "deals",
            "name": "Deals",
            "fields": [
                {"key": "amount", "label": "Amount", "data_type": "number"},
                {"key": "priority", "label": "Priority"},
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


def _workflow_body(module_id: str, **extra: object) -> dict:
    return {
        "module_id": module_id,
        "name": "Flag big deals",
        "trigger_type": "on_update",
        "trigger_config": {"watch_fields": ["amount"]},
        "conditions": {"path": "amount", "op": "gte", "value": 1000},
        "actions": [{"order": 1, "type": "update_fields", "config": {"fields": {"priority": "high"}}}],
        **extra,
    }


def test_workflow_crud_and_rbac(client: TestClient, actor: dict[str, object], db_session: Session) -> None:
    module = _module(client)

    created = client.post("/api/automation/workflows", json=_workflow_body(module["id"]))
    assert created.status_code == 201
    workflow = created.json()
    assert workflow["created_by_role"] == "crm_admin"
    assert workflow["is_enabled"] is True
    assert workflow["priority"] == 100
    assert workflow["actions"][0]["id"]

    listed = client.get("/api/automation/workflows", params={"module_id": module["id"]})
    assert [item["id"] for item in listed.json()] == [workflow["id"]]

    updated = client.patch(f"/api/automation/workflows/{workflow['id']}", json={"name": "Renamed", "priority": 5})
    assert updated.status_code == 200
    assert updated.json()["name"] == "Renamed"
    assert updated.json()["row_version"] == 2
    assert updated.json()["trigger_config"] == {"watch_fields": ["amount"]}

    toggled = client.post(f"/api/automation/workflows/{workflow['id']}/toggle", json={"is_enabled": False})
    assert toggled.status_code == 200
    assert toggled.json()["is_enabled"] is False

    actor["role"] = Role.AGENT
    assert client.get("/api/automation/workflows").status_code == 403
    denied = client.post("/api/automation/workflows", json=_workflow_body(module["id"]))
    assert denied.status_code == 403

    actor["role"] = Role.MANAGER
    assert client.get(f"/api/automation/workflows/{workflow['id']}").status_code == 200
    deleted = client.delete(f"/api/automation/workflows/{workflow['id']}")
    assert deleted.status_code == 200
    assert client.get(f"/api/automation/workflows/{workflow['id']}").status_code == 404

    actions = db_session.scalars(
        select(AuditLog.action).where(AuditLog.entity_id == workflow["id"]).order_by(AuditLog.created_at.asc())
    ).all()
    assert actions == ["create", "update", "disable", "delete"]


def test_workflow_shape_is_validated(client: TestClient) -> None:
    module = _module(client)

    no_actions = client.post("/api/automation/workflows", json=_workflow_body(module["id"], actions=[]))
    assert no_actions.status_code == 422

    bad_action = client.post(
        "/api/automation/workflows",
        json=_workflow_body(module["id"], actions=[{"type": "send_fax", "config": {}}]),
    )
    assert bad_action.status_code == 422

    bad_trigger = client.post(
        "/api/automation/workflows",
        json=_workflow_body(module["id"], trigger_config={"watch_fields": "amount"}),
    )
    assert bad_trigger.status_code == 422

    bad_condition = client.post(
        "/api/automation/workflows",
        json=_workflow_body(module["id"], conditions={"path": "amount", "op": "roughly", "value": 1}),
    )
    assert bad_condition.status_code == 422

    workflow = client.post("/api/automation/workflows", json=_workflow_body(module["id"])).json()
    broken = client.patch(
        f"/api/automation/workflows/{workflow['id']}",
        json={"trigger_type": "scheduled", "trigger_config": {"interval_minutes": 0}},
    )
    assert broken.status_code == 422
    assert broken.json()["code"] == "automation_workflow_update_failed"


def test_manual_run_dry_run_and_retry(client: TestClient, db_session: Session) -> None:
    module = _module(client)
    record = client.post(
        "/api/crm/records",
        json={"module_id": module["id"], "title": "Deal", "data": {"amount": 10}},
    ).json()
    workflow = client.post(
        "/api/automation/workflows",
        json=_workflow_body(module["id"], trigger_type="on_create", trigger_config={}, conditions=None),
    ).json()

    dry = client.get("/api/automation/run", params={"workflow_id": workflow["id"], "record_id": record["id"]})
    assert dry.status_code == 200
    assert dry.json()["success"] is True
    assert dry.json()["result"]["status"] == "dry_run"
    assert dry.json()["result"]["actions_executed"][0]["output"] == {"would_update": {"priority": "high"}}
    assert db_session.scalars(select(CRMAutomationRun)).all() == []

    ran = client.post("/api/automation/run", json={"workflow_id": workflow["id"], "record_id": record["id"]})
    assert ran.status_code == 200
    result = ran.json()["result"]
    assert result["status"] == "succeeded"
    assert result["source"] == "manual"
    assert client.get(f"/api/crm/records/{record['id']}").json()["data"]["priority"] == "high"

    run = client.get(f"/api/automation/runs/{result['run_id']}")
    assert run.status_code == 200
    assert run.json()["output"]["success_count"] == 1
    assert run.json()["finished_at"] is not None

    succeeded = client.get("/api/automation/runs", params={"status": "succeeded"}).json()
    assert [item["id"] for item in succeeded] == [result["run_id"]]

    retry = client.post(f"/api/automation/runs/{result['run_id']}/retry", json={"mode": "immediate"})
    assert retry.status_code == 409
    assert retry.json()["message"] == "only failed runs can be retried"


def test_failed_manual_run_can_be_retried(client: TestClient) -> None:
    module = _module(client)
    record = client.post("/api/crm/records", json={"module_id": module["id"], "title": "Deal"}).json()
    workflow = client.post(
        "/api/automation/workflows",
        json=_workflow_body(
            module["id"],
            trigger_type="on_create",
            trigger_config={},
            conditions=None,
            actions=[{"type": "update_fields", "config": {"fields": {"amount": "lots"}}}],
        ),
    ).json()

    ran = client.post("/api/automation/run", json={"workflow_id": workflow["id"], "record_id": record["id"]})
    assert ran.status_code == 200
    assert ran.json()["success"] is False
    assert ran.json()["result"]["status"] == "failed"
    assert ran.json()["result"]["error"] == "amount must be number"

    client.patch(
        f"/api/automation/workflows/{workflow['id']}",
        json={"actions": [{"type": "update_fields", "config": {"fields": {"amount": 5}}}]},
    )
    retried = client.post(f"/api/automation/runs/{ran.json()['result']['run_id']}/retry")
    assert retried.status_code == 200
    body = retried.json()
    assert body["mode"] == "immediate"
    assert body["result"]["status"] == "succeeded"
    assert body["result"]["source"] == "retry"


def test_viewer_cannot_run_workflows(client: TestClient, actor: dict[str, object]) -> None:
    module = _module(client)
    record = client.post("/api/crm/records", json={"module_id": module["id"], "title": "Deal"}).json()
    workflow = client.post("/api/automation/workflows", json=_workflow_body(module["id"])).json()

    actor["role"] = Role.VIEWER
    response = client.post("/api/automation/run", json={"workflow_id": workflow["id"], "record_id": record["id"]})
    assert response.status_code == 403
    assert response.json()["code"] == "automation_run_failed"
