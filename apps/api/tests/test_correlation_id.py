from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
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


def _create_module(client: TestClient, correlation_id: str, key: str = "deals") -> dict:
    response = client.post(
        "/api/crm/modules",
        json={"key": key, "name": "Deals", "fields": [{"key": "amount", "label": "Amount", "data_type": "number"}]},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "crm_record_get_failed"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_module(client, "corr-audit-1")

    module_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm_module"]
    assert module_audits
    assert module_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_and_workflow_run_share_correlation_id(client: TestClient) -> None:
    module = _create_module(client, "corr-setup")
    workflow = client.post(
        "/api/automation/workflows",
        json={
            "module_id": module["id"],
            "name": "Note on create",
            "trigger_type": "on_create",
            "actions": [{"type": "add_note", "config": {"body": "hello"}}],
        },
    )
    assert workflow.status_code == 201

    response = client.post(
        "/api/crm/records",
        json={"module_id": module["id"], "title": "Corr record"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.record.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"

    run_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm_automation_run"]
    assert run_audits
    assert run_audits[-1]["correlation_id"] == "corr-event-1"


def test_scheduler_jobs_use_job_correlation_id(client: TestClient) -> None:
    module = _create_module(client, "corr-setup")
    record = client.post("/api/crm/records", json={"module_id": module["id"], "title": "Deal"}).json()
    workflow = client.post(
        "/api/automation/workflows",
        json={
            "module_id": module["id"],
            "name": "Broken",
            "trigger_type": "on_create",
            "actions": [{"type": "update_fields", "config": {"fields": {"amount": "many"}}}],
        },
    ).json()
    failed = client.post("/api/automation/run", json={"workflow_id": workflow["id"], "record_id": record["id"]})
    run_id = failed.json()["result"]["run_id"]

    scheduled = client.post(f"/api/automation/runs/{run_id}/retry", json={"mode": "scheduled"})
    assert scheduled.status_code == 200
    job_id = scheduled.json()["job_id"]

    processed = client.post("/api/automation/jobs/process", headers={"X-Correlation-Id": "corr-process"})
    assert processed.status_code == 200
    assert [item["job_id"] for item in processed.json()] == [job_id]

    retry_audits = [
        entry
        for entry in audit.audit_entries
        if entry.get("entity_type") == "crm_automation_run" and entry.get("correlation_id") == f"job-{job_id}"
    ]
    assert retry_audits


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        "/api/crm/modules",
        json={"key": "first", "name": "First"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        "/api/crm/modules",
        json={"key": "second", "name": "Second"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
