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

from stageflow.models import CRMNotification

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


BLUEPRINT = {
    "stages": ["new", "review", "won", "lost"],
    "transitions": [
        {"from": "new", "to": "review", "requires_approval": True},
        {"from": "new", "to": "lost"},
        {"from": "review", "to": "won"},
    ],
}


def _setup(client: TestClient, blueprint: dict | None = BLUEPRINT) -> dict:
    module = client.post(
        "/api/crm/modules",
        json={"key": "deals", "name": "Deals", "fields": [{"key": "amount", "label": "Amount", "data_type": "number"}]},
    ).json()
    if blueprint is not None:
        assert client.put(f"/api/crm/modules/{module['id']}/blueprint", json=blueprint).status_code == 200
    return module


def _record(client: TestClient, module_id: str, **extra: object) -> dict:
    response = client.post("/api/crm/records", json={"module_id": module_id, "title": "Deal", **extra})
    assert response.status_code == 201
    return response.json()


def _process(client: TestClient, module_id: str, steps: list[dict], **extra: object) -> dict:
    response = client.post(
        "/api/approvals/processes",
        json={"module_id": module_id, "name": "Deal desk", "steps": steps, **extra},
    )
    assert response.status_code == 201
    return response.json()


def _act(client: TestClient, approval_id: str, action: str, comment: str | None = None):
    return client.post(
        f"/api/approvals/requests/{approval_id}/actions",
        json={"action": action, "comment": comment},
    )


def test_gated_transition_waits_then_replays_on_approval(
    client: TestClient, actor: dict[str, object], db_session: Session
) -> None:
    module = _setup(client)
    actor.update(user_id="agent-1", role=Role.AGENT)
    record = _record(client, module["id"])

    moved = client.post(
        "/api/crm/transition",
        json={"record_id": record["id"], "to_stage": "review", "reason": "ready"},
    )
    body = moved.json()
    assert body["outcome"] == "awaiting_approval"
    assert body["requires_approval"] is True
    approval_id = body["approval_id"]
    assert client.get(f"/api/crm/records/{record['id']}").json()["stage"] == "new"

    pending = client.get(f"/api/approvals/records/{record['id']}/pending").json()
    assert pending["id"] == approval_id
    assert pending["steps"] == [{"type": "role", "value": "crm_manager", "require_comment": False}]
    assert pending["action_payload"]["kind"] == "stage_change"
    assert pending["action_payload"]["stage_from"] == "new"

    assert _act(client, approval_id, "approve").status_code == 403

    actor.update(user_id="manager-1", role=Role.MANAGER)
    assert [item["id"] for item in client.get("/api/approvals/pending").json()] == [approval_id]
    approved = _act(client, approval_id, "approve", "looks good")
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert approved.json()["resolved_by"] == "manager-1"
    assert [item["action"] for item in approved.json()["actions"]] == ["approve"]

    assert client.get(f"/api/crm/records/{record['id']}").json()["stage"] == "review"
    history = client.get(f"/api/crm/records/{record['id']}/history").json()
    assert history[-1]["source"] == "approval"
    assert history[-1]["approval_id"] == approval_id
    assert history[-1]["changed_by"] == "agent-1"
    assert history[-1]["reason"] == "ready"

    notifications = db_session.scalars(select(CRMNotification).where(CRMNotification.user_id == "agent-1")).all()
    assert [item.title for item in notifications] == ["Approval approved"]


def test_multi_step_process_and_require_comment(client: TestClient, actor: dict[str, object]) -> None:
    module = _setup(client, blueprint=None)
    process = _process(
        client,
        module["id"],
        steps=[
            {"type": "role", "value": "crm_manager"},
            {"type": "user", "value": "cfo-1", "require_comment": True},
        ],
        trigger_type="stage_transition",
        trigger_config={"stage_to": "won"},
    )
    record = _record(client, module["id"], stage="open")

    actor.update(user_id="agent-1", role=Role.AGENT)
    moved = client.post("/api/crm/transition", json={"record_id": record["id"], "to_stage": "won"}).json()
    assert moved["outcome"] == "awaiting_approval"
    approval_id = moved["approval_id"]

    free = client.post("/api/crm/check-transition", json={"record_id": record["id"], "to_stage": "lost"}).json()
    assert free["outcome"] == "allowed"

    actor.update(user_id="manager-1", role=Role.MANAGER)
    first = _act(client, approval_id, "approve")
    assert first.json()["status"] == "pending"
    assert first.json()["current_step"] == 1
    assert first.json()["process_id"] == process["id"]
    assert _act(client, approval_id, "approve").status_code == 403

    actor.update(user_id="cfo-1", role=Role.AGENT)
    no_comment = _act(client, approval_id, "approve")
    assert no_comment.status_code == 422
    assert no_comment.json()["message"] == "this step requires a comment"

    final = _act(client, approval_id, "approve", "margin is fine")
    assert final.json()["status"] == "approved"
    assert client.get(f"/api/crm/records/{record['id']}").json()["stage"] == "won"


def test_reject_and_request_changes_leave_record_untouched(client: TestClient) -> None:
    module = _setup(client)
    first = _record(client, module["id"])
    second = _record(client, module["id"])

    rejected_id = client.post(
        "/api/crm/transition", json={"record_id": first["id"], "to_stage": "review"}
    ).json()["approval_id"]
    rejected = client.post(
        f"/api/approvals/requests/{rejected_id}/resolve",
        json={"decision": "rejected", "comment": "no budget"},
    )
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["resolution_comment"] == "no budget"

    changes_id = client.post(
        "/api/crm/transition", json={"record_id": second["id"], "to_stage": "review"}
    ).json()["approval_id"]
    assert _act(client, changes_id, "request_changes", "add amount").json()["status"] == "changes_requested"

    for record in (first, second):
        assert client.get(f"/api/crm/records/{record['id']}").json()["stage"] == "new"
        assert client.get(f"/api/crm/records/{record['id']}/history").json() == []

    again = _act(client, rejected_id, "approve")
    assert again.status_code == 409


def test_only_one_pending_request_per_record(client: TestClient) -> None:
    module = _setup(client)
    record = _record(client, module["id"])

    first = client.post("/api/crm/transition", json={"record_id": record["id"], "to_stage": "review"})
    assert first.json()["outcome"] == "awaiting_approval"

    second = client.post("/api/crm/transition", json={"record_id": record["id"], "to_stage": "review"})
    assert second.status_code == 409
    assert second.json()["message"] == "record already has a pending approval"
    assert second.json()["details"]["approval_id"] == first.json()["approval_id"]


def test_cancel_is_limited_to_requester_or_admin(client: TestClient, actor: dict[str, object]) -> None:
    module = _setup(client)
    record = _record(client, module["id"])
    actor.update(user_id="agent-1", role=Role.AGENT)
    approval_id = client.post(
        "/api/crm/transition", json={"record_id": record["id"], "to_stage": "review"}
    ).json()["approval_id"]

    actor.update(user_id="agent-2")
    denied = client.post(f"/api/approvals/requests/{approval_id}/cancel", json={})
    assert denied.status_code == 403

    actor.update(user_id="agent-1")
    cancelled = client.post(f"/api/approvals/requests/{approval_id}/cancel", json={"comment": "not yet"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.get(f"/api/approvals/records/{record['id']}/pending").json() is None

    resolved = [item for item in events.published_events if item["event_type"] == "crm.approval.resolved"]
    assert resolved[-1]["payload"]["status"] == "cancelled"


def test_replay_conflict_keeps_request_pending(client: TestClient) -> None:
    module = _setup(client)
    record = _record(client, module["id"])
    approval_id = client.post(
        "/api/crm/transition", json={"record_id": record["id"], "to_stage": "review"}
    ).json()["approval_id"]

    lost = client.post("/api/crm/transition", json={"record_id": record["id"], "to_stage": "lost"})
    assert lost.json()["outcome"] == "committed"

    conflict = _act(client, approval_id, "approve")
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "concurrency_conflict"
    assert conflict.json()["details"]["current_stage"] == "lost"

    request = client.get(f"/api/approvals/requests/{approval_id}").json()
    assert request["status"] == "pending"
    assert request["actions"] == []
    assert client.get(f"/api/crm/records/{record['id']}").json()["stage"] == "lost"


def test_field_change_rule_gates_update_and_replays(client: TestClient) -> None:
    module = _setup(client, blueprint=None)
    process = _process(client, module["id"], steps=[{"type": "role", "value": "crm_manager"}])
    rule = client.post(
        "/api/approvals/rules",
        json={
            "module_id": module["id"],
            "process_id": process["id"],
            "name": "Large deals",
            "trigger_type": "field_threshold",
            "trigger_config": {"field": "amount", "threshold": 10000},
        },
    )
    assert rule.status_code == 201
    record = _record(client, module["id"], data={"amount": 100})

    small = client.patch(f"/api/crm/records/{record['id']}", json={"data": {"amount": 5000}})
    assert small.json()["outcome"] == "updated"

    large = client.patch(f"/api/crm/records/{record['id']}", json={"data": {"amount": 25000}})
    assert large.json()["outcome"] == "awaiting_approval"
    approval_id = large.json()["approval_id"]
    assert client.get(f"/api/crm/records/{record['id']}").json()["data"]["amount"] == 5000

    pending = client.get(f"/api/approvals/requests/{approval_id}").json()
    assert pending["rule_id"] == rule.json()["id"]
    assert pending["action_payload"]["changes"] == {"amount": 25000}
    assert pending["action_payload"]["previous"] == {"amount": 5000}

    assert _act(client, approval_id, "approve").json()["status"] == "approved"
    assert client.get(f"/api/crm/records/{record['id']}").json()["data"]["amount"] == 25000


def test_record_delete_rule_gates_delete(client: TestClient) -> None:
    module = _setup(client, blueprint=None)
    process = _process(client, module["id"], steps=[{"type": "role", "value": "crm_manager"}])
    client.post(
        "/api/approvals/rules",
        json={
            "module_id": module["id"],
            "process_id": process["id"],
            "name": "Deletes need sign-off",
            "trigger_type": "record_delete",
        },
    )
    record = _record(client, module["id"])

    deleted = client.delete(f"/api/crm/records/{record['id']}")
    assert deleted.json()["outcome"] == "awaiting_approval"
    assert client.get(f"/api/crm/records/{record['id']}").status_code == 200

    _act(client, deleted.json()["approval_id"], "approve")
    assert client.get(f"/api/crm/records/{record['id']}").status_code == 404


def test_manual_request_needs_a_matching_process(client: TestClient) -> None:
    module = _setup(client, blueprint=None)
    record = _record(client, module["id"])

    unmatched = client.post(
        "/api/approvals/request",
        json={"record_id": record["id"], "action_payload": {"kind": "stage_change", "stage_to": "won"}},
    )
    assert unmatched.status_code == 200
    assert unmatched.json() == {
        "success": False,
        "approval_id": None,
        "requires_approval": False,
        "error": "no approval process matches this change",
    }

    process = _process(client, module["id"], steps=[{"type": "record_owner"}])
    explicit = client.post(
        "/api/approvals/request",
        json={
            "record_id": record["id"],
            "process_id": process["id"],
            "action_payload": {"kind": "update", "changes": {"title": "Renamed"}},
        },
    )
    assert explicit.json()["success"] is True
    assert explicit.json()["requires_approval"] is True

    request = client.get(f"/api/approvals/requests/{explicit.json()['approval_id']}").json()
    assert request["trigger_type"] == "field_change"
    assert request["steps"][0]["type"] == "record_owner"

    bad_kind = client.post(
        "/api/approvals/request",
        json={"record_id": record["id"], "action_payload": {"kind": "archive"}},
    )
    assert bad_kind.status_code == 422


def test_approval_configuration_is_admin_only(client: TestClient, actor: dict[str, object]) -> None:
    module = _setup(client, blueprint=None)
    actor["role"] = Role.MANAGER

    response = client.post(
        "/api/approvals/processes",
        json={"module_id": module["id"], "name": "Desk", "steps": [{"type": "role", "value": "crm_manager"}]},
    )
    assert response.status_code == 403
    assert client.get("/api/approvals/processes").status_code == 200

    missing_value = client.post(
        "/api/approvals/processes",
        json={"module_id": module["id"], "name": "Desk", "steps": [{"type": "user"}]},
    )
    assert missing_value.status_code == 422
