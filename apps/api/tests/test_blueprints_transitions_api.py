from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import HTTPException, Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.crm.api import get_current_user as crm_get_current_user
from stageflow.crm.authz import ActorUser, Role
from stageflow.crm.records import record_service
from stageflow.main import app
from stageflow.middleware.rate_limit import reset_rate_limiter
from stageflow.models import CRMRecord, CRMStageHistory
from stageflow.transitions.schemas import TransitionRequest
from stageflow.transitions.service import transition_executor


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


SALES_BLUEPRINT = {
    "stages": ["new", "qualified", "proposal", "won", "lost"],
    "transitions": [
        {"from": "new", "to": "qualified", "name": "Qualify", "required_fields": ["amount"]},
        {"from": "qualified", "to": "proposal", "name": "Propose"},
        {"from": "proposal", "to": "won", "name": "Close won", "allowed_roles": ["crm_admin", "crm_manager"]},
        {"from": "proposal", "to": "lost", "name": "Close lost", "require_reason": True},
        {"from": "qualified", "to": "lost", "name": "Disqualify"},
    ],
}


def _module(client: TestClient) -> dict:
    response = client.post(
        "/api/crm/modules",
        json={
            "key": "deals",
            "name": "Deals",
            "fields": [
                {"key": "amount", "label": "Deal amount", "data_type": "number"},
                {"key": "region", "label": "Region"},
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


def _record(client: TestClient, module_id: str, **extra: object) -> dict:
    response = client.post("/api/crm/records", json={"module_id": module_id, "title": "Deal", **extra})
    assert response.status_code == 201
    return response.json()


def _with_blueprint(client: TestClient) -> dict:
    module = _module(client)
    saved = client.put(f"/api/crm/modules/{module['id']}/blueprint", json=SALES_BLUEPRINT)
    assert saved.status_code == 200
    return module


def _move(client: TestClient, record_id: str, to_stage: str, **extra: object):
    return client.post("/api/crm/transition", json={"record_id": record_id, "to_stage": to_stage, **extra})


def test_blueprint_upsert_and_read(client: TestClient) -> None:
    module = _with_blueprint(client)

    response = client.get(f"/api/crm/modules/{module['id']}/blueprint")
    assert response.status_code == 200
    body = response.json()
    assert body["stages"] == SALES_BLUEPRINT["stages"]
    assert len(body["transitions"]) == 5
    assert body["updated_by"] == "admin-1"


def test_blueprint_rejects_bad_graphs(client: TestClient) -> None:
    module = _module(client)
    url = f"/api/crm/modules/{module['id']}/blueprint"

    self_loop = client.put(url, json={"stages": ["a", "b"], "transitions": [{"from": "a", "to": "a"}]})
    assert self_loop.status_code == 422

    undeclared = client.put(url, json={"stages": ["a"], "transitions": [{"from": "a", "to": "z"}]})
    assert undeclared.status_code == 422

    duplicate = client.put(
        url,
        json={"stages": ["a", "b"], "transitions": [{"from": "a", "to": "b"}, {"from": "a", "to": "b"}]},
    )
    assert duplicate.status_code == 422

    unknown_field = client.put(
        url,
        json={"stages": ["a", "b"], "transitions": [{"from": "a", "to": "b", "required_fields": ["budget"]}]},
    )
    assert unknown_field.status_code == 422
    assert "budget" in unknown_field.json()["message"]


def test_blueprint_cannot_drop_occupied_stage(client: TestClient) -> None:
    module = _with_blueprint(client)
    _record(client, module["id"])

    response = client.put(
        f"/api/crm/modules/{module['id']}/blueprint",
        json={"stages": ["qualified", "won"], "transitions": [{"from": "qualified", "to": "won"}]},
    )
    assert response.status_code == 409
    assert response.json()["details"]["stages"] == ["new"]


def test_blueprint_requires_admin(client: TestClient, actor: dict[str, object]) -> None:
    module = _module(client)
    actor["role"] = Role.MANAGER

    response = client.put(f"/api/crm/modules/{module['id']}/blueprint", json=SALES_BLUEPRINT)
    assert response.status_code == 403


def test_record_starts_in_initial_stage_and_rejects_undeclared(client: TestClient) -> None:
    module = _with_blueprint(client)

    record = _record(client, module["id"])
    assert record["stage"] == "new"

    response = client.post(
        "/api/crm/records",
        json={"module_id": module["id"], "title": "Deal", "stage": "archived"},
    )
    assert response.status_code == 422


def test_without_blueprint_any_stage_is_allowed(client: TestClient) -> None:
    module = _module(client)
    record = _record(client, module["id"])

    response = _move(client, record["id"], "anything")
    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "committed"
    assert body["from_stage"] is None
    assert body["record"]["stage"] == "anything"

    again = _move(client, record["id"], "anything")
    assert again.json()["outcome"] == "blocked"
    assert again.json()["error"] == "record is already in stage anything"


def test_transition_commits_and_writes_history(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])

    response = _move(client, record["id"], "qualified", payload={"amount": 500}, reason="budget confirmed")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["outcome"] == "committed"
    assert body["record"]["stage"] == "qualified"
    assert body["record"]["data"]["amount"] == 500
    assert body["record"]["row_version"] == 2

    history = client.get(f"/api/crm/records/{record['id']}/history")
    assert history.status_code == 200
    rows = history.json()
    assert len(rows) == 1
    assert rows[0]["from_stage"] == "new"
    assert rows[0]["to_stage"] == "qualified"
    assert rows[0]["reason"] == "budget confirmed"
    assert rows[0]["transition_data"] == {"amount": 500}
    assert rows[0]["source"] == "transition"

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.record.stage_changed"]
    assert stage_events[-1]["payload"]["from_stage"] == "new"
    assert stage_events[-1]["payload"]["to_stage"] == "qualified"


def test_racing_transitions_from_one_snapshot_commit_once(
    client: TestClient, db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])
    assert _move(client, record["id"], "qualified", payload={"amount": 500}).status_code == 200
    events.published_events.clear()

    admin = ActorUser(user_id="admin-1", org_id="org-1", role=Role.ADMIN)
    stale = record_service.load_snapshot(db_session, "org-1", uuid.UUID(record["id"]))
    assert stale.stage == "qualified"

    first = transition_executor.execute(db_session, admin, TransitionRequest(record_id=record["id"], to_stage="proposal"))
    assert first.outcome == "committed"

    # The second request read the record before the first one committed.
    monkeypatch.setattr(record_service, "load_snapshot", lambda *args, **kwargs: stale)
    with pytest.raises(HTTPException) as exc:
        transition_executor.execute(db_session, admin, TransitionRequest(record_id=record["id"], to_stage="lost"))
    assert exc.value.status_code == 409
    assert exc.value.detail["code"] == "concurrency_conflict"

    history = db_session.scalars(
        select(CRMStageHistory).where(CRMStageHistory.to_stage.in_(["proposal", "lost"]))
    ).all()
    assert [row.to_stage for row in history] == ["proposal"]
    stage_events = [item for item in events.published_events if item["event_type"] == "crm.record.stage_changed"]
    assert [item["payload"]["to_stage"] for item in stage_events] == ["proposal"]
    assert db_session.scalar(select(CRMRecord.stage).where(CRMRecord.id == stale.id)) == "proposal"


def test_undeclared_edge_is_invalid(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])

    response = _move(client, record["id"], "won")
    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "blocked"
    assert body["allowed"] is False
    assert body["error_code"] == "invalid_transition"
    assert body["record"]["stage"] == "new"


def test_missing_required_fields_block_with_labels(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])

    response = _move(client, record["id"], "qualified")
    body = response.json()
    assert body["outcome"] == "blocked"
    assert body["allowed"] is True
    assert body["error_code"] == "transition_blocked"
    assert body["missing_fields"] == [{"field": "amount", "label": "Deal amount"}]
    assert client.get(f"/api/crm/records/{record['id']}/history").json() == []


def test_require_reason_and_allowed_roles(client: TestClient, actor: dict[str, object]) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"], data={"amount": 10})
    assert _move(client, record["id"], "qualified").json()["outcome"] == "committed"
    assert _move(client, record["id"], "proposal").json()["outcome"] == "committed"

    no_reason = _move(client, record["id"], "lost")
    assert no_reason.json()["outcome"] == "blocked"
    assert no_reason.json()["requires_reason"] is True

    actor["role"] = Role.AGENT
    denied = _move(client, record["id"], "won")
    assert denied.json()["outcome"] == "blocked"
    assert denied.json()["error_code"] == "role_denied"

    lost = _move(client, record["id"], "lost", reason="went with a competitor")
    assert lost.json()["outcome"] == "committed"


def test_viewer_cannot_execute_transitions(client: TestClient, actor: dict[str, object]) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])
    actor["role"] = Role.VIEWER

    assert _move(client, record["id"], "qualified").status_code == 403
    assert client.get("/api/crm/transition", params={"record_id": record["id"]}).status_code == 200


def test_idempotency_key_replays_and_rejects_mismatch(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"], data={"amount": 10})
    headers = {"Idempotency-Key": "move-1"}

    first = client.post(
        "/api/crm/transition",
        json={"record_id": record["id"], "to_stage": "qualified"},
        headers=headers,
    )
    assert first.json()["outcome"] == "committed"

    replay = client.post(
        "/api/crm/transition",
        json={"record_id": record["id"], "to_stage": "qualified"},
        headers=headers,
    )
    assert replay.status_code == 200
    assert replay.json() == first.json()
    assert len(client.get(f"/api/crm/records/{record['id']}/history").json()) == 1

    mismatch = client.post(
        "/api/crm/transition",
        json={"record_id": record["id"], "to_stage": "lost"},
        headers=headers,
    )
    assert mismatch.status_code == 409
    assert mismatch.json()["code"] == "crm_transition_failed"


def test_available_transitions_respect_roles_and_initial_stage(
    client: TestClient, actor: dict[str, object]
) -> None:
    module = _module(client)
    record = _record(client, module["id"])

    no_blueprint = client.get("/api/crm/transition", params={"record_id": record["id"]})
    assert no_blueprint.json() == {
        "record_id": record["id"],
        "stage": None,
        "has_blueprint": False,
        "transitions": [],
    }

    client.put(f"/api/crm/modules/{module['id']}/blueprint", json=SALES_BLUEPRINT)
    unstaged = client.get("/api/crm/transition", params={"record_id": record["id"]}).json()
    assert unstaged["has_blueprint"] is True
    assert [item["to_stage"] for item in unstaged["transitions"]] == ["new"]

    assert _move(client, record["id"], "qualified").json()["error_code"] == "invalid_transition"
    assert _move(client, record["id"], "new").json()["outcome"] == "committed"

    listed = client.get("/api/crm/transition", params={"record_id": record["id"]}).json()
    assert listed["stage"] == "new"
    assert listed["transitions"][0]["to_stage"] == "qualified"
    assert listed["transitions"][0]["missing_fields"] == [{"field": "amount", "label": "Deal amount"}]

    client.patch(f"/api/crm/records/{record['id']}", json={"data": {"amount": 5}})
    _move(client, record["id"], "qualified")
    _move(client, record["id"], "proposal")

    actor["role"] = Role.AGENT
    agent_view = client.get("/api/crm/transition", params={"record_id": record["id"]}).json()
    assert [item["to_stage"] for item in agent_view["transitions"]] == ["lost"]


def test_check_transition_reports_without_writing(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])

    posted = client.post(
        "/api/crm/check-transition",
        json={"record_id": record["id"], "to_stage": "qualified", "payload": {"amount": 1}},
    )
    assert posted.status_code == 200
    assert posted.json()["outcome"] == "allowed"

    queried = client.get(
        "/api/crm/check-transition",
        params={"record_id": record["id"], "to_stage": "qualified"},
    )
    assert queried.json()["outcome"] == "blocked"
    assert queried.json()["missing_fields"][0]["field"] == "amount"

    single = client.get("/api/crm/transition", params={"record_id": record["id"], "to_stage": "won"})
    assert single.json()["error_code"] == "invalid_transition"

    assert client.get(f"/api/crm/records/{record['id']}").json()["stage"] == "new"


def test_stage_change_returns_gating_error(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"])

    blocked = client.post("/api/crm/stage-change", json={"record_id": record["id"], "to_stage": "qualified"})
    assert blocked.status_code == 422
    body = blocked.json()
    assert body["code"] == "gating_required"
    assert body["details"]["gating_required"] is True
    assert body["details"]["missing_fields"][0]["field"] == "amount"

    moved = client.post(
        "/api/crm/stage-change",
        json={"record_id": record["id"], "to_stage": "qualified", "payload": {"amount": 99}},
    )
    assert moved.status_code == 200
    history = client.get(f"/api/crm/records/{record['id']}/history").json()
    assert history[-1]["source"] == "stage_change"


def test_stage_transition_rules_block(client: TestClient) -> None:
    module = _with_blueprint(client)
    record = _record(client, module["id"], data={"amount": 10})
    created = client.post(
        "/api/crm/validation-rules",
        json={
            "module_id": module["id"],
            "rule_name": "Region before qualifying",
            "rule_type": "required_if",
            "trigger_type": "stage_transition",
            "to_stage": "qualified",
            "target_field": "region",
            "condition": {"path": "amount", "op": "gt", "value": 0},
            "error_message": "Region is required",
        },
    )
    assert created.status_code == 201

    blocked = _move(client, record["id"], "qualified")
    assert blocked.json()["outcome"] == "blocked"
    assert blocked.json()["validation_errors"][0]["message"] == "Region is required"

    moved = _move(client, record["id"], "qualified", payload={"region": "emea"})
    assert moved.json()["outcome"] == "committed"
