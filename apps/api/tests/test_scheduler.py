from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
from stageflow.automation.dispatcher import automation_dispatcher
from stageflow.automation.runs import automation_run_service
from stageflow.automation.scheduler import SCHEDULED_WORKFLOW_JOB, scheduler_service
from stageflow.automation.schemas import RetryRequest, RunWorkflowRequest, WorkflowCreate
from stageflow.automation.workflows import workflow_service
from stageflow.blueprints.schemas import BlueprintUpsert
from stageflow.blueprints.service import blueprint_store
from stageflow.core.config import get_settings
from stageflow.core.database import Base
from stageflow.crm.authz import ActorUser, Role
from stageflow.crm.models import utcnow
from stageflow.models import CRMAutomationRun, CRMModule, CRMNote, CRMRecord, CRMSchedulerJob


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
def setup_env(monkeypatch: pytest.MonkeyPatch, db_session: Session) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    get_settings.cache_clear()

    @contextmanager
    def session_scope() -> Generator[Session, None, None]:
        yield db_session

    monkeypatch.setattr(automation_dispatcher, "session_scope", session_scope)
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def admin() -> ActorUser:
    return ActorUser(user_id="admin-1", org_id="org-1", role=Role.ADMIN)


@pytest.fixture()
def module(db_session: Session) -> CRMModule:
    row = CRMModule(org_id="org-1", key="deals", name="Deals")
    db_session.add(row)
    db_session.commit()
    return row


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def _job(session: Session, job_type: str, run_at: datetime) -> CRMSchedulerJob:
    job = scheduler_service.schedule_job(
        session,
        org_id="org-1",
        job_type=job_type,
        entity_type="workflow",
        entity_id=uuid.uuid4(),
        record_id=None,
        run_at=run_at,
        payload={},
    )
    session.commit()
    return job


def _record(session: Session, module: CRMModule, title: str, stage: str | None = None) -> CRMRecord:
    record = CRMRecord(
        org_id="org-1",
        module_id=module.id,
        title=title,
        stage=stage,
        owner_id="agent-1",
        created_by="agent-1",
        data={},
    )
    session.add(record)
    session.commit()
    return record


def test_failed_jobs_back_off_and_then_fail(db_session: Session) -> None:
    now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    job = _job(db_session, "mystery", now)
    job_id = job.id

    first = scheduler_service.process_due_jobs(db_session, now=now)
    assert [(item.status, item.attempts) for item in first] == [("pending", 1)]
    assert first[0].error == "unknown job type mystery"
    stored = db_session.get(CRMSchedulerJob, job_id)
    assert _naive(stored.run_at) == _naive(now + timedelta(seconds=120))

    # Not due yet.
    assert scheduler_service.process_due_jobs(db_session, now=now + timedelta(seconds=60)) == []

    later = now + timedelta(seconds=120)
    second = scheduler_service.process_due_jobs(db_session, now=later)
    assert [(item.status, item.attempts) for item in second] == [("pending", 2)]
    stored = db_session.get(CRMSchedulerJob, job_id)
    assert _naive(stored.run_at) == _naive(later + timedelta(seconds=240))

    final = scheduler_service.process_job(db_session, job_id, now=later + timedelta(seconds=240))
    assert final is not None
    assert final.status == "failed"
    assert final.attempts == 3
    stored = db_session.get(CRMSchedulerJob, job_id)
    assert stored.finished_at is not None
    assert stored.last_error == "unknown job type mystery"

    assert scheduler_service.process_job(db_session, job_id) is None


def test_scheduled_retry_runs_through_the_job_queue(
    db_session: Session, admin: ActorUser, module: CRMModule
) -> None:
    blueprint_store.upsert(db_session, admin, module.id, BlueprintUpsert(stages=["new", "won"]))
    record = _record(db_session, module, "Deal", stage="new")
    created = workflow_service.create_workflow(
        db_session,
        admin,
        WorkflowCreate(
            module_id=module.id,
            name="Close",
            trigger_type="on_create",
            actions=[{"type": "move_stage", "config": {"stage": "closed"}}],
        ),
    )
    failed = automation_run_service.run_workflow(
        db_session, admin, RunWorkflowRequest(workflow_id=created.id, record_id=record.id)
    )
    assert failed.status == "failed"

    blueprint_store.upsert(db_session, admin, module.id, BlueprintUpsert(stages=["new", "won", "closed"]))
    scheduled = automation_run_service.retry_run(
        db_session, admin, failed.run_id, RetryRequest(mode="scheduled", delay_seconds=300)
    )
    assert scheduled.mode == "scheduled"
    assert scheduled.result is None

    job = db_session.get(CRMSchedulerJob, scheduled.job_id)
    assert job.job_type == "retry"
    assert job.idempotency_key == f"job:{scheduled.idempotency_key}"
    assert job.max_attempts == 3

    assert scheduler_service.process_due_jobs(db_session, now=utcnow()) == []
    processed = scheduler_service.process_due_jobs(db_session, now=utcnow() + timedelta(minutes=10))
    assert [item.status for item in processed] == ["completed"]

    job = db_session.get(CRMSchedulerJob, scheduled.job_id)
    assert job.result["status"] == "succeeded"
    retry_run = db_session.scalar(select(CRMAutomationRun).where(CRMAutomationRun.source == "retry"))
    assert retry_run.retry_of == failed.run_id
    assert retry_run.idempotency_key == scheduled.idempotency_key
    assert [item["action"] for item in audit.audit_entries].count("retry_scheduled") == 1


def test_scheduled_workflows_are_enqueued_once_per_interval(
    db_session: Session, admin: ActorUser, module: CRMModule
) -> None:
    _record(db_session, module, "First")
    _record(db_session, module, "Second")
    workflow = workflow_service.create_workflow(
        db_session,
        admin,
        WorkflowCreate(
            module_id=module.id,
            name="Nightly note",
            trigger_type="scheduled",
            trigger_config={"interval_minutes": 30},
            actions=[{"type": "add_note", "config": {"body": "checked"}}],
        ),
    )
    now = utcnow()

    job_ids = scheduler_service.process_scheduled_workflows(db_session, now=now)
    assert len(job_ids) == 1
    # A pending job blocks a second enqueue.
    assert scheduler_service.process_scheduled_workflows(db_session, now=now) == []

    job = db_session.get(CRMSchedulerJob, job_ids[0])
    assert job.job_type == SCHEDULED_WORKFLOW_JOB
    assert job.entity_id == workflow.id
    assert job.idempotency_key.startswith(f"scheduled:{workflow.id}:")

    processed = scheduler_service.process_due_jobs(db_session, now=now)
    assert [item.status for item in processed] == ["completed"]
    job = db_session.get(CRMSchedulerJob, job_ids[0])
    assert job.result == {"records": 2, "statuses": {"succeeded": 2}}
    assert len(db_session.scalars(select(CRMNote)).all()) == 2
    runs = db_session.scalars(select(CRMAutomationRun)).all()
    assert {run.source for run in runs} == {"scheduled"}

    assert scheduler_service.process_scheduled_workflows(db_session, now=utcnow() + timedelta(minutes=5)) == []
    assert len(scheduler_service.process_scheduled_workflows(db_session, now=utcnow() + timedelta(minutes=31))) == 1


def test_disabled_scheduled_workflows_are_not_enqueued(
    db_session: Session, admin: ActorUser, module: CRMModule
) -> None:
    workflow_service.create_workflow(
        db_session,
        admin,
        WorkflowCreate(
            module_id=module.id,
            name="Off",
            trigger_type="scheduled",
            is_enabled=False,
            actions=[{"type": "add_note", "config": {"body": "never"}}],
        ),
    )
    assert scheduler_service.process_scheduled_workflows(db_session, now=utcnow()) == []


def test_only_pending_jobs_can_be_cancelled(db_session: Session, admin: ActorUser) -> None:
    job = _job(db_session, "mystery", utcnow() + timedelta(hours=1))

    manager = ActorUser(user_id="manager-1", org_id="org-1", role=Role.MANAGER)
    with pytest.raises(HTTPException) as denied:
        scheduler_service.cancel_job(db_session, manager, job.id)
    assert denied.value.status_code == 403

    cancelled = scheduler_service.cancel_job(db_session, admin, job.id)
    assert cancelled.status == "cancelled"
    assert cancelled.finished_at is not None

    with pytest.raises(HTTPException) as conflict:
        scheduler_service.cancel_job(db_session, admin, job.id)
    assert conflict.value.status_code == 409
    assert conflict.value.detail == "only pending jobs can be cancelled"

    other_org = ActorUser(user_id="admin-2", org_id="org-2", role=Role.ADMIN)
    with pytest.raises(HTTPException) as missing:
        scheduler_service.get_job(db_session, other_org, job.id)
    assert missing.value.status_code == 404
