from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow.automation.scheduler import scheduler_service
from stageflow.core import celery_app as tasks
from stageflow.core.database import Base
from stageflow.crm.models import utcnow
from stageflow.models import CRMModule, CRMSchedulerJob, CRMWorkflow


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(tasks, "SessionLocal", SessionLocal)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


def test_beat_schedule_covers_both_scheduler_entrypoints() -> None:
    scheduled = {entry["task"] for entry in tasks.celery_app.conf.beat_schedule.values()}
    assert scheduled == {"stageflow.tasks.process_due_jobs", "stageflow.tasks.process_scheduled_workflows"}
    assert tasks.ping_task() == "pong"


def test_process_due_jobs_task_uses_its_own_session(session_factory: sessionmaker) -> None:
    with session_factory() as session:
        job = scheduler_service.schedule_job(
            session,
            org_id="org-1",
            job_type="mystery",
            entity_type="workflow",
            entity_id=uuid.uuid4(),
            record_id=None,
            run_at=utcnow() - timedelta(minutes=1),
            payload={},
        )
        session.commit()
        job_id = job.id

    assert tasks.process_due_jobs_task() == {"processed": 1}

    with session_factory() as session:
        stored = session.get(CRMSchedulerJob, job_id)
        assert stored.attempts == 1
        assert stored.last_error == "unknown job type mystery"


def test_process_scheduled_workflows_task_enqueues_jobs(session_factory: sessionmaker) -> None:
    with session_factory() as session:
        module = CRMModule(org_id="org-1", key="deals", name="Deals")
        session.add(module)
        session.flush()
        session.add(
            CRMWorkflow(
                org_id="org-1",
                module_id=module.id,
                name="Hourly",
                trigger_type="scheduled",
                trigger_config={"interval_minutes": 60},
                actions=[{"type": "add_note", "config": {"body": "tick"}}],
            )
        )
        session.commit()

    assert tasks.process_scheduled_workflows_task() == {"enqueued": 1}
    assert tasks.process_scheduled_workflows_task() == {"enqueued": 0}
