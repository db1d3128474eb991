from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.engine import WorkflowEngine, workflow_engine
from stageflow.automation.models import CRMSchedulerJob, CRMWorkflow
from stageflow.automation.schemas import JobProcessSummary, SchedulerJobRead
from stageflow.automation.workflows import workflow_service
from stageflow.context import correlation_scope
from stageflow.core.config import get_settings
from stageflow.crm.authz import ActorUser, Operation, Role, authorize, system_actor
from stageflow.crm.models import CRMRecord, utcnow
from stageflow.crm.records import record_service
from stageflow.metrics import observe_scheduler_job

logger = logging.getLogger("stageflow.scheduler")
tracer = trace.get_tracer("stageflow.scheduler")

RETRY_JOB = "retry"
SCHEDULED_WORKFLOW_JOB = "scheduled_workflow"


def _as_aware(value: datetime) -> datetime:
    # SQLite returns naive datetimes for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=utcnow().tzinfo)


class SchedulerService:
    entity_type = "crm_scheduler_job"

    def __init__(self, engine: WorkflowEngine | None = None) -> None:
        self.engine = engine or workflow_engine

    def schedule_job(
        self,
        session: Session,
        *,
        org_id: str,
        job_type: str,
        entity_type: str,
        entity_id: uuid.UUID,
        record_id: uuid.UUID | None,
        run_at: datetime,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        created_by: str | None = None,
    ) -> CRMSchedulerJob:
        """Stage a pending job in the caller's transaction."""
        job = CRMSchedulerJob(
            org_id=org_id,
            job_type=job_type,
            entity_type=entity_type,
            entity_id=entity_id,
            record_id=record_id,
            run_at=run_at,
            status="pending",
            attempts=0,
            max_attempts=get_settings().scheduler_default_max_attempts,
            payload=payload,
            idempotency_key=idempotency_key,
            created_by=created_by,
        )
        session.add(job)
        session.flush()
        return job

    def schedule_workflow_retry(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        original_run_id: uuid.UUID,
        record_id: uuid.UUID,
        workflow_id: uuid.UUID,
        delay_seconds: int,
        idempotency_key: str,
    ) -> CRMSchedulerJob:
        job = self.schedule_job(
            session,
            org_id=actor_user.org_id,
            job_type=RETRY_JOB,
            entity_type="workflow",
            entity_id=workflow_id,
            record_id=record_id,
            run_at=utcnow() + timedelta(seconds=delay_seconds),
            payload={
                "original_run_id": str(original_run_id),
                "workflow_id": str(workflow_id),
                "record_id": str(record_id),
                "idempotency_key": idempotency_key,
                "requested_by": actor_user.user_id,
            },
            idempotency_key=f"job:{idempotency_key}",
            created_by=actor_user.user_id,
        )
        logger.info(
            "scheduler.retry_scheduled",
            extra={
                "job_id": str(job.id),
                "run_id": str(original_run_id),
                "workflow_id": str(workflow_id),
                "delay_seconds": delay_seconds,
            },
        )
        return job

    def process_due_jobs(
        self,
        session: Session,
        now: datetime | None = None,
        limit: int | None = None,
        org_id: str | None = None,
    ) -> list[JobProcessSummary]:
        settings = get_settings()
        now = now or utcnow()
        conditions = [CRMSchedulerJob.status == "pending", CRMSchedulerJob.run_at <= now]
        if org_id is not None:
            conditions.append(CRMSchedulerJob.org_id == org_id)
        due = session.scalars(
            select(CRMSchedulerJob.id)
            .where(and_(*conditions))
            .order_by(CRMSchedulerJob.run_at.asc())
            .limit(limit or settings.scheduler_batch_size)
        ).all()

        summaries: list[JobProcessSummary] = []
        for job_id in due:
            summary = self.process_job(session, job_id, now=now)
            if summary is not None:
                summaries.append(summary)
        return summaries

    def process_job(self, session: Session, job_id: uuid.UUID, *, now: datetime | None = None) -> JobProcessSummary | None:
        settings = get_settings()
        now = now or utcnow()
        claimed = session.execute(
            update(CRMSchedulerJob)
            .where(and_(CRMSchedulerJob.id == job_id, CRMSchedulerJob.status == "pending"))
            .values(status="processing", attempts=CRMSchedulerJob.attempts + 1, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if claimed.rowcount == 0:
            return None

        job = session.scalar(
            select(CRMSchedulerJob).where(CRMSchedulerJob.id == job_id).execution_options(populate_existing=True)
        )
        if job is None:
            return None
        job_type = job.job_type
        started = time.perf_counter()
        with correlation_scope(f"job-{job_id}") as correlation_id:
            try:
                with tracer.start_as_current_span("stageflow.scheduler.job") as span:
                    span.set_attribute("job_id", str(job_id))
                    span.set_attribute("job_type", job_type)
                    span.set_attribute("correlation_id", correlation_id)
                    result = self._run(session, job)
            except Exception as exc:
                session.rollback()
                job = session.get(CRMSchedulerJob, job_id)
                if job is None:
                    raise
                error = str(exc)[:500]
                job.last_error = error
                if job.attempts >= job.max_attempts:
                    job.status = "failed"
                    job.finished_at = utcnow()
                else:
                    job.status = "pending"
                    job.run_at = now + timedelta(seconds=settings.scheduler_backoff_base_seconds * 2**job.attempts)
                session.commit()
                observe_scheduler_job(job_type, job.status, time.perf_counter() - started)
                logger.warning(
                    "scheduler.job_failed",
                    extra={
                        "job_id": str(job_id),
                        "job_type": job_type,
                        "attempts": job.attempts,
                        "max_attempts": job.max_attempts,
                        "status": job.status,
                        "error": error,
                    },
                )
                return JobProcessSummary(
                    job_id=job.id,
                    job_type=job_type,
                    status=job.status,
                    attempts=job.attempts,
                    error=error,
                )

        job = session.get(CRMSchedulerJob, job_id)
        if job is None:
            return None
        job.status = "completed"
        job.result = result
        job.last_error = None
        job.finished_at = utcnow()
        session.commit()
        observe_scheduler_job(job_type, "completed", time.perf_counter() - started)
        logger.info(
            "scheduler.job_completed",
            extra={"job_id": str(job_id), "job_type": job_type, "attempts": job.attempts},
        )
        return JobProcessSummary(job_id=job.id, job_type=job_type, status="completed", attempts=job.attempts)

    def _run(self, session: Session, job: CRMSchedulerJob) -> dict[str, Any]:
        if job.job_type == RETRY_JOB:
            return self._run_retry(session, job)
        if job.job_type == SCHEDULED_WORKFLOW_JOB:
            return self._run_scheduled_workflow(session, job)
        raise ValueError(f"unknown job type {job.job_type}")

    def _run_retry(self, session: Session, job: CRMSchedulerJob) -> dict[str, Any]:
        payload = dict(job.payload or {})
        actor = ActorUser(
            user_id=str(payload.get("requested_by") or "system"),
            org_id=job.org_id,
            role=Role.ADMIN,
            correlation_id=f"job-{job.id}",
        )
        workflow = workflow_service.load(session, job.org_id, uuid.UUID(str(payload["workflow_id"])))
        snapshot = record_service.load_snapshot(session, job.org_id, uuid.UUID(str(payload["record_id"])))
        result = self.engine.execute_workflow(
            session,
            workflow,
            snapshot,
            actor=actor,
            trigger=workflow.trigger_type,
            idempotency_key=str(payload["idempotency_key"]),
            source="retry",
            retry_of=uuid.UUID(str(payload["original_run_id"])),
        )
        return {
            "run_id": str(result.run_id) if result.run_id else None,
            "status": result.status,
            "error": result.error,
        }

    def _run_scheduled_workflow(self, session: Session, job: CRMSchedulerJob) -> dict[str, Any]:
        settings = get_settings()
        actor = system_actor(job.org_id, correlation_id=f"job-{job.id}")
        workflow = workflow_service.load(session, job.org_id, job.entity_id)
        record_ids = session.scalars(
            select(CRMRecord.id)
            .where(
                and_(
                    CRMRecord.org_id == job.org_id,
                    CRMRecord.module_id == workflow.module_id,
                    CRMRecord.deleted_at.is_(None),
                )
            )
            .order_by(CRMRecord.created_at.asc())
            .limit(settings.scheduled_workflow_record_limit)
        ).all()

        counts: dict[str, int] = {}
        for record_id in record_ids:
            snapshot = record_service.load_snapshot(session, job.org_id, record_id)
            result = self.engine.execute_workflow(
                session,
                workflow,
                snapshot,
                actor=actor,
                trigger="scheduled",
                idempotency_key=f"{job.idempotency_key}:{record_id}",
                source="scheduled",
            )
            counts[result.status] = counts.get(result.status, 0) + 1

        workflow.last_run_at = utcnow()
        session.commit()
        return {"records": len(record_ids), "statuses": counts}

    def process_scheduled_workflows(
        self,
        session: Session,
        now: datetime | None = None,
        org_id: str | None = None,
    ) -> list[uuid.UUID]:
        """Enqueue one job per enabled scheduled workflow whose interval has elapsed."""
        settings = get_settings()
        now = now or utcnow()
        conditions = [
            CRMWorkflow.trigger_type == "scheduled",
            CRMWorkflow.is_enabled.is_(True),
            CRMWorkflow.deleted_at.is_(None),
        ]
        if org_id is not None:
            conditions.append(CRMWorkflow.org_id == org_id)
        workflows = session.scalars(select(CRMWorkflow).where(and_(*conditions))).all()

        job_ids: list[uuid.UUID] = []
        for workflow in workflows:
            interval = int((workflow.trigger_config or {}).get("interval_minutes") or settings.scheduled_workflow_interval_minutes)
            if workflow.last_run_at is not None and _as_aware(workflow.last_run_at) + timedelta(minutes=interval) > now:
                continue
            pending = session.scalar(
                select(CRMSchedulerJob.id).where(
                    and_(
                        CRMSchedulerJob.entity_id == workflow.id,
                        CRMSchedulerJob.job_type == SCHEDULED_WORKFLOW_JOB,
                        CRMSchedulerJob.status.in_(("pending", "processing")),
                    )
                )
            )
            if pending is not None:
                continue
            slot = int(now.timestamp() // (interval * 60))
            job = self.schedule_job(
                session,
                org_id=workflow.org_id,
                job_type=SCHEDULED_WORKFLOW_JOB,
                entity_type="workflow",
                entity_id=workflow.id,
                record_id=None,
                run_at=now,
                payload={"workflow_id": str(workflow.id), "interval_minutes": interval},
                idempotency_key=f"scheduled:{workflow.id}:{slot}",
                created_by="system",
            )
            job_ids.append(job.id)
        session.commit()
        if job_ids:
            logger.info("scheduler.scheduled_workflows_enqueued", extra={"jobs": len(job_ids)})
        return job_ids

    def list_jobs(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None = None,
        limit: int = 100,
    ) -> list[SchedulerJobRead]:
        authorize(actor_user, Operation.AUTOMATION_JOBS_MANAGE)
        conditions = [CRMSchedulerJob.org_id == actor_user.org_id]
        if status_filter is not None:
            conditions.append(CRMSchedulerJob.status == status_filter)
        rows = session.scalars(
            select(CRMSchedulerJob)
            .where(and_(*conditions))
            .order_by(CRMSchedulerJob.run_at.desc())
            .limit(limit)
        ).all()
        return [SchedulerJobRead.model_validate(row) for row in rows]

    def get_job(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> SchedulerJobRead:
        authorize(actor_user, Operation.AUTOMATION_JOBS_MANAGE)
        return SchedulerJobRead.model_validate(self._load(session, actor_user.org_id, job_id))

    def cancel_job(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> SchedulerJobRead:
        authorize(actor_user, Operation.AUTOMATION_JOBS_MANAGE)
        job = self._load(session, actor_user.org_id, job_id)
        result = session.execute(
            update(CRMSchedulerJob)
            .where(and_(CRMSchedulerJob.id == job.id, CRMSchedulerJob.status == "pending"))
            .values(status="cancelled", finished_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="only pending jobs can be cancelled")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(job.id),
            action="cancel",
            before={"status": "pending"},
            after={"status": "cancelled"},
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        job = self._load(session, actor_user.org_id, job_id)
        return SchedulerJobRead.model_validate(job)

    def _load(self, session: Session, org_id: str, job_id: uuid.UUID) -> CRMSchedulerJob:
        job = session.scalar(
            select(CRMSchedulerJob)
            .where(and_(CRMSchedulerJob.id == job_id, CRMSchedulerJob.org_id == org_id))
            .execution_options(populate_existing=True)
        )
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
        return job


scheduler_service = SchedulerService()
