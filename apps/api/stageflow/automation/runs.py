from __future__ import annotations

import logging
import time
import uuid

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.engine import WorkflowEngine, workflow_engine
from stageflow.automation.models import CRMAutomationRun
from stageflow.automation.scheduler import SchedulerService, scheduler_service
from stageflow.automation.schemas import AutomationRunRead, RetryRequest, RetryResult, RunResultRead, RunWorkflowRequest
from stageflow.automation.workflows import workflow_service
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.records import record_service

logger = logging.getLogger("stageflow.automation")


class AutomationRunService:
    def __init__(
        self,
        engine: WorkflowEngine | None = None,
        scheduler: SchedulerService | None = None,
    ) -> None:
        self.engine = engine or workflow_engine
        self.scheduler = scheduler or scheduler_service

    def run_workflow(self, session: Session, actor_user: ActorUser, dto: RunWorkflowRequest) -> RunResultRead:
        authorize(actor_user, Operation.AUTOMATION_TEST if dto.dry_run else Operation.AUTOMATION_RUN)
        workflow = workflow_service.load(session, actor_user.org_id, dto.workflow_id)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, dto.record_id)
        result = self.engine.execute_workflow(
            session,
            workflow,
            snapshot,
            actor=actor_user,
            trigger=workflow.trigger_type,
            dry_run=dto.dry_run,
            source="test" if dto.dry_run else "manual",
        )
        return result.to_read()

    def test_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        record_id: uuid.UUID,
    ) -> RunResultRead:
        return self.run_workflow(
            session,
            actor_user,
            RunWorkflowRequest(workflow_id=workflow_id, record_id=record_id, dry_run=True),
        )

    def retry_run(
        self,
        session: Session,
        actor_user: ActorUser,
        run_id: uuid.UUID,
        dto: RetryRequest,
    ) -> RetryResult:
        authorize(actor_user, Operation.AUTOMATION_RETRY)
        run = self._load(session, actor_user.org_id, run_id)
        if run.status != "failed":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="only failed runs can be retried")
        if run.workflow_id is None or run.record_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="only workflow runs against a record can be retried",
            )
        workflow_id = run.workflow_id
        record_id = run.record_id
        idempotency_key = f"retry:{run.id}:{int(time.time() * 1000)}"

        if dto.mode == "scheduled":
            job = self.scheduler.schedule_workflow_retry(
                session,
                actor_user,
                original_run_id=run.id,
                record_id=record_id,
                workflow_id=workflow_id,
                delay_seconds=dto.delay_seconds,
                idempotency_key=idempotency_key,
            )
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm_automation_run",
                entity_id=str(run.id),
                action="retry_scheduled",
                before=None,
                after={"job_id": str(job.id), "idempotency_key": idempotency_key},
                correlation_id=actor_user.correlation_id,
                org_id=actor_user.org_id,
                session=session,
            )
            session.commit()
            return RetryResult(mode="scheduled", idempotency_key=idempotency_key, job_id=job.id)

        workflow = workflow_service.load(session, actor_user.org_id, workflow_id)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, record_id)
        logger.info(
            "automation.retry_started",
            extra={"run_id": str(run_id), "workflow_id": str(workflow_id), "idempotency_key": idempotency_key},
        )
        result = self.engine.execute_workflow(
            session,
            workflow,
            snapshot,
            actor=actor_user,
            trigger=workflow.trigger_type,
            idempotency_key=idempotency_key,
            source="retry",
            retry_of=run_id,
        )
        return RetryResult(mode="immediate", idempotency_key=idempotency_key, result=result.to_read())

    def list_runs(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        workflow_id: uuid.UUID | None = None,
        record_id: uuid.UUID | None = None,
        status_filter: str | None = None,
        limit: int = 50,
    ) -> list[AutomationRunRead]:
        authorize(actor_user, Operation.WORKFLOW_READ)
        conditions = [CRMAutomationRun.org_id == actor_user.org_id]
        if workflow_id is not None:
            conditions.append(CRMAutomationRun.workflow_id == workflow_id)
        if record_id is not None:
            conditions.append(CRMAutomationRun.record_id == record_id)
        if status_filter is not None:
            conditions.append(CRMAutomationRun.status == status_filter)
        rows = session.scalars(
            select(CRMAutomationRun)
            .where(and_(*conditions))
            .order_by(CRMAutomationRun.started_at.desc())
            .limit(limit)
        ).all()
        return [AutomationRunRead.model_validate(row) for row in rows]

    def get_run(self, session: Session, actor_user: ActorUser, run_id: uuid.UUID) -> AutomationRunRead:
        authorize(actor_user, Operation.WORKFLOW_READ)
        return AutomationRunRead.model_validate(self._load(session, actor_user.org_id, run_id))

    def _load(self, session: Session, org_id: str, run_id: uuid.UUID) -> CRMAutomationRun:
        run = session.scalar(
            select(CRMAutomationRun).where(and_(CRMAutomationRun.id == run_id, CRMAutomationRun.org_id == org_id))
        )
        if run is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation run not found")
        return run


automation_run_service = AutomationRunService()
