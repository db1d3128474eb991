from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.models import CRMWorkflow
from stageflow.automation.schemas import WorkflowCreate, WorkflowRead, WorkflowToggle, WorkflowUpdate
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.models import utcnow
from stageflow.crm.records import record_service


class WorkflowService:
    entity_type = "crm_workflow"

    def list_workflows(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        module_id: uuid.UUID | None = None,
        trigger_type: str | None = None,
    ) -> list[WorkflowRead]:
        authorize(actor_user, Operation.WORKFLOW_READ)
        conditions = [CRMWorkflow.org_id == actor_user.org_id, CRMWorkflow.deleted_at.is_(None)]
        if module_id is not None:
            conditions.append(CRMWorkflow.module_id == module_id)
        if trigger_type is not None:
            conditions.append(CRMWorkflow.trigger_type == trigger_type)
        rows = session.scalars(
            select(CRMWorkflow)
            .where(and_(*conditions))
            .order_by(CRMWorkflow.priority.asc(), CRMWorkflow.created_at.asc())
        ).all()
        return [WorkflowRead.model_validate(row) for row in rows]

    def get_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        authorize(actor_user, Operation.WORKFLOW_READ)
        return WorkflowRead.model_validate(self.load(session, actor_user.org_id, workflow_id))

    def create_workflow(self, session: Session, actor_user: ActorUser, dto: WorkflowCreate) -> WorkflowRead:
        authorize(actor_user, Operation.WORKFLOW_MANAGE)
        record_service.get_module(session, actor_user.org_id, dto.module_id)
        workflow = CRMWorkflow(
            org_id=actor_user.org_id,
            module_id=dto.module_id,
            created_by=actor_user.user_id,
            created_by_role=actor_user.role.value,
            **dto.model_dump(mode="json", exclude={"module_id"}),
        )
        session.add(workflow)
        session.flush()
        created = WorkflowRead.model_validate(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return created

    def update_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
    ) -> WorkflowRead:
        authorize(actor_user, Operation.WORKFLOW_MANAGE)
        workflow = self.load(session, actor_user.org_id, workflow_id)
        before = WorkflowRead.model_validate(workflow)
        merged = {
            **before.model_dump(include=set(WorkflowUpdate.model_fields)),
            **dto.model_dump(exclude_unset=True),
            "module_id": workflow.module_id,
        }
        try:
            validated = WorkflowCreate.model_validate(merged)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=[error["msg"] for error in exc.errors()],
            )
        for key, value in validated.model_dump(mode="json", exclude={"module_id"}).items():
            setattr(workflow, key, value)
        workflow.row_version = workflow.row_version + 1
        session.flush()
        updated = WorkflowRead.model_validate(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="update",
            before=before.model_dump(mode="json"),
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return updated

    def toggle_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowToggle,
    ) -> WorkflowRead:
        authorize(actor_user, Operation.WORKFLOW_MANAGE)
        workflow = self.load(session, actor_user.org_id, workflow_id)
        before = workflow.is_enabled
        workflow.is_enabled = dto.is_enabled
        workflow.row_version = workflow.row_version + 1
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="enable" if dto.is_enabled else "disable",
            before={"is_enabled": before},
            after={"is_enabled": dto.is_enabled},
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return WorkflowRead.model_validate(workflow)

    def delete_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> None:
        authorize(actor_user, Operation.WORKFLOW_MANAGE)
        workflow = self.load(session, actor_user.org_id, workflow_id)
        before = WorkflowRead.model_validate(workflow).model_dump(mode="json")
        workflow.deleted_at = utcnow()
        workflow.is_enabled = False
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(workflow.id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()

    def load(self, session: Session, org_id: str, workflow_id: uuid.UUID) -> CRMWorkflow:
        workflow = session.scalar(
            select(CRMWorkflow).where(
                and_(
                    CRMWorkflow.id == workflow_id,
                    CRMWorkflow.org_id == org_id,
                    CRMWorkflow.deleted_at.is_(None),
                )
            )
        )
        if workflow is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        return workflow


workflow_service = WorkflowService()
