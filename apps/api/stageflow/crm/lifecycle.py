from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from stageflow.approvals.schemas import DeleteCommand, FieldUpdateCommand
from stageflow.approvals.service import approval_service, check_approval_required
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.records import publish_all, record_service
from stageflow.crm.schemas import RecordCreate, RecordMutationResult, RecordRead, RecordUpdate
from stageflow.rules.service import RuleEvaluation, rule_engine

logger = logging.getLogger("stageflow.lifecycle")


def _rules_failed(evaluation: RuleEvaluation) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        detail={
            "code": "validation_failed",
            "message": "record failed validation rules",
            "validation_errors": [item.to_dict() for item in evaluation.errors],
        },
    )


class RecordLifecycleService:
    """Record create, update and delete gated by validation rules and approval rules."""

    def create(self, session: Session, actor_user: ActorUser, dto: RecordCreate) -> RecordRead:
        authorize(actor_user, Operation.RECORD_WRITE)
        module = record_service.get_module(session, actor_user.org_id, dto.module_id)
        data = record_service.validate_data(module, dict(dto.data))
        stage = record_service.resolve_initial_stage(session, module, dto.stage)

        context: dict[str, Any] = {
            "module_id": str(module.id),
            "title": dto.title,
            "stage": stage,
            "owner_id": dto.owner_id or actor_user.user_id,
            "created_by": actor_user.user_id,
            **data,
        }
        evaluation = rule_engine.validate(
            session,
            actor_user.org_id,
            module.id,
            "record_create",
            context,
            to_stage=stage,
            changed_fields=set(context),
        )
        if not evaluation.valid:
            raise _rules_failed(evaluation)

        record, envelope = record_service.insert_record(session, actor_user, module, dto, data, stage)
        session.commit()
        created = RecordRead.model_validate(record)
        logger.info(
            "record.created",
            extra={"record_id": str(record.id), "module_id": str(module.id), "org_id": actor_user.org_id},
        )
        publish_all([envelope])
        return created

    def update(
        self,
        session: Session,
        actor_user: ActorUser,
        record_id: uuid.UUID,
        dto: RecordUpdate,
    ) -> RecordMutationResult:
        authorize(actor_user, Operation.RECORD_WRITE)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, record_id)
        if dto.row_version is not None and dto.row_version != snapshot.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        module = record_service.get_module(session, snapshot.org_id, snapshot.module_id)
        changes: dict[str, Any] = record_service.validate_data(module, dict(dto.data))
        fields_set = dto.model_fields_set
        if "title" in fields_set:
            changes["title"] = dto.title
        if "owner_id" in fields_set:
            changes["owner_id"] = dto.owner_id
        if not changes:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="no changes supplied")

        previous = snapshot.context()
        context = snapshot.context(changes)
        changed_fields = {key for key, value in changes.items() if previous.get(key) != value}
        evaluation = rule_engine.validate(
            session,
            snapshot.org_id,
            snapshot.module_id,
            "field_change",
            context,
            previous=previous,
            changed_fields=changed_fields,
        )
        if not evaluation.valid:
            raise _rules_failed(evaluation)

        match = check_approval_required(
            session,
            snapshot.org_id,
            snapshot.module_id,
            "field_change",
            context,
            previous=previous,
            changed_fields=changed_fields,
        )
        if match is not None:
            command = FieldUpdateCommand(
                changes=changes,
                previous={key: previous.get(key) for key in changes},
            )
            request, envelopes = approval_service.stage_request(
                session,
                actor_user,
                snapshot,
                trigger_type=match.rule.trigger_type if match.rule is not None else "field_change",
                command=command,
                context={"source": "record_update"},
                match=match,
            )
            session.commit()
            publish_all(envelopes)
            return RecordMutationResult(
                success=True,
                outcome="awaiting_approval",
                record_id=snapshot.id,
                approval_id=request.id,
            )

        record, envelope = record_service.apply_data_update(session, actor_user, snapshot, changes)
        session.commit()
        updated = RecordRead.model_validate(record)
        publish_all([envelope])
        return RecordMutationResult(success=True, outcome="updated", record_id=snapshot.id, record=updated)

    def delete(self, session: Session, actor_user: ActorUser, record_id: uuid.UUID) -> RecordMutationResult:
        authorize(actor_user, Operation.RECORD_WRITE)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, record_id)
        match = check_approval_required(
            session,
            snapshot.org_id,
            snapshot.module_id,
            "record_delete",
            snapshot.context(),
        )
        if match is not None:
            request, envelopes = approval_service.stage_request(
                session,
                actor_user,
                snapshot,
                trigger_type="record_delete",
                command=DeleteCommand(),
                context={"source": "record_delete"},
                match=match,
            )
            session.commit()
            publish_all(envelopes)
            return RecordMutationResult(
                success=True,
                outcome="awaiting_approval",
                record_id=snapshot.id,
                approval_id=request.id,
            )

        envelope = record_service.soft_delete(session, actor_user, snapshot)
        session.commit()
        logger.info("record.deleted", extra={"record_id": str(snapshot.id), "org_id": snapshot.org_id})
        publish_all([envelope])
        return RecordMutationResult(success=True, outcome="deleted", record_id=snapshot.id)


record_lifecycle_service = RecordLifecycleService()
