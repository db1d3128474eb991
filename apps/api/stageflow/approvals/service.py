from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stageflow import audit, events
from stageflow.approvals.models import CRMApprovalAction, CRMApprovalProcess, CRMApprovalRequest, CRMApprovalRule
from stageflow.approvals.schemas import (
    ApprovalActionRead,
    ApprovalCommand,
    ApprovalCreateResult,
    ApprovalProcessCreate,
    ApprovalProcessRead,
    ApprovalProcessUpdate,
    ApprovalRequestCreate,
    ApprovalRequestRead,
    ApprovalRuleCreate,
    ApprovalRuleRead,
    ApprovalRuleUpdate,
    DeleteCommand,
    FieldUpdateCommand,
    StageChangeCommand,
    UpdateCommand,
    approval_command_adapter,
)
from stageflow.crm.authz import ActorUser, Operation, Role, authorize
from stageflow.crm.conditions import condition_evaluator, normalize_compare_value
from stageflow.crm.models import CRMNotification, CRMRecord, utcnow
from stageflow.crm.records import RecordSnapshot, publish_all, record_service
from stageflow.metrics import observe_approval_decision, observe_transition

logger = logging.getLogger("stageflow.approvals")

DEFAULT_STEPS: list[dict[str, Any]] = [{"type": "role", "value": Role.MANAGER.value, "require_comment": False}]

APPROVAL_REQUESTED_EVENT = "crm.approval.requested"
APPROVAL_RESOLVED_EVENT = "crm.approval.resolved"


@dataclass(slots=True)
class ApprovalMatch:
    process: CRMApprovalProcess
    rule: CRMApprovalRule | None = None


def _wildcard_matches(expected: Any, actual: str | None) -> bool:
    if expected in (None, "", "*"):
        return True
    if isinstance(expected, list):
        return not expected or actual in expected
    return expected == actual


def _trigger_matches(
    trigger_type: str,
    config: dict[str, Any],
    context: dict[str, Any],
    *,
    stage_from: str | None,
    stage_to: str | None,
    changed_fields: set[str] | None,
) -> bool:
    if trigger_type == "stage_transition":
        return _wildcard_matches(config.get("stage_from"), stage_from) and _wildcard_matches(
            config.get("stage_to"), stage_to
        )
    if trigger_type in {"field_change", "field_threshold"}:
        field_key = config.get("field")
        if field_key and field_key != "*" and changed_fields is not None and field_key not in changed_fields:
            return False
        if trigger_type == "field_threshold":
            current = normalize_compare_value(context.get(field_key))
            threshold = normalize_compare_value(config.get("threshold"))
            if current is None or threshold is None:
                return False
            try:
                return current > threshold
            except TypeError:
                return False
    return True


def check_approval_required(
    session: Session,
    org_id: str,
    module_id: uuid.UUID,
    trigger_type: str,
    context: dict[str, Any],
    *,
    previous: dict[str, Any] | None = None,
    stage_from: str | None = None,
    stage_to: str | None = None,
    changed_fields: set[str] | None = None,
) -> ApprovalMatch | None:
    """Return the first enabled rule (by priority) that gates this change, else a matching process, else None."""
    triggers = {trigger_type}
    if trigger_type == "field_change":
        triggers.add("field_threshold")

    rules = session.scalars(
        select(CRMApprovalRule)
        .where(
            and_(
                CRMApprovalRule.org_id == org_id,
                CRMApprovalRule.module_id == module_id,
                CRMApprovalRule.trigger_type.in_(triggers),
                CRMApprovalRule.is_enabled.is_(True),
                CRMApprovalRule.deleted_at.is_(None),
            )
        )
        .order_by(CRMApprovalRule.priority.asc(), CRMApprovalRule.created_at.asc())
    ).all()
    for rule in rules:
        if not _trigger_matches(
            rule.trigger_type,
            rule.trigger_config or {},
            context,
            stage_from=stage_from,
            stage_to=stage_to,
            changed_fields=changed_fields,
        ):
            continue
        if not condition_evaluator.matches(rule.conditions, context, previous):
            continue
        process = session.get(CRMApprovalProcess, rule.process_id)
        if process is None or not process.is_enabled or process.deleted_at is not None:
            continue
        return ApprovalMatch(process=process, rule=rule)

    if trigger_type == "manual":
        return None
    processes = session.scalars(
        select(CRMApprovalProcess)
        .where(
            and_(
                CRMApprovalProcess.org_id == org_id,
                CRMApprovalProcess.module_id == module_id,
                CRMApprovalProcess.trigger_type == trigger_type,
                CRMApprovalProcess.is_enabled.is_(True),
                CRMApprovalProcess.deleted_at.is_(None),
            )
        )
        .order_by(CRMApprovalProcess.created_at.asc())
    ).all()
    for process in processes:
        if _trigger_matches(
            process.trigger_type,
            process.trigger_config or {},
            context,
            stage_from=stage_from,
            stage_to=stage_to,
            changed_fields=changed_fields,
        ):
            return ApprovalMatch(process=process)
    return None


def step_approvers(step: dict[str, Any], owner_id: str | None) -> list[str]:
    if step.get("type") == "user" and step.get("value"):
        return [str(step["value"])]
    if step.get("type") == "record_owner" and owner_id:
        return [owner_id]
    return []


def can_act_on_step(actor_user: ActorUser, step: dict[str, Any], owner_id: str | None) -> bool:
    if actor_user.is_admin:
        return True
    step_type = step.get("type")
    if step_type == "user":
        return actor_user.user_id == step.get("value")
    if step_type == "role":
        return actor_user.role.value == step.get("value")
    if step_type == "record_owner":
        return owner_id is not None and actor_user.user_id == owner_id
    return False


def _replay_actor(request: CRMApprovalRequest, resolver: ActorUser) -> ActorUser:
    return ActorUser(
        user_id=request.requested_by,
        org_id=request.org_id,
        role=resolver.role,
        correlation_id=resolver.correlation_id,
    )


def _replay_stage_change(
    session: Session,
    actor_user: ActorUser,
    request: CRMApprovalRequest,
    command: StageChangeCommand,
) -> list[dict[str, Any]]:
    snapshot = record_service.load_snapshot(session, request.org_id, request.record_id)
    if snapshot.stage != command.stage_from:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "concurrency_conflict",
                "message": "record stage changed while the approval was pending",
                "expected_stage": command.stage_from,
                "current_stage": snapshot.stage,
            },
        )
    _, envelope = record_service.commit_stage_change(
        session,
        actor_user,
        snapshot,
        command.stage_to,
        payload=command.payload,
        reason=command.reason,
        blueprint_id=command.blueprint_id,
        approval_id=request.id,
        source="approval",
    )
    observe_transition("committed")
    return [envelope]


def _replay_field_update(
    session: Session,
    actor_user: ActorUser,
    request: CRMApprovalRequest,
    command: FieldUpdateCommand | UpdateCommand,
) -> list[dict[str, Any]]:
    snapshot = record_service.load_snapshot(session, request.org_id, request.record_id)
    _, envelope = record_service.apply_data_update(
        session,
        actor_user,
        snapshot,
        dict(command.changes),
        source=command.kind,
        approval_id=request.id,
    )
    return [envelope]


def _replay_delete(
    session: Session,
    actor_user: ActorUser,
    request: CRMApprovalRequest,
    command: DeleteCommand,
) -> list[dict[str, Any]]:
    snapshot = record_service.load_snapshot(session, request.org_id, request.record_id)
    return [record_service.soft_delete(session, actor_user, snapshot, approval_id=request.id)]


ReplayHandler = Callable[[Session, ActorUser, CRMApprovalRequest, Any], list[dict[str, Any]]]

REPLAY_HANDLERS: dict[str, ReplayHandler] = {
    "stage_change": _replay_stage_change,
    "field_update": _replay_field_update,
    "update": _replay_field_update,
    "delete": _replay_delete,
}


def command_trigger(command: ApprovalCommand) -> str:
    if isinstance(command, StageChangeCommand):
        return "stage_transition"
    if isinstance(command, DeleteCommand):
        return "record_delete"
    return "field_change"


class ApprovalService:
    entity_type = "crm_approval_request"

    def stage_request(
        self,
        session: Session,
        actor_user: ActorUser,
        snapshot: RecordSnapshot,
        *,
        trigger_type: str,
        command: ApprovalCommand,
        context: dict[str, Any] | None = None,
        match: ApprovalMatch | None = None,
    ) -> tuple[CRMApprovalRequest, list[dict[str, Any]]]:
        """Persist a pending request inside the caller's transaction.

        Without a match the request gets a single manager step so a gated blueprint
        transition is never left without an approver.
        """
        existing = self._pending_for_record(session, snapshot.org_id, snapshot.id)
        if existing is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": "record already has a pending approval", "approval_id": str(existing.id)},
            )

        steps = list(match.process.steps) if match is not None else [dict(item) for item in DEFAULT_STEPS]
        request = CRMApprovalRequest(
            org_id=snapshot.org_id,
            module_id=snapshot.module_id,
            record_id=snapshot.id,
            process_id=match.process.id if match is not None else None,
            rule_id=match.rule.id if match is not None and match.rule is not None else None,
            trigger_type=trigger_type,
            action_payload=command.model_dump(mode="json"),
            context=dict(context or {}),
            steps=steps,
            current_step=0,
            status="pending",
            requested_by=actor_user.user_id,
        )
        session.add(request)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="record already has a pending approval")

        self._notify(
            session,
            request,
            step_approvers(steps[0], snapshot.owner_id),
            title="Approval requested",
            body=f"{actor_user.user_id} requested approval for {command.kind}",
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(request.id),
            action="request",
            before=None,
            after={"record_id": str(snapshot.id), "action_payload": request.action_payload, "status": "pending"},
            correlation_id=actor_user.correlation_id,
            org_id=snapshot.org_id,
            session=session,
        )
        envelope = events.build_envelope(
            APPROVAL_REQUESTED_EVENT,
            org_id=snapshot.org_id,
            actor_user_id=actor_user.user_id,
            payload={
                "approval_id": str(request.id),
                "record_id": str(snapshot.id),
                "module_id": str(snapshot.module_id),
                "trigger_type": trigger_type,
                "kind": command.kind,
            },
        )
        logger.info(
            "approval.requested",
            extra={
                "approval_id": str(request.id),
                "record_id": str(snapshot.id),
                "org_id": snapshot.org_id,
                "trigger": trigger_type,
            },
        )
        return request, [envelope]

    def create_approval_request(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ApprovalRequestCreate,
    ) -> ApprovalCreateResult:
        authorize(actor_user, Operation.APPROVAL_REQUEST)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, dto.record_id)
        command = dto.action_payload
        if isinstance(command, StageChangeCommand) and command.stage_from is None:
            command = command.model_copy(update={"stage_from": snapshot.stage})
        trigger_type = dto.trigger_type if dto.trigger_type != "manual" else command_trigger(command)

        match: ApprovalMatch | None
        if dto.process_id is not None:
            process = self._load_process(session, actor_user.org_id, dto.process_id)
            if not process.is_enabled:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="approval process is disabled")
            rule = self._load_rule(session, actor_user.org_id, dto.rule_id) if dto.rule_id else None
            match = ApprovalMatch(process=process, rule=rule)
        else:
            match = self._match_command(session, snapshot, trigger_type, command)
            if match is None:
                return ApprovalCreateResult(
                    success=False,
                    requires_approval=False,
                    error="no approval process matches this change",
                )

        request, envelopes = self.stage_request(
            session,
            actor_user,
            snapshot,
            trigger_type=trigger_type,
            command=command,
            context=dto.context,
            match=match,
        )
        session.commit()
        publish_all(envelopes)
        return ApprovalCreateResult(success=True, approval_id=request.id, requires_approval=True)

    def _match_command(
        self,
        session: Session,
        snapshot: RecordSnapshot,
        trigger_type: str,
        command: ApprovalCommand,
    ) -> ApprovalMatch | None:
        if isinstance(command, StageChangeCommand):
            return check_approval_required(
                session,
                snapshot.org_id,
                snapshot.module_id,
                trigger_type,
                snapshot.context(command.payload),
                previous=snapshot.context(),
                stage_from=snapshot.stage,
                stage_to=command.stage_to,
            )
        if isinstance(command, (FieldUpdateCommand, UpdateCommand)):
            return check_approval_required(
                session,
                snapshot.org_id,
                snapshot.module_id,
                trigger_type,
                snapshot.context(command.changes),
                previous=snapshot.context(),
                changed_fields=set(command.changes),
            )
        return check_approval_required(session, snapshot.org_id, snapshot.module_id, trigger_type, snapshot.context())

    def resolve(
        self,
        session: Session,
        actor_user: ActorUser,
        approval_id: uuid.UUID,
        decision: str,
        comment: str | None = None,
    ) -> ApprovalRequestRead:
        return self.act(session, actor_user, approval_id, "approve" if decision == "approved" else "reject", comment)

    def act(
        self,
        session: Session,
        actor_user: ActorUser,
        approval_id: uuid.UUID,
        action: str,
        comment: str | None = None,
    ) -> ApprovalRequestRead:
        authorize(actor_user, Operation.APPROVAL_RESOLVE)
        request = self._load_request(session, actor_user.org_id, approval_id)
        if request.status != "pending":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"approval request is already {request.status}")

        owner_id = session.scalar(select(CRMRecord.owner_id).where(CRMRecord.id == request.record_id))
        step_index = request.current_step
        step = request.steps[step_index] if step_index < len(request.steps) else {}
        if not can_act_on_step(actor_user, step, owner_id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not an approver for the current step")
        if step.get("require_comment") and not (comment or "").strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="this step requires a comment")

        is_final = step_index + 1 >= len(request.steps)
        values: dict[str, Any] = {"updated_at": utcnow(), "row_version": CRMApprovalRequest.row_version + 1}
        if action == "approve" and not is_final:
            new_status = "pending"
            values["current_step"] = step_index + 1
        else:
            new_status = {"approve": "approved", "reject": "rejected", "request_changes": "changes_requested"}[action]
            values.update(
                status=new_status,
                resolved_by=actor_user.user_id,
                resolved_at=utcnow(),
                resolution_comment=comment,
            )

        result = session.execute(
            update(CRMApprovalRequest)
            .where(
                and_(
                    CRMApprovalRequest.id == request.id,
                    CRMApprovalRequest.status == "pending",
                    CRMApprovalRequest.row_version == request.row_version,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="approval request was resolved concurrently")

        session.add(
            CRMApprovalAction(
                org_id=request.org_id,
                request_id=request.id,
                step_index=step_index,
                action=action,
                actor_id=actor_user.user_id,
                comment=comment,
            )
        )

        envelopes: list[dict[str, Any]] = []
        if new_status == "approved":
            command = approval_command_adapter.validate_python(request.action_payload)
            try:
                envelopes.extend(REPLAY_HANDLERS[command.kind](session, _replay_actor(request, actor_user), request, command))
            except HTTPException:
                session.rollback()
                raise

        if new_status == "pending":
            next_step = request.steps[step_index + 1]
            self._notify(
                session,
                request,
                step_approvers(next_step, owner_id),
                title="Approval step waiting",
                body=f"Step {step_index + 2} of {len(request.steps)} needs your decision",
            )
        else:
            self._notify(
                session,
                request,
                [request.requested_by],
                title=f"Approval {new_status.replace('_', ' ')}",
                body=comment,
            )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(request.id),
            action=action,
            before={"status": "pending", "current_step": step_index},
            after={"status": new_status, "current_step": values.get("current_step", step_index)},
            correlation_id=actor_user.correlation_id,
            org_id=request.org_id,
            session=session,
        )
        if new_status != "pending":
            envelopes.append(
                events.build_envelope(
                    APPROVAL_RESOLVED_EVENT,
                    org_id=request.org_id,
                    actor_user_id=actor_user.user_id,
                    payload={
                        "approval_id": str(request.id),
                        "record_id": str(request.record_id),
                        "status": new_status,
                    },
                )
            )
        session.commit()
        publish_all(envelopes)
        observe_approval_decision(action if new_status == "pending" else new_status)
        logger.info(
            "approval.acted",
            extra={
                "approval_id": str(request.id),
                "record_id": str(request.record_id),
                "decision": action,
                "status": new_status,
                "org_id": request.org_id,
            },
        )
        return self.get_request(session, actor_user, request.id)

    def cancel(
        self,
        session: Session,
        actor_user: ActorUser,
        approval_id: uuid.UUID,
        comment: str | None = None,
    ) -> ApprovalRequestRead:
        authorize(actor_user, Operation.APPROVAL_CANCEL)
        request = self._load_request(session, actor_user.org_id, approval_id)
        if request.status != "pending":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"approval request is already {request.status}")
        if request.requested_by != actor_user.user_id and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only the requester or an admin may cancel")

        result = session.execute(
            update(CRMApprovalRequest)
            .where(
                and_(
                    CRMApprovalRequest.id == request.id,
                    CRMApprovalRequest.status == "pending",
                    CRMApprovalRequest.row_version == request.row_version,
                )
            )
            .values(
                status="cancelled",
                resolved_by=actor_user.user_id,
                resolved_at=utcnow(),
                resolution_comment=comment,
                updated_at=utcnow(),
                row_version=CRMApprovalRequest.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="approval request was resolved concurrently")

        session.add(
            CRMApprovalAction(
                org_id=request.org_id,
                request_id=request.id,
                step_index=request.current_step,
                action="cancel",
                actor_id=actor_user.user_id,
                comment=comment,
            )
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(request.id),
            action="cancel",
            before={"status": "pending"},
            after={"status": "cancelled"},
            correlation_id=actor_user.correlation_id,
            org_id=request.org_id,
            session=session,
        )
        envelope = events.build_envelope(
            APPROVAL_RESOLVED_EVENT,
            org_id=request.org_id,
            actor_user_id=actor_user.user_id,
            payload={"approval_id": str(request.id), "record_id": str(request.record_id), "status": "cancelled"},
        )
        session.commit()
        events.publish(envelope)
        observe_approval_decision("cancelled")
        logger.info(
            "approval.cancelled",
            extra={"approval_id": str(request.id), "record_id": str(request.record_id), "org_id": request.org_id},
        )
        return self.get_request(session, actor_user, request.id)

    def get_request(self, session: Session, actor_user: ActorUser, approval_id: uuid.UUID) -> ApprovalRequestRead:
        authorize(actor_user, Operation.APPROVAL_READ)
        request = self._load_request(session, actor_user.org_id, approval_id)
        actions = session.scalars(
            select(CRMApprovalAction)
            .where(CRMApprovalAction.request_id == request.id)
            .order_by(CRMApprovalAction.created_at.asc())
        ).all()
        read = ApprovalRequestRead.model_validate(request)
        read.actions = [ApprovalActionRead.model_validate(item) for item in actions]
        return read

    def list_pending(self, session: Session, actor_user: ActorUser) -> list[ApprovalRequestRead]:
        """Pending requests whose current step the caller may decide."""
        authorize(actor_user, Operation.APPROVAL_READ)
        rows = session.execute(
            select(CRMApprovalRequest, CRMRecord.owner_id)
            .join(CRMRecord, CRMRecord.id == CRMApprovalRequest.record_id)
            .where(and_(CRMApprovalRequest.org_id == actor_user.org_id, CRMApprovalRequest.status == "pending"))
            .order_by(CRMApprovalRequest.created_at.asc())
        ).all()
        return [
            ApprovalRequestRead.model_validate(request)
            for request, owner_id in rows
            if request.current_step < len(request.steps)
            and can_act_on_step(actor_user, request.steps[request.current_step], owner_id)
        ]

    def get_pending_for_record(
        self,
        session: Session,
        actor_user: ActorUser,
        record_id: uuid.UUID,
    ) -> ApprovalRequestRead | None:
        authorize(actor_user, Operation.APPROVAL_READ)
        record_service.load_record(session, actor_user.org_id, record_id)
        request = self._pending_for_record(session, actor_user.org_id, record_id)
        return ApprovalRequestRead.model_validate(request) if request is not None else None

    def list_processes(
        self,
        session: Session,
        actor_user: ActorUser,
        module_id: uuid.UUID | None = None,
    ) -> list[ApprovalProcessRead]:
        authorize(actor_user, Operation.APPROVAL_READ)
        conditions = [CRMApprovalProcess.org_id == actor_user.org_id, CRMApprovalProcess.deleted_at.is_(None)]
        if module_id is not None:
            conditions.append(CRMApprovalProcess.module_id == module_id)
        rows = session.scalars(
            select(CRMApprovalProcess).where(and_(*conditions)).order_by(CRMApprovalProcess.created_at.asc())
        ).all()
        return [ApprovalProcessRead.model_validate(row) for row in rows]

    def create_process(self, session: Session, actor_user: ActorUser, dto: ApprovalProcessCreate) -> ApprovalProcessRead:
        authorize(actor_user, Operation.APPROVAL_PROCESS_MANAGE)
        record_service.get_module(session, actor_user.org_id, dto.module_id)
        process = CRMApprovalProcess(
            org_id=actor_user.org_id,
            module_id=dto.module_id,
            name=dto.name,
            description=dto.description,
            trigger_type=dto.trigger_type,
            trigger_config=dto.trigger_config,
            steps=[step.model_dump() for step in dto.steps],
            is_enabled=dto.is_enabled,
            created_by=actor_user.user_id,
        )
        session.add(process)
        session.flush()
        created = ApprovalProcessRead.model_validate(process)
        self._audit_config(session, actor_user, "crm_approval_process", process.id, "create", None, created)
        session.commit()
        return created

    def update_process(
        self,
        session: Session,
        actor_user: ActorUser,
        process_id: uuid.UUID,
        dto: ApprovalProcessUpdate,
    ) -> ApprovalProcessRead:
        authorize(actor_user, Operation.APPROVAL_PROCESS_MANAGE)
        process = self._load_process(session, actor_user.org_id, process_id)
        before = ApprovalProcessRead.model_validate(process)
        changes = dto.model_dump(exclude_unset=True)
        if dto.steps is not None:
            changes["steps"] = [step.model_dump() for step in dto.steps]
        for key, value in changes.items():
            setattr(process, key, value)
        session.flush()
        updated = ApprovalProcessRead.model_validate(process)
        self._audit_config(session, actor_user, "crm_approval_process", process.id, "update", before, updated)
        session.commit()
        return updated

    def delete_process(self, session: Session, actor_user: ActorUser, process_id: uuid.UUID) -> None:
        authorize(actor_user, Operation.APPROVAL_PROCESS_MANAGE)
        process = self._load_process(session, actor_user.org_id, process_id)
        before = ApprovalProcessRead.model_validate(process)
        process.deleted_at = utcnow()
        process.is_enabled = False
        self._audit_config(session, actor_user, "crm_approval_process", process.id, "delete", before, None)
        session.commit()

    def list_rules(
        self,
        session: Session,
        actor_user: ActorUser,
        module_id: uuid.UUID | None = None,
    ) -> list[ApprovalRuleRead]:
        authorize(actor_user, Operation.APPROVAL_READ)
        conditions = [CRMApprovalRule.org_id == actor_user.org_id, CRMApprovalRule.deleted_at.is_(None)]
        if module_id is not None:
            conditions.append(CRMApprovalRule.module_id == module_id)
        rows = session.scalars(
            select(CRMApprovalRule)
            .where(and_(*conditions))
            .order_by(CRMApprovalRule.priority.asc(), CRMApprovalRule.created_at.asc())
        ).all()
        return [ApprovalRuleRead.model_validate(row) for row in rows]

    def create_rule(self, session: Session, actor_user: ActorUser, dto: ApprovalRuleCreate) -> ApprovalRuleRead:
        authorize(actor_user, Operation.APPROVAL_PROCESS_MANAGE)
        record_service.get_module(session, actor_user.org_id, dto.module_id)
        process = self._load_process(session, actor_user.org_id, dto.process_id)
        if process.module_id != dto.module_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="process belongs to another module")
        rule = CRMApprovalRule(org_id=actor_user.org_id, created_by=actor_user.user_id, **dto.model_dump())
        session.add(rule)
        session.flush()
        created = ApprovalRuleRead.model_validate(rule)
        self._audit_config(session, actor_user, "crm_approval_rule", rule.id, "create", None, created)
        session.commit()
        return created

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: ApprovalRuleUpdate,
    ) -> ApprovalRuleRead:
        authorize(actor_user, Operation.APPROVAL_PROCESS_MANAGE)
        rule = self._load_rule(session, actor_user.org_id, rule_id)
        before = ApprovalRuleRead.model_validate(rule)
        merged = {**before.model_dump(), **dto.model_dump(exclude_unset=True)}
        try:
            validated = ApprovalRuleCreate.model_validate(merged)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=[error["msg"] for error in exc.errors()],
            )
        for key in dto.model_dump(exclude_unset=True):
            setattr(rule, key, getattr(validated, key))
        session.flush()
        updated = ApprovalRuleRead.model_validate(rule)
        self._audit_config(session, actor_user, "crm_approval_rule", rule.id, "update", before, updated)
        session.commit()
        return updated

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        authorize(actor_user, Operation.APPROVAL_PROCESS_MANAGE)
        rule = self._load_rule(session, actor_user.org_id, rule_id)
        before = ApprovalRuleRead.model_validate(rule)
        rule.deleted_at = utcnow()
        rule.is_enabled = False
        self._audit_config(session, actor_user, "crm_approval_rule", rule.id, "delete", before, None)
        session.commit()

    def _notify(
        self,
        session: Session,
        request: CRMApprovalRequest,
        user_ids: list[str],
        *,
        title: str,
        body: str | None,
    ) -> None:
        for user_id in dict.fromkeys(user_ids):
            session.add(
                CRMNotification(
                    org_id=request.org_id,
                    user_id=user_id,
                    title=title,
                    body=body,
                    href=f"/approvals/{request.id}",
                    record_id=request.record_id,
                )
            )

    def _audit_config(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        before: Any,
        after: Any,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            before=before.model_dump(mode="json") if before is not None else None,
            after=after.model_dump(mode="json") if after is not None else None,
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )

    def _pending_for_record(self, session: Session, org_id: str, record_id: uuid.UUID) -> CRMApprovalRequest | None:
        return session.scalar(
            select(CRMApprovalRequest).where(
                and_(
                    CRMApprovalRequest.org_id == org_id,
                    CRMApprovalRequest.record_id == record_id,
                    CRMApprovalRequest.status == "pending",
                )
            )
        )

    def _load_request(self, session: Session, org_id: str, approval_id: uuid.UUID) -> CRMApprovalRequest:
        request = session.scalar(
            select(CRMApprovalRequest)
            .where(and_(CRMApprovalRequest.id == approval_id, CRMApprovalRequest.org_id == org_id))
            .execution_options(populate_existing=True)
        )
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval request not found")
        return request

    def _load_process(self, session: Session, org_id: str, process_id: uuid.UUID) -> CRMApprovalProcess:
        process = session.scalar(
            select(CRMApprovalProcess).where(
                and_(
                    CRMApprovalProcess.id == process_id,
                    CRMApprovalProcess.org_id == org_id,
                    CRMApprovalProcess.deleted_at.is_(None),
                )
            )
        )
        if process is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval process not found")
        return process

    def _load_rule(self, session: Session, org_id: str, rule_id: uuid.UUID) -> CRMApprovalRule:
        rule = session.scalar(
            select(CRMApprovalRule).where(
                and_(
                    CRMApprovalRule.id == rule_id,
                    CRMApprovalRule.org_id == org_id,
                    CRMApprovalRule.deleted_at.is_(None),
                )
            )
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval rule not found")
        return rule


approval_service = ApprovalService()
