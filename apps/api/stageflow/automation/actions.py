from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from stageflow.automation.models import CRMEnrollmentDraft
from stageflow.automation.schemas import (
    AddNoteConfig,
    AssignOwnerConfig,
    CreateActivityConfig,
    CreateEnrollmentDraftConfig,
    CreateTaskConfig,
    MoveStageConfig,
    NotifyConfig,
    StartCadenceConfig,
    StopCadenceConfig,
    UpdateFieldsConfig,
    workflow_action_adapter,
)
from stageflow.blueprints.service import blueprint_store
from stageflow.crm.authz import SYSTEM_USER_ID, ActorUser, Role
from stageflow.crm.models import (
    CRMActivity,
    CRMCadence,
    CRMCadenceEnrollment,
    CRMNote,
    CRMNotification,
    CRMRecord,
    CRMTask,
    utcnow,
)
from stageflow.crm.records import RecordSnapshot, record_service
from stageflow.crm.schemas import SYSTEM_FIELDS
from stageflow.metrics import observe_automation_action

logger = logging.getLogger("stageflow.automation")


class ActionSkipped(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(slots=True)
class ActionContext:
    actor: ActorUser
    record: RecordSnapshot
    dry_run: bool = False
    author_role: str | None = None
    workflow_id: uuid.UUID | None = None
    macro_id: uuid.UUID | None = None
    envelopes: list[dict[str, Any]] = field(default_factory=list)

    def advance(self, record: CRMRecord, envelope: dict[str, Any]) -> None:
        self.record = RecordSnapshot.from_record(record)
        self.envelopes.append(envelope)


@dataclass(slots=True)
class ActionResult:
    action_id: str
    type: str
    status: str
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "type": self.type,
            "status": self.status,
            "output": self.output,
            "error": self.error,
        }


ActionHandler = Callable[[Session, Any, ActionContext], dict[str, Any]]


class ActionExecutor:
    """Runs one workflow or macro action; failures are captured on the result and never raised."""

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {
            "update_fields": self._update_fields,
            "assign_owner": self._assign_owner,
            "create_task": self._create_task,
            "create_activity": self._create_activity,
            "add_note": self._add_note,
            "notify": self._notify,
            "move_stage": self._move_stage,
            "start_cadence": self._start_cadence,
            "stop_cadence": self._stop_cadence,
            "create_enrollment_draft": self._create_enrollment_draft,
        }

    def execute(self, session: Session, action: dict[str, Any], ctx: ActionContext) -> ActionResult:
        action_id = str(action.get("id") or "")
        action_type = str(action.get("type") or "unknown")
        try:
            parsed = workflow_action_adapter.validate_python(action)
        except ValidationError as exc:
            result = ActionResult(
                action_id=action_id,
                type=action_type,
                status="failed",
                error=f"invalid action config: {exc.errors()[0]['msg']}",
            )
            observe_automation_action(action_type, result.status)
            return result

        handler = self._handlers[parsed.type]
        try:
            if ctx.dry_run:
                output = handler(session, parsed.config, ctx)
            else:
                with session.begin_nested():
                    output = handler(session, parsed.config, ctx)
            result = ActionResult(action_id=parsed.id, type=parsed.type, status="success", output=output)
        except ActionSkipped as exc:
            result = ActionResult(
                action_id=parsed.id,
                type=parsed.type,
                status="skipped",
                output={"reason": exc.reason},
            )
        except HTTPException as exc:
            result = ActionResult(action_id=parsed.id, type=parsed.type, status="failed", error=_detail_text(exc.detail))
        except Exception as exc:
            result = ActionResult(action_id=parsed.id, type=parsed.type, status="failed", error=str(exc)[:500])

        if result.status == "failed":
            logger.warning(
                "automation.action_failed",
                extra={
                    "action_id": result.action_id,
                    "action_type": result.type,
                    "record_id": str(ctx.record.id),
                    "workflow_id": str(ctx.workflow_id) if ctx.workflow_id else None,
                    "error": result.error,
                },
            )
        observe_automation_action(result.type, result.status)
        return result

    def _update_fields(self, session: Session, config: UpdateFieldsConfig, ctx: ActionContext) -> dict[str, Any]:
        fields = dict(config.fields)
        module = record_service.get_module(session, ctx.record.org_id, ctx.record.module_id)
        record_service.validate_data(module, {key: value for key, value in fields.items() if key not in SYSTEM_FIELDS})
        if ctx.dry_run:
            return {"would_update": fields}
        record, envelope = record_service.apply_data_update(session, ctx.actor, ctx.record, fields, source="workflow")
        ctx.advance(record, envelope)
        return {"updated_fields": sorted(fields)}

    def _assign_owner(self, session: Session, config: AssignOwnerConfig, ctx: ActionContext) -> dict[str, Any]:
        chosen = config.user_id or self._pick_assignee(session, config, ctx.record)
        if not chosen:
            raise ActionSkipped("no assignment candidate")
        if chosen == ctx.record.owner_id:
            raise ActionSkipped("record already assigned to candidate")
        if ctx.dry_run:
            return {"would_assign": chosen, "strategy": config.strategy}
        record, envelope = record_service.apply_data_update(
            session,
            ctx.actor,
            ctx.record,
            {"owner_id": chosen},
            source="workflow",
        )
        ctx.advance(record, envelope)
        return {"owner_id": chosen, "strategy": config.strategy}

    def _pick_assignee(self, session: Session, config: AssignOwnerConfig, snapshot: RecordSnapshot) -> str | None:
        candidates = [item for item in config.user_ids if item]
        if not candidates:
            return None
        if config.strategy == "fixed":
            return candidates[0]
        if config.strategy == "round_robin":
            if snapshot.owner_id in candidates:
                return candidates[(candidates.index(snapshot.owner_id) + 1) % len(candidates)]
            return candidates[0]
        loads = dict(
            session.execute(
                select(CRMRecord.owner_id, func.count(CRMRecord.id))
                .where(
                    and_(
                        CRMRecord.org_id == snapshot.org_id,
                        CRMRecord.module_id == snapshot.module_id,
                        CRMRecord.deleted_at.is_(None),
                        CRMRecord.owner_id.in_(candidates),
                    )
                )
                .group_by(CRMRecord.owner_id)
            ).all()
        )
        return min(candidates, key=lambda user_id: (loads.get(user_id, 0), candidates.index(user_id)))

    def _create_task(self, session: Session, config: CreateTaskConfig, ctx: ActionContext) -> dict[str, Any]:
        due_at = utcnow() + timedelta(days=config.due_in_days) if config.due_in_days is not None else None
        task = {
            "title": config.title,
            "description": config.description,
            "priority": config.priority,
            "assigned_to": _resolve_user(config.assigned_to, ctx.record),
            "due_at": due_at.isoformat() if due_at else None,
        }
        if ctx.dry_run:
            return {"would_create_task": task}
        row = CRMTask(
            org_id=ctx.record.org_id,
            record_id=ctx.record.id,
            title=config.title,
            description=config.description,
            due_at=due_at,
            priority=config.priority,
            assigned_to=task["assigned_to"],
            created_by=ctx.actor.user_id,
            workflow_id=ctx.workflow_id,
        )
        session.add(row)
        session.flush()
        return {"task_id": str(row.id), **task}

    def _create_activity(self, session: Session, config: CreateActivityConfig, ctx: ActionContext) -> dict[str, Any]:
        activity = {"activity_type": config.activity_type, "subject": config.subject}
        if ctx.dry_run:
            return {"would_create_activity": activity}
        row = CRMActivity(
            org_id=ctx.record.org_id,
            record_id=ctx.record.id,
            activity_type=config.activity_type,
            subject=config.subject,
            body=config.body,
            created_by=ctx.actor.user_id,
        )
        session.add(row)
        session.flush()
        return {"activity_id": str(row.id), **activity}

    def _add_note(self, session: Session, config: AddNoteConfig, ctx: ActionContext) -> dict[str, Any]:
        if ctx.dry_run:
            return {"would_add_note": {"body": config.body, "is_pinned": config.is_pinned}}
        row = CRMNote(
            org_id=ctx.record.org_id,
            record_id=ctx.record.id,
            body=config.body,
            is_pinned=config.is_pinned,
            created_by=ctx.actor.user_id,
        )
        session.add(row)
        session.flush()
        return {"note_id": str(row.id)}

    def _notify(self, session: Session, config: NotifyConfig, ctx: ActionContext) -> dict[str, Any]:
        recipients: list[str] = []
        for item in config.recipients:
            user_id = _resolve_user(item, ctx.record)
            if user_id and user_id != SYSTEM_USER_ID and user_id not in recipients:
                recipients.append(user_id)
        if not recipients:
            raise ActionSkipped("no resolvable recipients")
        if ctx.dry_run:
            return {"would_notify": recipients}
        for user_id in recipients:
            session.add(
                CRMNotification(
                    org_id=ctx.record.org_id,
                    user_id=user_id,
                    title=config.title,
                    body=config.body,
                    href=config.href or f"/records/{ctx.record.id}",
                    record_id=ctx.record.id,
                )
            )
        session.flush()
        return {"notified": recipients}

    def _move_stage(self, session: Session, config: MoveStageConfig, ctx: ActionContext) -> dict[str, Any]:
        blueprint = blueprint_store.get(session, ctx.record.org_id, ctx.record.module_id)
        if blueprint is not None and config.stage not in blueprint.stages:
            raise ValueError(f"stage {config.stage} is not declared in the module blueprint")
        if ctx.record.stage == config.stage:
            raise ActionSkipped(f"record already in stage {config.stage}")
        if ctx.dry_run:
            return {"would_move": {"from_stage": ctx.record.stage, "to_stage": config.stage}}
        from_stage = ctx.record.stage
        record, envelope = record_service.commit_stage_change(
            session,
            ctx.actor,
            ctx.record,
            config.stage,
            blueprint_id=blueprint.id if blueprint else None,
            source="workflow",
        )
        ctx.advance(record, envelope)
        return {"from_stage": from_stage, "to_stage": config.stage}

    def _start_cadence(self, session: Session, config: StartCadenceConfig, ctx: ActionContext) -> dict[str, Any]:
        cadence = session.get(CRMCadence, config.cadence_id)
        if cadence is None or cadence.org_id != ctx.record.org_id:
            raise ActionSkipped("cadence not found")
        if not cadence.is_enabled:
            raise ActionSkipped("cadence is disabled")
        active = session.scalar(
            select(CRMCadenceEnrollment.id).where(
                and_(
                    CRMCadenceEnrollment.cadence_id == cadence.id,
                    CRMCadenceEnrollment.record_id == ctx.record.id,
                    CRMCadenceEnrollment.status == "active",
                )
            )
        )
        if active is not None:
            raise ActionSkipped("record already enrolled in cadence")

        steps = cadence.steps or []
        delay_days = int(steps[0].get("delay_days", 0) or 0) if steps else 0
        next_step_at = utcnow() + timedelta(days=delay_days)
        if ctx.dry_run:
            return {"would_enroll": {"cadence_id": str(cadence.id), "next_step_at": next_step_at.isoformat()}}
        enrollment = CRMCadenceEnrollment(
            org_id=ctx.record.org_id,
            cadence_id=cadence.id,
            record_id=ctx.record.id,
            status="active",
            current_step=0,
            next_step_at=next_step_at,
            enrolled_by=ctx.actor.user_id,
        )
        session.add(enrollment)
        session.flush()
        return {"enrollment_id": str(enrollment.id), "next_step_at": next_step_at.isoformat()}

    def _stop_cadence(self, session: Session, config: StopCadenceConfig, ctx: ActionContext) -> dict[str, Any]:
        filters = [
            CRMCadenceEnrollment.org_id == ctx.record.org_id,
            CRMCadenceEnrollment.record_id == ctx.record.id,
            CRMCadenceEnrollment.status == "active",
        ]
        if config.cadence_id is not None:
            filters.append(CRMCadenceEnrollment.cadence_id == config.cadence_id)
        enrollments = session.scalars(select(CRMCadenceEnrollment).where(and_(*filters))).all()
        if not enrollments:
            raise ActionSkipped("no active cadence enrollment")
        ids = [str(item.id) for item in enrollments]
        if ctx.dry_run:
            return {"would_stop": ids}
        stopped_at = utcnow()
        for enrollment in enrollments:
            enrollment.status = "stopped"
            enrollment.stopped_at = stopped_at
        session.flush()
        return {"stopped": ids}

    def _create_enrollment_draft(
        self,
        session: Session,
        config: CreateEnrollmentDraftConfig,
        ctx: ActionContext,
    ) -> dict[str, Any]:
        if not config.explicit:
            raise ActionSkipped("create_enrollment_draft requires explicit: true")
        if ctx.author_role != Role.ADMIN.value:
            raise ActionSkipped("create_enrollment_draft requires a crm_admin author")
        effective_date = config.effective_date or date.today()
        draft = {
            "record_id": str(ctx.record.id),
            "plan_id": config.plan_id,
            "effective_date": effective_date.isoformat(),
            "additional_data": dict(config.additional_data),
        }
        if ctx.dry_run:
            return {"would_create": draft}
        row = CRMEnrollmentDraft(
            org_id=ctx.record.org_id,
            record_id=ctx.record.id,
            plan_id=config.plan_id,
            effective_date=effective_date,
            status="draft",
            data=dict(config.additional_data),
            workflow_id=ctx.workflow_id,
            created_by=ctx.actor.user_id,
        )
        session.add(row)
        session.flush()
        record, envelope = record_service.apply_data_update(
            session,
            ctx.actor,
            ctx.record,
            {"enrollment_id": str(row.id), "enrollment_status": "draft"},
            source="workflow",
        )
        ctx.advance(record, envelope)
        return {"enrollment_id": str(row.id), "enrollment_status": "draft"}


def _resolve_user(value: str | None, snapshot: RecordSnapshot) -> str | None:
    if value == "owner":
        return snapshot.owner_id
    if value == "creator":
        return snapshot.created_by
    return value


def _detail_text(detail: Any) -> str:
    if isinstance(detail, dict):
        return str(detail.get("message") or detail)
    return str(detail)


action_executor = ActionExecutor()
