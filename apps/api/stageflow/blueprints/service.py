from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.blueprints.models import CRMBlueprint
from stageflow.blueprints.schemas import (
    AvailableTransition,
    BlueprintRead,
    BlueprintUpsert,
    MissingField,
    TransitionDefinition,
)
from stageflow.crm.authz import ActorUser, Operation, Role, authorize
from stageflow.crm.conditions import is_empty_value
from stageflow.crm.models import CRMModule, CRMRecord
from stageflow.crm.records import RecordSnapshot, record_service

logger = logging.getLogger("stageflow.transitions")


@dataclass(slots=True)
class Blueprint:
    id: uuid.UUID
    module_id: uuid.UUID
    stages: list[str]
    transitions: list[TransitionDefinition]

    @classmethod
    def from_row(cls, row: CRMBlueprint) -> Blueprint:
        return cls(
            id=row.id,
            module_id=row.module_id,
            stages=list(row.stages or []),
            transitions=[TransitionDefinition.model_validate(item) for item in row.transitions or []],
        )

    @property
    def initial_stage(self) -> str | None:
        return self.stages[0] if self.stages else None

    def find(self, from_stage: str | None, to_stage: str) -> TransitionDefinition | None:
        if from_stage is None:
            # A record created before the blueprint existed may only enter at the initial stage.
            if to_stage == self.initial_stage:
                return TransitionDefinition.model_construct(from_stage="", to_stage=to_stage)
            return None
        for transition in self.transitions:
            if transition.from_stage == from_stage and transition.to_stage == to_stage:
                return transition
        return None

    def outgoing(self, from_stage: str | None) -> list[TransitionDefinition]:
        if from_stage is None:
            initial = self.initial_stage
            return [TransitionDefinition.model_construct(from_stage="", to_stage=initial)] if initial else []
        return [transition for transition in self.transitions if transition.from_stage == from_stage]


@dataclass(slots=True)
class TransitionCheck:
    allowed: bool
    valid: bool
    requires_approval: bool = False
    requires_reason: bool = False
    missing_fields: list[MissingField] = field(default_factory=list)
    transition: TransitionDefinition | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "valid": self.valid,
            "requires_approval": self.requires_approval,
            "requires_reason": self.requires_reason,
            "missing_fields": [item.model_dump() for item in self.missing_fields],
            "transition": self.transition.model_dump(mode="json") if self.transition else None,
            "error": self.error,
            "error_code": self.error_code,
        }


class BlueprintStore:
    def get(self, session: Session, org_id: str, module_id: uuid.UUID) -> Blueprint | None:
        row = session.scalar(
            select(CRMBlueprint).where(and_(CRMBlueprint.module_id == module_id, CRMBlueprint.org_id == org_id))
        )
        return Blueprint.from_row(row) if row is not None else None

    def read(self, session: Session, actor_user: ActorUser, module_id: uuid.UUID) -> BlueprintRead:
        authorize(actor_user, Operation.MODULE_READ)
        record_service.get_module(session, actor_user.org_id, module_id)
        row = session.scalar(
            select(CRMBlueprint).where(
                and_(CRMBlueprint.module_id == module_id, CRMBlueprint.org_id == actor_user.org_id)
            )
        )
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="blueprint not found")
        return self._to_read(row)

    def upsert(
        self,
        session: Session,
        actor_user: ActorUser,
        module_id: uuid.UUID,
        dto: BlueprintUpsert,
    ) -> BlueprintRead:
        authorize(actor_user, Operation.BLUEPRINT_MANAGE)
        module = record_service.get_module(session, actor_user.org_id, module_id)
        self._validate_required_fields(module, dto)

        live_stages = set(
            session.scalars(
                select(CRMRecord.stage)
                .where(
                    and_(
                        CRMRecord.module_id == module.id,
                        CRMRecord.deleted_at.is_(None),
                        CRMRecord.stage.is_not(None),
                    )
                )
                .distinct()
            ).all()
        )
        orphaned = sorted(live_stages - set(dto.stages))
        if orphaned:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": "records are in stages the blueprint would drop", "stages": orphaned},
            )

        transitions = [item.model_dump(mode="json") for item in dto.transitions]
        row = session.scalar(select(CRMBlueprint).where(CRMBlueprint.module_id == module.id))
        before = self._to_read(row).model_dump(mode="json") if row is not None else None
        if row is None:
            row = CRMBlueprint(
                org_id=actor_user.org_id,
                module_id=module.id,
                stages=list(dto.stages),
                transitions=transitions,
                updated_by=actor_user.user_id,
            )
            session.add(row)
        else:
            row.stages = list(dto.stages)
            row.transitions = transitions
            row.updated_by = actor_user.user_id
            row.row_version = row.row_version + 1
        session.flush()

        updated = self._to_read(row)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm_blueprint",
            entity_id=str(row.id),
            action="create" if before is None else "update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        logger.info(
            "blueprint.saved",
            extra={"module_id": str(module.id), "org_id": actor_user.org_id},
        )
        return updated

    def _validate_required_fields(self, module: CRMModule, dto: BlueprintUpsert) -> None:
        known = {item.key for item in module.fields} | {"title", "owner_id"}
        for transition in dto.transitions:
            unknown = [key for key in transition.required_fields if key not in known]
            if unknown:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                    detail=f"unknown required fields: {', '.join(unknown)}",
                )

    def _to_read(self, row: CRMBlueprint) -> BlueprintRead:
        return BlueprintRead(
            id=row.id,
            module_id=row.module_id,
            stages=list(row.stages or []),
            transitions=list(row.transitions or []),
            updated_by=row.updated_by,
            updated_at=row.updated_at,
        )


class FieldRequirementResolver:
    def missing_fields(
        self,
        required_fields: list[str],
        snapshot: RecordSnapshot,
        pending: dict[str, Any] | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[MissingField]:
        effective = snapshot.context(pending)
        labels = labels or {}
        return [
            MissingField(field=key, label=labels.get(key, key))
            for key in required_fields
            if is_empty_value(effective.get(key))
        ]


class TransitionValidator:
    def __init__(self, resolver: FieldRequirementResolver | None = None) -> None:
        self.resolver = resolver or FieldRequirementResolver()

    def validate(
        self,
        blueprint: Blueprint | None,
        snapshot: RecordSnapshot,
        to_stage: str,
        *,
        role: Role,
        pending: dict[str, Any] | None = None,
        reason: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> TransitionCheck:
        if blueprint is None:
            return TransitionCheck(allowed=True, valid=True)

        transition = blueprint.find(snapshot.stage, to_stage)
        if transition is None:
            return TransitionCheck(
                allowed=False,
                valid=False,
                error=f"no transition from {snapshot.stage} to {to_stage}",
                error_code="invalid_transition",
            )
        if transition.allowed_roles and role not in transition.allowed_roles:
            return TransitionCheck(
                allowed=False,
                valid=False,
                transition=transition,
                error=f"role {role.value} may not move records from {snapshot.stage} to {to_stage}",
                error_code="role_denied",
            )

        missing = self.resolver.missing_fields(transition.required_fields, snapshot, pending, labels)
        return TransitionCheck(
            allowed=True,
            valid=not missing,
            requires_approval=transition.requires_approval,
            requires_reason=transition.require_reason and is_empty_value(reason),
            missing_fields=missing,
            transition=transition,
        )

    def available_transitions(
        self,
        blueprint: Blueprint | None,
        snapshot: RecordSnapshot,
        role: Role,
        labels: dict[str, str] | None = None,
    ) -> list[AvailableTransition]:
        if blueprint is None:
            return []
        return [
            AvailableTransition(
                from_stage=snapshot.stage,
                to_stage=transition.to_stage,
                name=transition.name,
                requires_approval=transition.requires_approval,
                require_reason=transition.require_reason,
                required_fields=list(transition.required_fields),
                missing_fields=self.resolver.missing_fields(transition.required_fields, snapshot, None, labels),
            )
            for transition in blueprint.outgoing(snapshot.stage)
            if not transition.allowed_roles or role in transition.allowed_roles
        ]


def field_labels(module: CRMModule) -> dict[str, str]:
    labels = {"title": "Title", "owner_id": "Owner"}
    labels.update({item.key: item.label for item in module.fields})
    return labels


blueprint_store = BlueprintStore()
transition_validator = TransitionValidator()
