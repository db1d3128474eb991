from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from stageflow import audit, events
from stageflow.blueprints.models import CRMBlueprint
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.models import CRMModule, CRMModuleField, CRMRecord, CRMStageHistory, utcnow
from stageflow.crm.schemas import (
    RESERVED_FIELDS,
    SYSTEM_FIELDS,
    ModuleCreate,
    ModuleRead,
    RecordCreate,
    RecordRead,
    StageHistoryRead,
)

logger = logging.getLogger("stageflow.lifecycle")

STAGE_CHANGED_EVENT = "crm.record.stage_changed"
RECORD_CREATED_EVENT = "crm.record.created"
RECORD_UPDATED_EVENT = "crm.record.updated"
RECORD_DELETED_EVENT = "crm.record.deleted"


@dataclass(slots=True)
class RecordSnapshot:
    id: uuid.UUID
    org_id: str
    module_id: uuid.UUID
    title: str | None
    stage: str | None
    owner_id: str | None
    created_by: str | None
    row_version: int
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: CRMRecord) -> RecordSnapshot:
        return cls(
            id=record.id,
            org_id=record.org_id,
            module_id=record.module_id,
            title=record.title,
            stage=record.stage,
            owner_id=record.owner_id,
            created_by=record.created_by,
            row_version=record.row_version,
            data=dict(record.data or {}),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordSnapshot:
        return cls(
            id=uuid.UUID(str(data["id"])),
            org_id=str(data["org_id"]),
            module_id=uuid.UUID(str(data["module_id"])),
            title=data.get("title"),
            stage=data.get("stage"),
            owner_id=data.get("owner_id"),
            created_by=data.get("created_by"),
            row_version=int(data.get("row_version") or 1),
            data=dict(data.get("data") or {}),
        )

    def context(self, pending: dict[str, Any] | None = None) -> dict[str, Any]:
        """Flat view used by conditions and required-field checks: data merged with pending updates."""
        merged: dict[str, Any] = {
            "id": str(self.id),
            "module_id": str(self.module_id),
            "title": self.title,
            "stage": self.stage,
            "owner_id": self.owner_id,
            "created_by": self.created_by,
        }
        merged.update(self.data)
        if pending:
            merged.update(pending)
        return merged

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "org_id": self.org_id,
            "module_id": str(self.module_id),
            "title": self.title,
            "stage": self.stage,
            "owner_id": self.owner_id,
            "created_by": self.created_by,
            "row_version": self.row_version,
            "data": dict(self.data),
        }


class RecordService:
    entity_type = "crm_record"

    def create_module(self, session: Session, actor_user: ActorUser, dto: ModuleCreate) -> ModuleRead:
        authorize(actor_user, Operation.MODULE_MANAGE)
        module = CRMModule(org_id=actor_user.org_id, key=dto.key, name=dto.name)
        module.fields = [
            CRMModuleField(key=item.key, label=item.label, data_type=item.data_type, position=index)
            for index, item in enumerate(dto.fields)
        ]
        session.add(module)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="module key already exists")

        created = ModuleRead.model_validate(module)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm_module",
            entity_id=str(module.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return created

    def list_modules(self, session: Session, actor_user: ActorUser) -> list[ModuleRead]:
        authorize(actor_user, Operation.MODULE_READ)
        rows = session.scalars(
            select(CRMModule)
            .where(and_(CRMModule.org_id == actor_user.org_id, CRMModule.deleted_at.is_(None)))
            .options(selectinload(CRMModule.fields))
            .order_by(CRMModule.key.asc())
        ).all()
        return [ModuleRead.model_validate(row) for row in rows]

    def get_module(self, session: Session, org_id: str, module_id: uuid.UUID) -> CRMModule:
        module = session.scalar(
            select(CRMModule)
            .where(and_(CRMModule.id == module_id, CRMModule.org_id == org_id, CRMModule.deleted_at.is_(None)))
            .options(selectinload(CRMModule.fields))
        )
        if module is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="module not found")
        return module

    def read_module(self, session: Session, actor_user: ActorUser, module_id: uuid.UUID) -> ModuleRead:
        authorize(actor_user, Operation.MODULE_READ)
        return ModuleRead.model_validate(self.get_module(session, actor_user.org_id, module_id))

    def validate_data(self, module: CRMModule, data: dict[str, Any]) -> dict[str, Any]:
        definitions = {item.key: item for item in module.fields}
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if key in RESERVED_FIELDS or key in SYSTEM_FIELDS:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} is a reserved field")
            definition = definitions.get(key)
            if value is None:
                cleaned[key] = None
            elif definition is None:
                cleaned[key] = _untyped_value(key, value)
            else:
                cleaned[key] = _typed_value(key, definition.data_type, value)
        return cleaned

    def load_record(self, session: Session, org_id: str, record_id: uuid.UUID) -> CRMRecord:
        record = session.scalar(
            select(CRMRecord)
            .where(and_(CRMRecord.id == record_id, CRMRecord.org_id == org_id, CRMRecord.deleted_at.is_(None)))
            .execution_options(populate_existing=True)
        )
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not found")
        return record

    def load_snapshot(self, session: Session, org_id: str, record_id: uuid.UUID) -> RecordSnapshot:
        return RecordSnapshot.from_record(self.load_record(session, org_id, record_id))

    def get_record(self, session: Session, actor_user: ActorUser, record_id: uuid.UUID) -> RecordRead:
        authorize(actor_user, Operation.RECORD_READ)
        return RecordRead.model_validate(self.load_record(session, actor_user.org_id, record_id))

    def resolve_initial_stage(self, session: Session, module: CRMModule, requested: str | None) -> str | None:
        blueprint = session.scalar(select(CRMBlueprint).where(CRMBlueprint.module_id == module.id))
        if blueprint is None:
            return requested
        stages = list(blueprint.stages or [])
        if requested is None:
            return stages[0] if stages else None
        if requested not in stages:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=f"stage {requested} is not declared by the module blueprint",
            )
        return requested

    def insert_record(
        self,
        session: Session,
        actor_user: ActorUser,
        module: CRMModule,
        dto: RecordCreate,
        data: dict[str, Any],
        stage: str | None,
    ) -> tuple[CRMRecord, dict[str, Any]]:
        """Stage a new record and its audit row; the caller commits and then publishes the envelope."""
        record = CRMRecord(
            org_id=actor_user.org_id,
            module_id=module.id,
            title=dto.title,
            stage=stage,
            owner_id=dto.owner_id or actor_user.user_id,
            created_by=actor_user.user_id,
            data=data,
        )
        session.add(record)
        session.flush()
        snapshot = RecordSnapshot.from_record(record)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(record.id),
            action="create",
            before=None,
            after=snapshot.to_dict(),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        envelope = events.build_envelope(
            RECORD_CREATED_EVENT,
            org_id=actor_user.org_id,
            actor_user_id=actor_user.user_id,
            payload={
                "record_id": str(record.id),
                "module_id": str(module.id),
                "source": dto.source,
                "record": snapshot.to_dict(),
            },
        )
        return record, envelope

    def commit_stage_change(
        self,
        session: Session,
        actor_user: ActorUser,
        snapshot: RecordSnapshot,
        to_stage: str,
        *,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
        blueprint_id: uuid.UUID | None = None,
        approval_id: uuid.UUID | None = None,
        source: str = "transition",
    ) -> tuple[CRMRecord, dict[str, Any]]:
        """Write stage, history and audit inside the caller's transaction.

        The update only applies while the stored stage and row_version still match
        the snapshot; otherwise a 409 is raised and nothing is written.
        """
        values: dict[str, Any] = {
            "stage": to_stage,
            "updated_at": utcnow(),
            "row_version": CRMRecord.row_version + 1,
        }
        if payload:
            values["data"] = {**snapshot.data, **payload}

        stage_clause = CRMRecord.stage.is_(None) if snapshot.stage is None else CRMRecord.stage == snapshot.stage
        result = session.execute(
            update(CRMRecord)
            .where(
                and_(
                    CRMRecord.id == snapshot.id,
                    CRMRecord.row_version == snapshot.row_version,
                    CRMRecord.deleted_at.is_(None),
                    stage_clause,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "code": "concurrency_conflict",
                    "message": "record stage changed concurrently",
                    "expected_stage": snapshot.stage,
                    "to_stage": to_stage,
                },
            )

        history = CRMStageHistory(
            org_id=snapshot.org_id,
            record_id=snapshot.id,
            blueprint_id=blueprint_id,
            from_stage=snapshot.stage,
            to_stage=to_stage,
            reason=reason,
            transition_data=dict(payload or {}),
            changed_by=actor_user.user_id,
            approval_id=approval_id,
            source=source,
        )
        session.add(history)
        updated = self.load_record(session, snapshot.org_id, snapshot.id)
        after = RecordSnapshot.from_record(updated)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(snapshot.id),
            action="stage_change",
            before=snapshot.to_dict(),
            after=after.to_dict(),
            correlation_id=actor_user.correlation_id,
            org_id=snapshot.org_id,
            session=session,
        )
        session.flush()
        envelope = events.build_envelope(
            STAGE_CHANGED_EVENT,
            org_id=snapshot.org_id,
            actor_user_id=actor_user.user_id,
            payload={
                "record_id": str(snapshot.id),
                "module_id": str(snapshot.module_id),
                "from_stage": snapshot.stage,
                "to_stage": to_stage,
                "history_id": str(history.id),
                "approval_id": str(approval_id) if approval_id else None,
                "source": source,
                "previous": snapshot.to_dict(),
                "record": after.to_dict(),
            },
        )
        return updated, envelope

    def apply_data_update(
        self,
        session: Session,
        actor_user: ActorUser,
        snapshot: RecordSnapshot,
        changes: dict[str, Any],
        *,
        source: str = "update",
        approval_id: uuid.UUID | None = None,
    ) -> tuple[CRMRecord, dict[str, Any]]:
        if "stage" in changes:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="stage can only change through a transition",
            )
        module = self.get_module(session, snapshot.org_id, snapshot.module_id)
        system_changes = {key: value for key, value in changes.items() if key in SYSTEM_FIELDS}
        data_changes = self.validate_data(
            module,
            {key: value for key, value in changes.items() if key not in SYSTEM_FIELDS},
        )

        values: dict[str, Any] = {"updated_at": utcnow(), "row_version": CRMRecord.row_version + 1}
        values.update(system_changes)
        if data_changes:
            values["data"] = {**snapshot.data, **data_changes}

        result = session.execute(
            update(CRMRecord)
            .where(
                and_(
                    CRMRecord.id == snapshot.id,
                    CRMRecord.row_version == snapshot.row_version,
                    CRMRecord.deleted_at.is_(None),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        updated = self.load_record(session, snapshot.org_id, snapshot.id)
        after = RecordSnapshot.from_record(updated)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(snapshot.id),
            action=source,
            before=snapshot.to_dict(),
            after=after.to_dict(),
            correlation_id=actor_user.correlation_id,
            org_id=snapshot.org_id,
            session=session,
        )
        envelope = events.build_envelope(
            RECORD_UPDATED_EVENT,
            org_id=snapshot.org_id,
            actor_user_id=actor_user.user_id,
            payload={
                "record_id": str(snapshot.id),
                "module_id": str(snapshot.module_id),
                "changed_fields": sorted({**system_changes, **data_changes}.keys()),
                "approval_id": str(approval_id) if approval_id else None,
                "source": source,
                "previous": snapshot.to_dict(),
                "record": after.to_dict(),
            },
        )
        return updated, envelope

    def soft_delete(
        self,
        session: Session,
        actor_user: ActorUser,
        snapshot: RecordSnapshot,
        *,
        approval_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        result = session.execute(
            update(CRMRecord)
            .where(
                and_(
                    CRMRecord.id == snapshot.id,
                    CRMRecord.row_version == snapshot.row_version,
                    CRMRecord.deleted_at.is_(None),
                )
            )
            .values(deleted_at=utcnow(), updated_at=utcnow(), row_version=CRMRecord.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(snapshot.id),
            action="delete",
            before=snapshot.to_dict(),
            after=None,
            correlation_id=actor_user.correlation_id,
            org_id=snapshot.org_id,
            session=session,
        )
        return events.build_envelope(
            RECORD_DELETED_EVENT,
            org_id=snapshot.org_id,
            actor_user_id=actor_user.user_id,
            payload={
                "record_id": str(snapshot.id),
                "module_id": str(snapshot.module_id),
                "approval_id": str(approval_id) if approval_id else None,
                "previous": snapshot.to_dict(),
            },
        )

    def list_stage_history(self, session: Session, actor_user: ActorUser, record_id: uuid.UUID) -> list[StageHistoryRead]:
        authorize(actor_user, Operation.RECORD_READ)
        self.load_record(session, actor_user.org_id, record_id)
        rows = session.scalars(
            select(CRMStageHistory)
            .where(and_(CRMStageHistory.record_id == record_id, CRMStageHistory.org_id == actor_user.org_id))
            .order_by(CRMStageHistory.created_at.asc())
        ).all()
        return [StageHistoryRead.model_validate(row) for row in rows]


def publish_all(envelopes: list[dict[str, Any]]) -> None:
    """Publish envelopes collected during a unit of work. Call only after ``session.commit()``."""
    for envelope in envelopes:
        events.publish(envelope)


def _typed_value(key: str, data_type: str, value: Any) -> Any:
    if data_type == "text":
        if not isinstance(value, str):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} must be text")
        return value

    if data_type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} must be number")
        return float(value) if isinstance(value, Decimal) else value

    if data_type == "bool":
        if not isinstance(value, bool):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} must be bool")
        return value

    if data_type == "date":
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, str):
            try:
                return date.fromisoformat(value).isoformat()
            except ValueError:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} must be ISO date")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} must be date")

    if data_type == "list":
        if not isinstance(value, list) or any(not _is_scalar(item) for item in value):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"{key} must be a list of scalars")
        return list(value)

    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=f"unsupported data_type for {key}")


def _untyped_value(key: str, value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if _is_scalar(value):
        return value
    if isinstance(value, list) and all(_is_scalar(item) for item in value):
        return list(value)
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        detail=f"{key} must be text, number, bool, date or a list of those",
    )


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, bool, int, float))


record_service = RecordService()
