from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.engine import WorkflowEngine, workflow_engine
from stageflow.automation.models import CRMMacro
from stageflow.automation.schemas import MacroCreate, MacroRead, MacroUpdate, RunResultRead
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.models import utcnow
from stageflow.crm.records import record_service

logger = logging.getLogger("stageflow.automation")


class MacroService:
    entity_type = "crm_macro"

    def __init__(self, engine: WorkflowEngine | None = None) -> None:
        self.engine = engine or workflow_engine

    def list_macros(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        module_id: uuid.UUID | None = None,
        include_all: bool = False,
    ) -> list[MacroRead]:
        """Macros the caller may run; managers can ask for every macro with ``include_all``."""
        authorize(actor_user, Operation.MACRO_READ)
        if include_all:
            authorize(actor_user, Operation.MACRO_MANAGE)
        conditions = [CRMMacro.org_id == actor_user.org_id, CRMMacro.deleted_at.is_(None)]
        if module_id is not None:
            conditions.append(CRMMacro.module_id == module_id)
        rows = session.scalars(
            select(CRMMacro)
            .where(and_(*conditions))
            .order_by(CRMMacro.display_order.asc(), CRMMacro.name.asc())
        ).all()
        if not include_all:
            rows = [row for row in rows if row.is_enabled and actor_user.role.value in (row.allowed_roles or [])]
        return [MacroRead.model_validate(row) for row in rows]

    def get_macro(self, session: Session, actor_user: ActorUser, macro_id: uuid.UUID) -> MacroRead:
        authorize(actor_user, Operation.MACRO_READ)
        return MacroRead.model_validate(self._load(session, actor_user.org_id, macro_id))

    def create_macro(self, session: Session, actor_user: ActorUser, dto: MacroCreate) -> MacroRead:
        authorize(actor_user, Operation.MACRO_MANAGE)
        record_service.get_module(session, actor_user.org_id, dto.module_id)
        macro = CRMMacro(
            org_id=actor_user.org_id,
            module_id=dto.module_id,
            created_by=actor_user.user_id,
            created_by_role=actor_user.role.value,
            **dto.model_dump(mode="json", exclude={"module_id"}),
        )
        session.add(macro)
        session.flush()
        created = MacroRead.model_validate(macro)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(macro.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return created

    def update_macro(
        self,
        session: Session,
        actor_user: ActorUser,
        macro_id: uuid.UUID,
        dto: MacroUpdate,
    ) -> MacroRead:
        authorize(actor_user, Operation.MACRO_MANAGE)
        macro = self._load(session, actor_user.org_id, macro_id)
        before = MacroRead.model_validate(macro)
        merged = {
            **before.model_dump(include=set(MacroUpdate.model_fields)),
            **dto.model_dump(exclude_unset=True),
            "module_id": macro.module_id,
        }
        try:
            validated = MacroCreate.model_validate(merged)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=[error["msg"] for error in exc.errors()],
            )
        for key, value in validated.model_dump(mode="json", exclude={"module_id"}).items():
            setattr(macro, key, value)
        session.flush()
        updated = MacroRead.model_validate(macro)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(macro.id),
            action="update",
            before=before.model_dump(mode="json"),
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return updated

    def delete_macro(self, session: Session, actor_user: ActorUser, macro_id: uuid.UUID) -> None:
        authorize(actor_user, Operation.MACRO_MANAGE)
        macro = self._load(session, actor_user.org_id, macro_id)
        before = MacroRead.model_validate(macro).model_dump(mode="json")
        macro.deleted_at = utcnow()
        macro.is_enabled = False
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(macro.id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()

    def run_macro(
        self,
        session: Session,
        actor_user: ActorUser,
        macro_id: uuid.UUID,
        record_id: uuid.UUID,
    ) -> RunResultRead:
        # allowed_roles is the only gate for running a macro.
        macro = self._load(session, actor_user.org_id, macro_id)
        if actor_user.role.value not in (macro.allowed_roles or []):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role {actor_user.role.value} may not run this macro",
            )
        if not macro.is_enabled:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="macro is disabled")
        snapshot = record_service.load_snapshot(session, actor_user.org_id, record_id)
        if snapshot.module_id != macro.module_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="macro belongs to a different module",
            )
        logger.info(
            "automation.macro_started",
            extra={"macro_id": str(macro.id), "record_id": str(record_id), "org_id": actor_user.org_id},
        )
        result = self.engine.run_actions(
            session,
            snapshot,
            list(macro.actions or []),
            actor=actor_user,
            trigger="manual",
            source="macro",
            author_role=macro.created_by_role,
            macro=macro,
        )
        return result.to_read()

    def _load(self, session: Session, org_id: str, macro_id: uuid.UUID) -> CRMMacro:
        macro = session.scalar(
            select(CRMMacro).where(
                and_(CRMMacro.id == macro_id, CRMMacro.org_id == org_id, CRMMacro.deleted_at.is_(None))
            )
        )
        if macro is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="macro not found")
        return macro


macro_service = MacroService()
