from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow.approvals.schemas import StageChangeCommand
from stageflow.approvals.service import ApprovalMatch, approval_service, check_approval_required
from stageflow.blueprints.service import (
    Blueprint,
    TransitionCheck,
    blueprint_store,
    field_labels,
    transition_validator,
)
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.models import CRMIdempotencyKey
from stageflow.crm.records import RecordSnapshot, publish_all, record_service
from stageflow.crm.schemas import RecordRead
from stageflow.metrics import observe_transition
from stageflow.rules.service import RuleEvaluation, rule_engine
from stageflow.transitions.schemas import AvailableTransitionsResponse, TransitionRequest, TransitionResult

logger = logging.getLogger("stageflow.transitions")
tracer = trace.get_tracer("stageflow.transitions")


@dataclass(slots=True)
class TransitionEvaluation:
    snapshot: RecordSnapshot
    to_stage: str
    payload: dict[str, Any]
    blueprint: Blueprint | None
    check: TransitionCheck
    rules: RuleEvaluation
    approval_match: ApprovalMatch | None

    @property
    def requires_approval(self) -> bool:
        return self.check.requires_approval or self.approval_match is not None

    @property
    def blocked(self) -> bool:
        return (
            not self.check.allowed
            or bool(self.check.missing_fields)
            or not self.rules.valid
            or self.check.requires_reason
        )

    def result(self, outcome: str, **extra: Any) -> TransitionResult:
        error = self.check.error
        error_code = self.check.error_code
        if error is None and self.blocked:
            error_code = "transition_blocked"
            error = "transition is blocked until the listed requirements are met"
        return TransitionResult(
            success=outcome in {"committed", "allowed", "awaiting_approval"},
            outcome=outcome,
            record_id=self.snapshot.id,
            from_stage=self.snapshot.stage,
            to_stage=self.to_stage,
            allowed=self.check.allowed,
            valid=self.check.valid and self.rules.valid,
            requires_approval=self.requires_approval,
            requires_reason=self.check.requires_reason,
            missing_fields=list(self.check.missing_fields),
            validation_errors=[item.to_dict() for item in self.rules.errors],
            error=error,
            error_code=error_code,
            **extra,
        )


class TransitionExecutor:
    def evaluate(
        self,
        session: Session,
        actor_user: ActorUser,
        snapshot: RecordSnapshot,
        to_stage: str,
        *,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> TransitionEvaluation:
        """Run blueprint, required-field, rule and approval checks without writing anything."""
        module = record_service.get_module(session, snapshot.org_id, snapshot.module_id)
        cleaned = record_service.validate_data(module, dict(payload or {}))
        blueprint = blueprint_store.get(session, snapshot.org_id, snapshot.module_id)

        if snapshot.stage == to_stage:
            check = TransitionCheck(
                allowed=False,
                valid=False,
                error=f"record is already in stage {to_stage}",
                error_code="invalid_transition",
            )
        else:
            check = transition_validator.validate(
                blueprint,
                snapshot,
                to_stage,
                role=actor_user.role,
                pending=cleaned,
                reason=reason,
                labels=field_labels(module),
            )

        rules = RuleEvaluation()
        approval_match: ApprovalMatch | None = None
        if check.allowed:
            context = snapshot.context(cleaned)
            previous = snapshot.context()
            rules = rule_engine.validate(
                session,
                snapshot.org_id,
                snapshot.module_id,
                "stage_transition",
                context,
                previous=previous,
                from_stage=snapshot.stage,
                to_stage=to_stage,
            )
            approval_match = check_approval_required(
                session,
                snapshot.org_id,
                snapshot.module_id,
                "stage_transition",
                context,
                previous=previous,
                stage_from=snapshot.stage,
                stage_to=to_stage,
            )
        return TransitionEvaluation(
            snapshot=snapshot,
            to_stage=to_stage,
            payload=cleaned,
            blueprint=blueprint,
            check=check,
            rules=rules,
            approval_match=approval_match,
        )

    def check(
        self,
        session: Session,
        actor_user: ActorUser,
        record_id: uuid.UUID,
        to_stage: str,
        *,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        authorize(actor_user, Operation.TRANSITION_READ)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, record_id)
        evaluation = self.evaluate(session, actor_user, snapshot, to_stage, payload=payload, reason=reason)
        if evaluation.blocked:
            return evaluation.result("blocked")
        return evaluation.result("awaiting_approval" if evaluation.requires_approval else "allowed")

    def available_transitions(
        self,
        session: Session,
        actor_user: ActorUser,
        record_id: uuid.UUID,
    ) -> AvailableTransitionsResponse:
        authorize(actor_user, Operation.TRANSITION_READ)
        snapshot = record_service.load_snapshot(session, actor_user.org_id, record_id)
        module = record_service.get_module(session, snapshot.org_id, snapshot.module_id)
        blueprint = blueprint_store.get(session, snapshot.org_id, snapshot.module_id)
        return AvailableTransitionsResponse(
            record_id=snapshot.id,
            stage=snapshot.stage,
            has_blueprint=blueprint is not None,
            transitions=transition_validator.available_transitions(
                blueprint,
                snapshot,
                actor_user.role,
                field_labels(module),
            ),
        )

    def execute(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: TransitionRequest,
        *,
        idempotency_key: str | None = None,
        source: str = "transition",
    ) -> TransitionResult:
        authorize(actor_user, Operation.TRANSITION_EXECUTE)
        endpoint = f"stageflow.transition:{dto.record_id}"
        request_hash = self._request_hash(dto.model_dump(mode="json"))
        stored = self._load_idempotent(session, actor_user.org_id, endpoint, idempotency_key, request_hash)
        if stored is not None:
            return stored

        with tracer.start_as_current_span("stageflow.transition.execute") as span:
            span.set_attribute("stageflow.record_id", str(dto.record_id))
            span.set_attribute("stageflow.to_stage", dto.to_stage)
            snapshot = record_service.load_snapshot(session, actor_user.org_id, dto.record_id)
            evaluation = self.evaluate(
                session,
                actor_user,
                snapshot,
                dto.to_stage,
                payload=dto.payload,
                reason=dto.reason,
            )

            if evaluation.blocked:
                outcome = "invalid" if not evaluation.check.allowed else "blocked"
                span.set_attribute("stageflow.outcome", outcome)
                observe_transition(outcome)
                logger.info(
                    "transition.blocked",
                    extra={
                        "record_id": str(snapshot.id),
                        "from_stage": snapshot.stage,
                        "to_stage": dto.to_stage,
                        "reason": evaluation.check.error_code or "transition_blocked",
                        "org_id": snapshot.org_id,
                    },
                )
                current = record_service.load_record(session, snapshot.org_id, snapshot.id)
                return evaluation.result("blocked", record=RecordRead.model_validate(current))

            if evaluation.requires_approval:
                command = StageChangeCommand(
                    stage_from=snapshot.stage,
                    stage_to=dto.to_stage,
                    payload=evaluation.payload,
                    reason=dto.reason,
                    blueprint_id=evaluation.blueprint.id if evaluation.blueprint else None,
                )
                request, envelopes = approval_service.stage_request(
                    session,
                    actor_user,
                    snapshot,
                    trigger_type="stage_transition",
                    command=command,
                    context={"source": source, "reason": dto.reason},
                    match=evaluation.approval_match,
                )
                result = evaluation.result("awaiting_approval", approval_id=request.id)
                self._store_idempotent(session, actor_user.org_id, endpoint, idempotency_key, request_hash, result)
                session.commit()
                publish_all(envelopes)
                span.set_attribute("stageflow.outcome", "awaiting_approval")
                observe_transition("awaiting_approval")
                logger.info(
                    "transition.awaiting_approval",
                    extra={
                        "record_id": str(snapshot.id),
                        "from_stage": snapshot.stage,
                        "to_stage": dto.to_stage,
                        "approval_id": str(request.id),
                        "org_id": snapshot.org_id,
                    },
                )
                return result

            try:
                updated, envelope = record_service.commit_stage_change(
                    session,
                    actor_user,
                    snapshot,
                    dto.to_stage,
                    payload=evaluation.payload,
                    reason=dto.reason,
                    blueprint_id=evaluation.blueprint.id if evaluation.blueprint else None,
                    source=source,
                )
            except HTTPException:
                session.rollback()
                span.set_attribute("stageflow.outcome", "conflict")
                observe_transition("conflict")
                logger.warning(
                    "transition.conflict",
                    extra={
                        "record_id": str(snapshot.id),
                        "from_stage": snapshot.stage,
                        "to_stage": dto.to_stage,
                        "org_id": snapshot.org_id,
                    },
                )
                raise

            result = evaluation.result("committed", record=RecordRead.model_validate(updated))
            self._store_idempotent(session, actor_user.org_id, endpoint, idempotency_key, request_hash, result)
            session.commit()
            span.set_attribute("stageflow.outcome", "committed")
            observe_transition("committed")
            logger.info(
                "transition.committed",
                extra={
                    "record_id": str(snapshot.id),
                    "from_stage": snapshot.stage,
                    "to_stage": dto.to_stage,
                    "org_id": snapshot.org_id,
                },
            )

        # Dispatch sees the committed stage; subscriber failures never reach the caller.
        publish_all([envelope])
        return result

    def _request_hash(self, payload: dict[str, Any]) -> str:
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    def _load_idempotent(
        self,
        session: Session,
        org_id: str,
        endpoint: str,
        key: str | None,
        request_hash: str,
    ) -> TransitionResult | None:
        if not key:
            return None
        stored = session.scalar(
            select(CRMIdempotencyKey).where(
                and_(
                    CRMIdempotencyKey.org_id == org_id,
                    CRMIdempotencyKey.endpoint == endpoint,
                    CRMIdempotencyKey.key == key,
                )
            )
        )
        if stored is None:
            return None
        if stored.request_hash != request_hash:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency key payload mismatch")
        return TransitionResult.model_validate(json.loads(stored.response_json))

    def _store_idempotent(
        self,
        session: Session,
        org_id: str,
        endpoint: str,
        key: str | None,
        request_hash: str,
        response: TransitionResult,
    ) -> None:
        if not key:
            return
        session.add(
            CRMIdempotencyKey(
                org_id=org_id,
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=response.model_dump_json(),
            )
        )


transition_executor = TransitionExecutor()
