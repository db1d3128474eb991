from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from email_validator import EmailNotValidError, validate_email
from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.crm.authz import ActorUser, Operation, authorize
from stageflow.crm.conditions import condition_evaluator, is_empty_value, normalize_compare_value
from stageflow.crm.models import CRMRecord, utcnow
from stageflow.crm.records import record_service
from stageflow.metrics import observe_validation_failure
from stageflow.rules.models import CRMValidationRule
from stageflow.rules.schemas import (
    ValidationRuleCreate,
    ValidationRuleRead,
    ValidationRuleUpdate,
)

logger = logging.getLogger("stageflow.transitions")

_PHONE_RE = re.compile(r"^\+?[0-9()\-\s.]{7,20}$")
_URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)


@dataclass(slots=True)
class RuleViolation:
    field: str | None
    message: str
    rule_name: str
    rule_type: str
    rule_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "message": self.message,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type,
            "rule_id": self.rule_id,
        }


@dataclass(slots=True)
class RuleEvaluation:
    valid: bool = True
    errors: list[RuleViolation] = field(default_factory=list)
    passed_rules: list[str] = field(default_factory=list)
    skipped_rules: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [item.to_dict() for item in self.errors],
            "passed_rules": list(self.passed_rules),
            "skipped_rules": list(self.skipped_rules),
        }


class StageValidationRuleEngine:
    """Evaluates every applicable rule and reports all failures together."""

    def applicable_rules(
        self,
        session: Session,
        org_id: str,
        module_id: uuid.UUID,
        trigger_type: str,
        *,
        from_stage: str | None = None,
        to_stage: str | None = None,
        changed_fields: set[str] | None = None,
    ) -> list[CRMValidationRule]:
        triggers = {trigger_type}
        if trigger_type == "field_change":
            triggers.add("field_threshold")
        rows = session.scalars(
            select(CRMValidationRule)
            .where(
                and_(
                    CRMValidationRule.org_id == org_id,
                    CRMValidationRule.module_id == module_id,
                    CRMValidationRule.trigger_type.in_(triggers),
                    CRMValidationRule.is_enabled.is_(True),
                    CRMValidationRule.deleted_at.is_(None),
                )
            )
            .order_by(CRMValidationRule.priority.asc(), CRMValidationRule.created_at.asc())
        ).all()

        applicable: list[CRMValidationRule] = []
        for rule in rows:
            if trigger_type == "stage_transition":
                if not _stage_matches(rule.from_stage, from_stage) or not _stage_matches(rule.to_stage, to_stage):
                    continue
            if rule.trigger_type == "field_threshold" or (trigger_type == "field_change" and rule.target_field):
                if changed_fields is not None and rule.target_field not in changed_fields:
                    continue
            applicable.append(rule)
        return applicable

    def evaluate(
        self,
        session: Session,
        context: dict[str, Any],
        rules: list[CRMValidationRule],
        *,
        previous: dict[str, Any] | None = None,
    ) -> RuleEvaluation:
        result = RuleEvaluation()
        for rule in rules:
            outcome = self._evaluate_rule(session, rule, context, previous)
            if outcome is None:
                result.skipped_rules.append(rule.rule_name)
            elif outcome:
                result.passed_rules.append(rule.rule_name)
            else:
                result.errors.append(
                    RuleViolation(
                        field=rule.target_field,
                        message=rule.error_message,
                        rule_name=rule.rule_name,
                        rule_type=rule.rule_type,
                        rule_id=str(rule.id),
                    )
                )
                observe_validation_failure(rule.rule_type)
        result.valid = not result.errors
        if result.errors:
            logger.info(
                "validation.rules_failed",
                extra={
                    "record_id": context.get("id"),
                    "module_id": context.get("module_id"),
                    "reason": ",".join(item.rule_name for item in result.errors),
                },
            )
        return result

    def validate(
        self,
        session: Session,
        org_id: str,
        module_id: uuid.UUID,
        trigger_type: str,
        context: dict[str, Any],
        *,
        previous: dict[str, Any] | None = None,
        from_stage: str | None = None,
        to_stage: str | None = None,
        changed_fields: set[str] | None = None,
    ) -> RuleEvaluation:
        rules = self.applicable_rules(
            session,
            org_id,
            module_id,
            trigger_type,
            from_stage=from_stage,
            to_stage=to_stage,
            changed_fields=changed_fields,
        )
        if not rules:
            return RuleEvaluation()
        return self.evaluate(session, context, rules, previous=previous)

    def _evaluate_rule(
        self,
        session: Session,
        rule: CRMValidationRule,
        context: dict[str, Any],
        previous: dict[str, Any] | None,
    ) -> bool | None:
        guard_holds = condition_evaluator.matches(rule.condition, context, previous)
        if rule.rule_type == "condition":
            return guard_holds
        if not guard_holds:
            return None

        value = context.get(rule.target_field) if rule.target_field else None
        config = rule.config or {}

        if rule.rule_type == "required_if":
            return not is_empty_value(value)
        if rule.rule_type == "format":
            return _check_format(value, config)
        if rule.rule_type == "range":
            return _check_range(value, config)
        if rule.rule_type == "comparison":
            return _check_comparison(value, context.get(str(config.get("compare_field"))), str(config.get("operator")))
        if rule.rule_type == "unique":
            return self._check_unique(session, rule, context, value)
        return None

    def _check_unique(
        self,
        session: Session,
        rule: CRMValidationRule,
        context: dict[str, Any],
        value: Any,
    ) -> bool:
        if is_empty_value(value):
            return True
        record_id = context.get("id")
        conditions = [
            CRMRecord.org_id == rule.org_id,
            CRMRecord.module_id == rule.module_id,
            CRMRecord.deleted_at.is_(None),
        ]
        if record_id:
            conditions.append(CRMRecord.id != uuid.UUID(str(record_id)))
        target = normalize_compare_value(value)
        for data in session.scalars(select(CRMRecord.data).where(and_(*conditions))):
            existing = (data or {}).get(rule.target_field)
            if not is_empty_value(existing) and normalize_compare_value(existing) == target:
                return False
        return True


def _stage_matches(expected: str | None, actual: str | None) -> bool:
    if expected in (None, "", "*"):
        return True
    return expected == actual


def _check_format(value: Any, config: dict[str, Any]) -> bool:
    if is_empty_value(value):
        return True
    if not isinstance(value, str):
        return False
    kind = config.get("format")
    if kind == "email":
        try:
            validate_email(value, check_deliverability=False)
        except EmailNotValidError:
            return False
        return True
    if kind == "phone":
        return bool(_PHONE_RE.match(value))
    if kind == "url":
        return bool(_URL_RE.match(value))
    if kind == "regex":
        return re.fullmatch(str(config.get("pattern", "")), value) is not None
    return False


def _check_range(value: Any, config: dict[str, Any]) -> bool:
    if is_empty_value(value):
        return True
    current = normalize_compare_value(value)
    lower = normalize_compare_value(config.get("min"))
    upper = normalize_compare_value(config.get("max"))
    try:
        if lower is not None:
            if config.get("exclusive_min") and not current > lower:
                return False
            if not current >= lower:
                return False
        if upper is not None:
            if config.get("exclusive_max") and not current < upper:
                return False
            if not current <= upper:
                return False
    except TypeError:
        return False
    return True


def _check_comparison(left: Any, right: Any, operator: str) -> bool:
    if is_empty_value(left) or is_empty_value(right):
        return True
    left = normalize_compare_value(left)
    right = normalize_compare_value(right)
    try:
        if operator == "eq":
            return left == right
        if operator == "neq":
            return left != right
        if operator == "gt":
            return left > right
        if operator == "gte":
            return left >= right
        if operator == "lt":
            return left < right
        if operator == "lte":
            return left <= right
    except TypeError:
        return False
    return False


class ValidationRuleService:
    entity_type = "crm_validation_rule"

    def list_rules(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        module_id: uuid.UUID | None = None,
        trigger_type: str | None = None,
    ) -> list[ValidationRuleRead]:
        authorize(actor_user, Operation.MODULE_READ)
        conditions = [CRMValidationRule.org_id == actor_user.org_id, CRMValidationRule.deleted_at.is_(None)]
        if module_id is not None:
            conditions.append(CRMValidationRule.module_id == module_id)
        if trigger_type is not None:
            conditions.append(CRMValidationRule.trigger_type == trigger_type)
        rows = session.scalars(
            select(CRMValidationRule)
            .where(and_(*conditions))
            .order_by(CRMValidationRule.priority.asc(), CRMValidationRule.created_at.asc())
        ).all()
        return [ValidationRuleRead.model_validate(row) for row in rows]

    def get_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> ValidationRuleRead:
        authorize(actor_user, Operation.MODULE_READ)
        return ValidationRuleRead.model_validate(self._load(session, actor_user.org_id, rule_id))

    def create_rule(self, session: Session, actor_user: ActorUser, dto: ValidationRuleCreate) -> ValidationRuleRead:
        authorize(actor_user, Operation.VALIDATION_RULE_MANAGE)
        record_service.get_module(session, actor_user.org_id, dto.module_id)
        rule = CRMValidationRule(
            org_id=actor_user.org_id,
            created_by=actor_user.user_id,
            **dto.model_dump(),
        )
        session.add(rule)
        session.flush()
        created = ValidationRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return created

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: ValidationRuleUpdate,
    ) -> ValidationRuleRead:
        authorize(actor_user, Operation.VALIDATION_RULE_MANAGE)
        rule = self._load(session, actor_user.org_id, rule_id)
        before = ValidationRuleRead.model_validate(rule)
        merged = {
            **before.model_dump(include=set(ValidationRuleUpdate.model_fields)),
            **dto.model_dump(exclude_unset=True),
            "module_id": rule.module_id,
        }
        try:
            validated = ValidationRuleCreate.model_validate(merged)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=[error["msg"] for error in exc.errors()],
            )
        for key, value in validated.model_dump(exclude={"module_id"}).items():
            setattr(rule, key, value)
        session.flush()
        updated = ValidationRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="update",
            before=before.model_dump(mode="json"),
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()
        return updated

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        authorize(actor_user, Operation.VALIDATION_RULE_MANAGE)
        rule = self._load(session, actor_user.org_id, rule_id)
        before = ValidationRuleRead.model_validate(rule).model_dump(mode="json")
        rule.deleted_at = utcnow()
        rule.is_enabled = False
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            org_id=actor_user.org_id,
            session=session,
        )
        session.commit()

    def _load(self, session: Session, org_id: str, rule_id: uuid.UUID) -> CRMValidationRule:
        rule = session.scalar(
            select(CRMValidationRule).where(
                and_(
                    CRMValidationRule.id == rule_id,
                    CRMValidationRule.org_id == org_id,
                    CRMValidationRule.deleted_at.is_(None),
                )
            )
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="validation rule not found")
        return rule


rule_engine = StageValidationRuleEngine()
validation_rule_service = ValidationRuleService()
