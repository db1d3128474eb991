from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from stageflow.crm.conditions import normalize_condition

RuleType = Literal["condition", "required_if", "format", "range", "comparison", "unique"]
RuleTrigger = Literal["field_change", "stage_transition", "record_create", "field_threshold"]
FormatKind = Literal["email", "phone", "url", "regex"]
ComparisonOp = Literal["eq", "neq", "gt", "gte", "lt", "lte"]

_FORMATS = {"email", "phone", "url", "regex"}
_COMPARISONS = {"eq", "neq", "gt", "gte", "lt", "lte"}


class ValidationRuleBase(BaseModel):
    rule_name: str = Field(min_length=1)
    rule_type: RuleType = "condition"
    trigger_type: RuleTrigger
    from_stage: str | None = None
    to_stage: str | None = None
    target_field: str | None = None
    condition: dict[str, Any] | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    error_message: str = Field(min_length=1)
    is_enabled: bool = True
    priority: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def validate_rule_shape(self) -> "ValidationRuleBase":
        self.condition = normalize_condition(self.condition)
        validate_rule_config(self.rule_type, self.target_field, self.condition, self.config)
        return self


class ValidationRuleCreate(ValidationRuleBase):
    module_id: UUID


class ValidationRuleUpdate(BaseModel):
    rule_name: str | None = Field(default=None, min_length=1)
    rule_type: RuleType | None = None
    trigger_type: RuleTrigger | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    target_field: str | None = None
    condition: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    error_message: str | None = Field(default=None, min_length=1)
    is_enabled: bool | None = None
    priority: int | None = Field(default=None, ge=0)


class ValidationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    rule_name: str
    rule_type: str
    trigger_type: str
    from_stage: str | None
    to_stage: str | None
    target_field: str | None
    condition: dict[str, Any] | None
    config: dict[str, Any]
    error_message: str
    is_enabled: bool
    priority: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime


def validate_rule_config(
    rule_type: str,
    target_field: str | None,
    condition: dict[str, Any] | None,
    config: dict[str, Any],
) -> None:
    if rule_type == "condition":
        if not condition:
            raise ValueError("condition rules need a condition")
        return

    if not target_field:
        raise ValueError(f"{rule_type} rules need a target_field")

    if rule_type == "required_if" and not condition:
        raise ValueError("required_if rules need a condition")

    if rule_type == "format":
        kind = config.get("format")
        if kind not in _FORMATS:
            raise ValueError("format must be one of email, phone, url, regex")
        if kind == "regex":
            pattern = config.get("pattern")
            if not isinstance(pattern, str) or not pattern:
                raise ValueError("regex format needs a pattern")
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid pattern: {exc}") from exc

    if rule_type == "range" and config.get("min") is None and config.get("max") is None:
        raise ValueError("range rules need min or max")

    if rule_type == "comparison":
        if not config.get("compare_field"):
            raise ValueError("comparison rules need compare_field")
        if config.get("operator") not in _COMPARISONS:
            raise ValueError("operator must be one of eq, neq, gt, gte, lt, lte")
