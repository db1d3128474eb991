from __future__ import annotations

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from stageflow.blueprints.schemas import AvailableTransition, MissingField
from stageflow.crm.schemas import RecordData, RecordRead

TransitionOutcome = Literal["committed", "allowed", "blocked", "awaiting_approval"]


class TransitionRequest(BaseModel):
    record_id: UUID
    to_stage: str = Field(min_length=1, max_length=64)
    reason: str | None = None
    payload: RecordData = Field(default_factory=dict)


class TransitionResult(BaseModel):
    success: bool
    outcome: TransitionOutcome
    record_id: UUID
    from_stage: str | None
    to_stage: str
    allowed: bool
    valid: bool
    requires_approval: bool
    requires_reason: bool
    missing_fields: list[MissingField] = Field(default_factory=list)
    validation_errors: list[dict[str, Any]] = Field(default_factory=list)
    approval_id: UUID | None = None
    error: str | None = None
    error_code: str | None = None
    record: RecordRead | None = None


class AvailableTransitionsResponse(BaseModel):
    record_id: UUID
    stage: str | None
    has_blueprint: bool
    transitions: list[AvailableTransition]
