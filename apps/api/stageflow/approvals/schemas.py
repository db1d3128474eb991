from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from stageflow.crm.conditions import normalize_condition
from stageflow.crm.schemas import RecordData

ApprovalStatus = Literal["pending", "approved", "rejected", "changes_requested", "cancelled"]
ProcessTrigger = Literal["stage_transition", "field_change", "record_create", "manual"]
RuleTrigger = Literal["stage_transition", "field_change", "field_threshold", "record_create", "record_delete"]
RequestTrigger = Literal["stage_transition", "field_change", "field_threshold", "record_create", "record_delete", "manual"]


class StageChangeCommand(BaseModel):
    version: Literal[1] = 1
    kind: Literal["stage_change"] = "stage_change"
    stage_from: str | None = None
    stage_to: str = Field(min_length=1)
    payload: RecordData = Field(default_factory=dict)
    reason: str | None = None
    blueprint_id: UUID | None = None


class FieldUpdateCommand(BaseModel):
    version: Literal[1] = 1
    kind: Literal["field_update"] = "field_update"
    changes: RecordData = Field(min_length=1)
    previous: dict[str, Any] = Field(default_factory=dict)


class UpdateCommand(BaseModel):
    version: Literal[1] = 1
    kind: Literal["update"] = "update"
    changes: RecordData = Field(min_length=1)
    previous: dict[str, Any] = Field(default_factory=dict)


class DeleteCommand(BaseModel):
    version: Literal[1] = 1
    kind: Literal["delete"] = "delete"


ApprovalCommand = Annotated[
    Union[StageChangeCommand, FieldUpdateCommand, UpdateCommand, DeleteCommand],
    Field(discriminator="kind"),
]
approval_command_adapter = TypeAdapter(ApprovalCommand)


class ApprovalStep(BaseModel):
    type: Literal["user", "role", "record_owner"]
    value: str | None = None
    require_comment: bool = False

    @model_validator(mode="after")
    def validate_value(self) -> "ApprovalStep":
        if self.type in {"user", "role"} and not self.value:
            raise ValueError(f"{self.type} steps need a value")
        return self


class ApprovalProcessCreate(BaseModel):
    module_id: UUID
    name: str = Field(min_length=1)
    description: str | None = None
    trigger_type: ProcessTrigger = "manual"
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    steps: list[ApprovalStep] = Field(min_length=1)
    is_enabled: bool = True


class ApprovalProcessUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger_type: ProcessTrigger | None = None
    trigger_config: dict[str, Any] | None = None
    steps: list[ApprovalStep] | None = Field(default=None, min_length=1)
    is_enabled: bool | None = None


class ApprovalProcessRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    name: str
    description: str | None
    trigger_type: str
    trigger_config: dict[str, Any]
    steps: list[dict[str, Any]]
    is_enabled: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class ApprovalRuleCreate(BaseModel):
    module_id: UUID
    process_id: UUID
    name: str = Field(min_length=1)
    trigger_type: RuleTrigger
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] | None = None
    priority: int = Field(default=100, ge=0)
    is_enabled: bool = True

    @model_validator(mode="after")
    def validate_rule(self) -> "ApprovalRuleCreate":
        self.conditions = normalize_condition(self.conditions)
        if self.trigger_type == "field_threshold":
            if not self.trigger_config.get("field") or self.trigger_config.get("threshold") is None:
                raise ValueError("field_threshold rules need trigger_config.field and trigger_config.threshold")
        return self


class ApprovalRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    trigger_config: dict[str, Any] | None = None
    conditions: dict[str, Any] | None = None
    priority: int | None = Field(default=None, ge=0)
    is_enabled: bool | None = None

    @model_validator(mode="after")
    def validate_conditions(self) -> "ApprovalRuleUpdate":
        if self.conditions is not None:
            self.conditions = normalize_condition(self.conditions)
        return self


class ApprovalRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    process_id: UUID
    name: str
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: dict[str, Any] | None
    priority: int
    is_enabled: bool
    created_at: datetime
    updated_at: datetime


class ApprovalRequestCreate(BaseModel):
    record_id: UUID
    process_id: UUID | None = None
    rule_id: UUID | None = None
    trigger_type: RequestTrigger = "manual"
    action_payload: ApprovalCommand
    context: dict[str, Any] = Field(default_factory=dict)


class ApprovalCreateResult(BaseModel):
    success: bool
    approval_id: UUID | None = None
    requires_approval: bool
    error: str | None = None


class ApprovalResolve(BaseModel):
    decision: Literal["approved", "rejected"]
    comment: str | None = None


class ApprovalStepAction(BaseModel):
    action: Literal["approve", "reject", "request_changes"]
    comment: str | None = None


class ApprovalCancel(BaseModel):
    comment: str | None = None


class ApprovalActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    step_index: int
    action: str
    actor_id: str
    comment: str | None
    created_at: datetime


class ApprovalRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    record_id: UUID
    process_id: UUID | None
    rule_id: UUID | None
    trigger_type: str
    action_payload: dict[str, Any]
    context: dict[str, Any]
    steps: list[dict[str, Any]]
    current_step: int
    status: ApprovalStatus
    requested_by: str
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_comment: str | None
    created_at: datetime
    row_version: int
    actions: list[ApprovalActionRead] = Field(default_factory=list)
