from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from stageflow.crm.authz import Role
from stageflow.crm.conditions import normalize_condition
from stageflow.crm.schemas import RecordData

WorkflowTrigger = Literal["on_create", "on_update", "on_stage_change", "scheduled", "webform"]
RunSource = Literal["workflow", "manual", "test", "retry", "scheduled", "macro"]
RunStatus = Literal["dry_run", "running", "succeeded", "failed", "skipped"]
ActionStatus = Literal["success", "failed", "skipped"]
JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]


def _action_id() -> str:
    return uuid.uuid4().hex[:12]


class UpdateFieldsConfig(BaseModel):
    fields: RecordData = Field(min_length=1)


class AssignOwnerConfig(BaseModel):
    user_id: str | None = None
    strategy: Literal["round_robin", "least_loaded", "fixed"] | None = None
    user_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_target(self) -> "AssignOwnerConfig":
        if not self.user_id and not self.strategy:
            raise ValueError("assign_owner needs user_id or strategy")
        if self.strategy and not self.user_ids:
            raise ValueError("assignment strategies need user_ids")
        return self


class CreateTaskConfig(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    due_in_days: int | None = Field(default=None, ge=0)
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    assigned_to: str | None = "owner"


class CreateActivityConfig(BaseModel):
    activity_type: Literal["call", "meeting", "email", "task"]
    subject: str | None = None
    body: str | None = None


class AddNoteConfig(BaseModel):
    body: str = Field(min_length=1)
    is_pinned: bool = False


class NotifyConfig(BaseModel):
    recipients: list[str] = Field(min_length=1)
    title: str = Field(min_length=1)
    body: str | None = None
    href: str | None = None


class MoveStageConfig(BaseModel):
    stage: str = Field(min_length=1)


class StartCadenceConfig(BaseModel):
    cadence_id: UUID


class StopCadenceConfig(BaseModel):
    cadence_id: UUID | None = None


class CreateEnrollmentDraftConfig(BaseModel):
    explicit: bool = False
    plan_id: str | None = None
    effective_date: date | None = None
    additional_data: RecordData = Field(default_factory=dict)


class _ActionBase(BaseModel):
    id: str = Field(default_factory=_action_id, min_length=1)
    order: int = 0


class UpdateFieldsAction(_ActionBase):
    type: Literal["update_fields"]
    config: UpdateFieldsConfig


class AssignOwnerAction(_ActionBase):
    type: Literal["assign_owner"]
    config: AssignOwnerConfig


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"]
    config: CreateTaskConfig


class CreateActivityAction(_ActionBase):
    type: Literal["create_activity"]
    config: CreateActivityConfig


class AddNoteAction(_ActionBase):
    type: Literal["add_note"]
    config: AddNoteConfig


class NotifyAction(_ActionBase):
    type: Literal["notify"]
    config: NotifyConfig


class MoveStageAction(_ActionBase):
    type: Literal["move_stage"]
    config: MoveStageConfig


class StartCadenceAction(_ActionBase):
    type: Literal["start_cadence"]
    config: StartCadenceConfig


class StopCadenceAction(_ActionBase):
    type: Literal["stop_cadence"]
    config: StopCadenceConfig = Field(default_factory=StopCadenceConfig)


class CreateEnrollmentDraftAction(_ActionBase):
    type: Literal["create_enrollment_draft"]
    config: CreateEnrollmentDraftConfig = Field(default_factory=CreateEnrollmentDraftConfig)


WorkflowAction = Annotated[
    Union[
        UpdateFieldsAction,
        AssignOwnerAction,
        CreateTaskAction,
        CreateActivityAction,
        AddNoteAction,
        NotifyAction,
        MoveStageAction,
        StartCadenceAction,
        StopCadenceAction,
        CreateEnrollmentDraftAction,
    ],
    Field(discriminator="type"),
]
workflow_action_adapter = TypeAdapter(WorkflowAction)


def _validate_actions(actions: list[WorkflowAction]) -> list[WorkflowAction]:
    ids = [item.id for item in actions]
    if len(ids) != len(set(ids)):
        raise ValueError("action ids must be unique")
    return actions


def _validate_trigger_config(trigger_type: str, config: dict[str, Any]) -> dict[str, Any]:
    if trigger_type == "on_update":
        watch = config.get("watch_fields", [])
        if not isinstance(watch, list) or not all(isinstance(item, str) for item in watch):
            raise ValueError("trigger_config.watch_fields must be a list of field keys")
    elif trigger_type == "on_stage_change":
        for key in ("from_stages", "to_stages"):
            value = config.get(key, [])
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ValueError(f"trigger_config.{key} must be a list of stages")
    elif trigger_type == "scheduled":
        interval = config.get("interval_minutes")
        if interval is not None and (not isinstance(interval, int) or isinstance(interval, bool) or interval < 1):
            raise ValueError("trigger_config.interval_minutes must be a positive integer")
    return config


class WorkflowCreate(BaseModel):
    module_id: UUID
    name: str = Field(min_length=1)
    description: str | None = None
    trigger_type: WorkflowTrigger
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] | None = None
    actions: list[WorkflowAction] = Field(min_length=1)
    is_enabled: bool = True
    priority: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def validate_workflow(self) -> "WorkflowCreate":
        self.conditions = normalize_condition(self.conditions)
        _validate_trigger_config(self.trigger_type, self.trigger_config)
        _validate_actions(self.actions)
        return self


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger_type: WorkflowTrigger | None = None
    trigger_config: dict[str, Any] | None = None
    conditions: dict[str, Any] | None = None
    actions: list[WorkflowAction] | None = Field(default=None, min_length=1)
    is_enabled: bool | None = None
    priority: int | None = Field(default=None, ge=0)


class WorkflowToggle(BaseModel):
    is_enabled: bool


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    name: str
    description: str | None
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: dict[str, Any] | None
    actions: list[dict[str, Any]]
    is_enabled: bool
    priority: int
    created_by: str | None
    created_by_role: str | None
    last_run_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class MacroCreate(BaseModel):
    module_id: UUID
    name: str = Field(min_length=1)
    description: str | None = None
    icon: str | None = None
    color: str | None = None
    actions: list[WorkflowAction] = Field(min_length=1)
    is_enabled: bool = True
    display_order: int = 0
    allowed_roles: list[Role] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_macro(self) -> "MacroCreate":
        _validate_actions(self.actions)
        return self


class MacroUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    icon: str | None = None
    color: str | None = None
    actions: list[WorkflowAction] | None = Field(default=None, min_length=1)
    is_enabled: bool | None = None
    display_order: int | None = None
    allowed_roles: list[Role] | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_macro(self) -> "MacroUpdate":
        if self.actions is not None:
            _validate_actions(self.actions)
        return self


class MacroRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    name: str
    description: str | None
    icon: str | None
    color: str | None
    actions: list[dict[str, Any]]
    is_enabled: bool
    display_order: int
    allowed_roles: list[str]
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class MacroRunRequest(BaseModel):
    record_id: UUID


class ActionResultRead(BaseModel):
    action_id: str
    type: str
    status: ActionStatus
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class RunResultRead(BaseModel):
    run_id: UUID | None
    workflow_id: UUID | None = None
    macro_id: UUID | None = None
    record_id: UUID | None = None
    source: RunSource
    status: RunStatus
    actions_executed: list[ActionResultRead] = Field(default_factory=list)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    idempotency_key: str | None = None


class RunWorkflowResponse(BaseModel):
    success: bool
    result: RunResultRead


class AutomationRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID | None
    macro_id: UUID | None
    record_id: UUID | None
    source: str
    trigger: str
    status: str
    actions_executed: list[dict[str, Any]]
    output: dict[str, Any]
    error: str | None
    idempotency_key: str | None
    retry_of: UUID | None
    event_id: str | None
    created_by: str | None
    started_at: datetime
    finished_at: datetime | None


class RunWorkflowRequest(BaseModel):
    workflow_id: UUID
    record_id: UUID
    dry_run: bool = False


class RetryRequest(BaseModel):
    mode: Literal["immediate", "scheduled"] = "immediate"
    delay_seconds: int = Field(default=0, ge=0, le=7 * 24 * 3600)


class RetryResult(BaseModel):
    mode: Literal["immediate", "scheduled"]
    idempotency_key: str
    result: RunResultRead | None = None
    job_id: UUID | None = None


class SchedulerJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    entity_type: str
    entity_id: UUID
    record_id: UUID | None
    run_at: datetime
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    payload: dict[str, Any]
    result: dict[str, Any] | None
    idempotency_key: str | None
    created_at: datetime
    finished_at: datetime | None


class JobProcessSummary(BaseModel):
    job_id: UUID
    job_type: str
    status: JobStatus
    attempts: int
    error: str | None = None
