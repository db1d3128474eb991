from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, field_validator


FieldDataType = Literal["text", "number", "bool", "date", "list"]

RecordScalar = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
RecordValue = Union[RecordScalar, list[RecordScalar], None]
RecordData = dict[Annotated[str, Field(min_length=1, max_length=64)], RecordValue]

SYSTEM_FIELDS = frozenset({"title", "owner_id"})
RESERVED_FIELDS = frozenset({"id", "stage", "module_id", "created_by", "org_id", "row_version"})


class ModuleFieldInput(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=r"^[a-z][a-z0-9_]*$")
    label: str = Field(min_length=1)
    data_type: FieldDataType = "text"


class ModuleFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    label: str
    data_type: str


class ModuleCreate(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=r"^[a-z][a-z0-9_]*$")
    name: str = Field(min_length=1)
    fields: list[ModuleFieldInput] = Field(default_factory=list)

    @field_validator("fields")
    @classmethod
    def validate_unique_keys(cls, value: list[ModuleFieldInput]) -> list[ModuleFieldInput]:
        keys = [item.key for item in value]
        if len(keys) != len(set(keys)):
            raise ValueError("field keys must be unique")
        reserved = [key for key in keys if key in RESERVED_FIELDS or key in SYSTEM_FIELDS]
        if reserved:
            raise ValueError(f"reserved field keys: {', '.join(sorted(reserved))}")
        return value


class ModuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    key: str
    name: str
    fields: list[ModuleFieldRead]
    created_at: datetime
    updated_at: datetime


class RecordCreate(BaseModel):
    module_id: UUID
    title: str | None = None
    stage: str | None = None
    owner_id: str | None = None
    data: RecordData = Field(default_factory=dict)
    source: Literal["api", "webform"] = "api"


class RecordUpdate(BaseModel):
    title: str | None = None
    owner_id: str | None = None
    data: RecordData = Field(default_factory=dict)
    row_version: int | None = Field(default=None, ge=1)


class RecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    module_id: UUID
    title: str | None
    stage: str | None
    owner_id: str | None
    created_by: str | None
    data: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    row_version: int


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    record_id: UUID
    blueprint_id: UUID | None
    from_stage: str | None
    to_stage: str
    reason: str | None
    transition_data: dict[str, Any]
    changed_by: str
    approval_id: UUID | None
    source: str
    created_at: datetime


class RecordMutationResult(BaseModel):
    success: bool
    outcome: Literal["updated", "deleted", "awaiting_approval"]
    record_id: UUID
    approval_id: UUID | None = None
    record: RecordRead | None = None
