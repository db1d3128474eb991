from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from stageflow.crm.authz import Role


class TransitionDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_stage: str = Field(alias="from", min_length=1)
    to_stage: str = Field(alias="to", min_length=1)
    name: str | None = None
    required_fields: list[str] = Field(default_factory=list)
    requires_approval: bool = False
    require_reason: bool = False
    allowed_roles: list[Role] = Field(default_factory=list)


class BlueprintUpsert(BaseModel):
    stages: list[str] = Field(min_length=1)
    transitions: list[TransitionDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_graph(self) -> "BlueprintUpsert":
        if len(set(self.stages)) != len(self.stages):
            raise ValueError("stages must be unique")
        declared = set(self.stages)
        seen: set[tuple[str, str]] = set()
        for transition in self.transitions:
            unknown = [stage for stage in (transition.from_stage, transition.to_stage) if stage not in declared]
            if unknown:
                raise ValueError(f"transition references undeclared stage: {', '.join(unknown)}")
            if transition.from_stage == transition.to_stage:
                raise ValueError(f"transition {transition.from_stage} -> {transition.to_stage} is a self loop")
            edge = (transition.from_stage, transition.to_stage)
            if edge in seen:
                raise ValueError(f"duplicate transition {edge[0]} -> {edge[1]}")
            seen.add(edge)
        return self


class BlueprintRead(BaseModel):
    id: UUID
    module_id: UUID
    stages: list[str]
    transitions: list[dict[str, Any]]
    updated_by: str | None
    updated_at: datetime


class MissingField(BaseModel):
    field: str
    label: str


class AvailableTransition(BaseModel):
    from_stage: str | None
    to_stage: str
    name: str | None = None
    requires_approval: bool
    require_reason: bool
    required_fields: list[str]
    missing_fields: list[MissingField]
