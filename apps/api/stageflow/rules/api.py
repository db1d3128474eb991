from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.core.database import get_db
from stageflow.crm.api import get_current_user, http_error
from stageflow.crm.authz import ActorUser
from stageflow.rules.schemas import ValidationRuleCreate, ValidationRuleRead, ValidationRuleUpdate
from stageflow.rules.service import validation_rule_service

router = APIRouter(prefix="/api/crm", tags=["crm.validation_rules"])


@router.get("/validation-rules", response_model=list[ValidationRuleRead])
def list_validation_rules(
    request: Request,
    module_id: uuid.UUID | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ValidationRuleRead] | JSONResponse:
    try:
        return validation_rule_service.list_rules(db, user, module_id=module_id, trigger_type=trigger_type)
    except HTTPException as exc:
        return http_error(request, exc, "crm_validation_rule_list_failed")


@router.post("/validation-rules", response_model=ValidationRuleRead, status_code=status.HTTP_201_CREATED)
def create_validation_rule(
    request: Request,
    dto: ValidationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ValidationRuleRead | JSONResponse:
    try:
        return validation_rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "crm_validation_rule_create_failed")


@router.get("/validation-rules/{rule_id}", response_model=ValidationRuleRead)
def get_validation_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ValidationRuleRead | JSONResponse:
    try:
        return validation_rule_service.get_rule(db, user, rule_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_validation_rule_get_failed")


@router.patch("/validation-rules/{rule_id}", response_model=ValidationRuleRead)
def update_validation_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: ValidationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ValidationRuleRead | JSONResponse:
    try:
        return validation_rule_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "crm_validation_rule_update_failed")


@router.delete("/validation-rules/{rule_id}", response_model=None)
def delete_validation_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        validation_rule_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error(request, exc, "crm_validation_rule_delete_failed")
