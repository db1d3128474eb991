from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.context import get_correlation_id
from stageflow.core.auth import AuthUser, get_current_user as get_auth_user
from stageflow.core.database import get_db
from stageflow.crm.authz import ActorUser, Role, parse_role
from stageflow.crm.lifecycle import record_lifecycle_service
from stageflow.crm.records import record_service
from stageflow.crm.schemas import (
    ModuleCreate,
    ModuleRead,
    RecordCreate,
    RecordMutationResult,
    RecordRead,
    RecordUpdate,
    StageHistoryRead,
)

router = APIRouter(prefix="/api/crm", tags=["crm.records"])

_ROLE_RANK = [Role.ADMIN, Role.MANAGER, Role.AGENT, Role.VIEWER]


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or code)
    else:
        message = str(detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    org_id = getattr(request.state, "org_id", None) or request.headers.get("x-org-id") or auth_user.org_id
    if not org_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-org-id header is required")

    roles = {role for role in (parse_role(item) for item in auth_user.roles) if role is not None}
    role = next((item for item in _ROLE_RANK if item in roles), None)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="no CRM role assigned")

    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(user_id=auth_user.sub, org_id=str(org_id), role=role, correlation_id=correlation_id)


@router.post("/modules", response_model=ModuleRead, status_code=status.HTTP_201_CREATED)
def create_module(
    request: Request,
    dto: ModuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleRead | JSONResponse:
    try:
        return record_service.create_module(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "crm_module_create_failed")


@router.get("/modules", response_model=list[ModuleRead])
def list_modules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ModuleRead] | JSONResponse:
    try:
        return record_service.list_modules(db, user)
    except HTTPException as exc:
        return http_error(request, exc, "crm_module_list_failed")


@router.get("/modules/{module_id}", response_model=ModuleRead)
def get_module(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleRead | JSONResponse:
    try:
        return record_service.read_module(db, user, module_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_module_get_failed")


@router.post("/records", response_model=RecordRead, status_code=status.HTTP_201_CREATED)
def create_record(
    request: Request,
    dto: RecordCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_lifecycle_service.create(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "crm_record_create_failed")


@router.get("/records/{record_id}", response_model=RecordRead)
def get_record(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_service.get_record(db, user, record_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_record_get_failed")


@router.patch("/records/{record_id}", response_model=RecordMutationResult)
def update_record(
    request: Request,
    record_id: uuid.UUID,
    dto: RecordUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordMutationResult | JSONResponse:
    try:
        return record_lifecycle_service.update(db, user, record_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "crm_record_update_failed")


@router.delete("/records/{record_id}", response_model=RecordMutationResult)
def delete_record(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordMutationResult | JSONResponse:
    try:
        return record_lifecycle_service.delete(db, user, record_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_record_delete_failed")


@router.get("/records/{record_id}/history", response_model=list[StageHistoryRead])
def list_stage_history(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        return record_service.list_stage_history(db, user, record_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_stage_history_failed")
