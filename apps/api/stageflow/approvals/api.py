from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.approvals.schemas import (
    ApprovalCancel,
    ApprovalCreateResult,
    ApprovalProcessCreate,
    ApprovalProcessRead,
    ApprovalProcessUpdate,
    ApprovalRequestCreate,
    ApprovalRequestRead,
    ApprovalResolve,
    ApprovalRuleCreate,
    ApprovalRuleRead,
    ApprovalRuleUpdate,
    ApprovalStepAction,
)
from stageflow.approvals.service import approval_service
from stageflow.core.database import get_db
from stageflow.crm.api import get_current_user, http_error
from stageflow.crm.authz import ActorUser

router = APIRouter(prefix="/api/approvals", tags=["approvals"])


@router.post("/request", response_model=ApprovalCreateResult)
def create_approval_request(
    request: Request,
    dto: ApprovalRequestCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalCreateResult | JSONResponse:
    try:
        return approval_service.create_approval_request(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "approval_request_failed")


@router.get("/pending", response_model=list[ApprovalRequestRead])
def list_pending_approvals(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ApprovalRequestRead] | JSONResponse:
    try:
        return approval_service.list_pending(db, user)
    except HTTPException as exc:
        return http_error(request, exc, "approval_list_failed")


@router.get("/records/{record_id}/pending", response_model=ApprovalRequestRead | None)
def get_pending_for_record(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRequestRead | None | JSONResponse:
    try:
        return approval_service.get_pending_for_record(db, user, record_id)
    except HTTPException as exc:
        return http_error(request, exc, "approval_get_failed")


@router.get("/requests/{approval_id}", response_model=ApprovalRequestRead)
def get_approval_request(
    request: Request,
    approval_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRequestRead | JSONResponse:
    try:
        return approval_service.get_request(db, user, approval_id)
    except HTTPException as exc:
        return http_error(request, exc, "approval_get_failed")


@router.post("/requests/{approval_id}/actions", response_model=ApprovalRequestRead)
def act_on_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: ApprovalStepAction,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRequestRead | JSONResponse:
    try:
        return approval_service.act(db, user, approval_id, dto.action, dto.comment)
    except HTTPException as exc:
        return http_error(request, exc, "approval_action_failed")


@router.post("/requests/{approval_id}/resolve", response_model=ApprovalRequestRead)
def resolve_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: ApprovalResolve,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRequestRead | JSONResponse:
    try:
        return approval_service.resolve(db, user, approval_id, dto.decision, dto.comment)
    except HTTPException as exc:
        return http_error(request, exc, "approval_resolve_failed")


@router.post("/requests/{approval_id}/cancel", response_model=ApprovalRequestRead)
def cancel_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: ApprovalCancel,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRequestRead | JSONResponse:
    try:
        return approval_service.cancel(db, user, approval_id, dto.comment)
    except HTTPException as exc:
        return http_error(request, exc, "approval_cancel_failed")


@router.get("/processes", response_model=list[ApprovalProcessRead])
def list_approval_processes(
    request: Request,
    module_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ApprovalProcessRead] | JSONResponse:
    try:
        return approval_service.list_processes(db, user, module_id)
    except HTTPException as exc:
        return http_error(request, exc, "approval_process_list_failed")


@router.post("/processes", response_model=ApprovalProcessRead, status_code=status.HTTP_201_CREATED)
def create_approval_process(
    request: Request,
    dto: ApprovalProcessCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalProcessRead | JSONResponse:
    try:
        return approval_service.create_process(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "approval_process_create_failed")


@router.patch("/processes/{process_id}", response_model=ApprovalProcessRead)
def update_approval_process(
    request: Request,
    process_id: uuid.UUID,
    dto: ApprovalProcessUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalProcessRead | JSONResponse:
    try:
        return approval_service.update_process(db, user, process_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "approval_process_update_failed")


@router.delete("/processes/{process_id}", response_model=None)
def delete_approval_process(
    request: Request,
    process_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        approval_service.delete_process(db, user, process_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error(request, exc, "approval_process_delete_failed")


@router.get("/rules", response_model=list[ApprovalRuleRead])
def list_approval_rules(
    request: Request,
    module_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ApprovalRuleRead] | JSONResponse:
    try:
        return approval_service.list_rules(db, user, module_id)
    except HTTPException as exc:
        return http_error(request, exc, "approval_rule_list_failed")


@router.post("/rules", response_model=ApprovalRuleRead, status_code=status.HTTP_201_CREATED)
def create_approval_rule(
    request: Request,
    dto: ApprovalRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRuleRead | JSONResponse:
    try:
        return approval_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "approval_rule_create_failed")


@router.patch("/rules/{rule_id}", response_model=ApprovalRuleRead)
def update_approval_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: ApprovalRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalRuleRead | JSONResponse:
    try:
        return approval_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "approval_rule_update_failed")


@router.delete("/rules/{rule_id}", response_model=None)
def delete_approval_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        approval_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error(request, exc, "approval_rule_delete_failed")
