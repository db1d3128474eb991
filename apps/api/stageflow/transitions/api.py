from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.core.database import get_db
from stageflow.crm.api import error_response, get_current_user, http_error
from stageflow.crm.authz import ActorUser
from stageflow.transitions.schemas import AvailableTransitionsResponse, TransitionRequest, TransitionResult
from stageflow.transitions.service import transition_executor

router = APIRouter(prefix="/api/crm", tags=["crm.transitions"])


@router.get("/transition", response_model=AvailableTransitionsResponse | TransitionResult)
def get_transitions(
    request: Request,
    record_id: uuid.UUID = Query(),
    to_stage: str | None = Query(default=None, min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AvailableTransitionsResponse | TransitionResult | JSONResponse:
    """Available transitions for a record, or the check of a single target stage when ``to_stage`` is given."""
    try:
        if to_stage is not None:
            return transition_executor.check(db, user, record_id, to_stage)
        return transition_executor.available_transitions(db, user, record_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_transition_list_failed")


@router.post("/transition", response_model=TransitionResult)
def execute_transition(
    request: Request,
    dto: TransitionRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        return transition_executor.execute(db, user, dto, idempotency_key=idempotency_key)
    except HTTPException as exc:
        return http_error(request, exc, "crm_transition_failed")


@router.post("/stage-change", response_model=TransitionResult)
def stage_change(
    request: Request,
    dto: TransitionRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        result = transition_executor.execute(
            db,
            user,
            dto,
            idempotency_key=idempotency_key,
            source="stage_change",
        )
    except HTTPException as exc:
        return http_error(request, exc, "crm_stage_change_failed")
    if result.outcome == "blocked":
        details = result.model_dump(mode="json")
        details["gating_required"] = True
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            code="gating_required",
            message=result.error or "transition is gated",
            details=details,
        )
    return result


@router.post("/check-transition", response_model=TransitionResult)
def check_transition(
    request: Request,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        return transition_executor.check(db, user, dto.record_id, dto.to_stage, payload=dto.payload, reason=dto.reason)
    except HTTPException as exc:
        return http_error(request, exc, "crm_check_transition_failed")


@router.get("/check-transition", response_model=TransitionResult)
def check_transition_query(
    request: Request,
    record_id: uuid.UUID = Query(),
    to_stage: str = Query(min_length=1),
    reason: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        return transition_executor.check(db, user, record_id, to_stage, reason=reason)
    except HTTPException as exc:
        return http_error(request, exc, "crm_check_transition_failed")
