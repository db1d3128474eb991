from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.blueprints.schemas import BlueprintRead, BlueprintUpsert
from stageflow.blueprints.service import blueprint_store
from stageflow.core.database import get_db
from stageflow.crm.api import get_current_user, http_error
from stageflow.crm.authz import ActorUser

router = APIRouter(prefix="/api/crm", tags=["crm.blueprints"])


@router.get("/modules/{module_id}/blueprint", response_model=BlueprintRead)
def get_blueprint(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BlueprintRead | JSONResponse:
    try:
        return blueprint_store.read(db, user, module_id)
    except HTTPException as exc:
        return http_error(request, exc, "crm_blueprint_get_failed")


@router.put("/modules/{module_id}/blueprint", response_model=BlueprintRead)
def upsert_blueprint(
    request: Request,
    module_id: uuid.UUID,
    dto: BlueprintUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BlueprintRead | JSONResponse:
    try:
        return blueprint_store.upsert(db, user, module_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "crm_blueprint_update_failed")
