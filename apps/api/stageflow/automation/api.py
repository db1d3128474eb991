from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stageflow.automation.macros import macro_service
from stageflow.automation.runs import automation_run_service
from stageflow.automation.scheduler import scheduler_service
from stageflow.automation.schemas import (
    AutomationRunRead,
    JobProcessSummary,
    MacroCreate,
    MacroRead,
    MacroRunRequest,
    MacroUpdate,
    RetryRequest,
    RetryResult,
    RunResultRead,
    RunWorkflowRequest,
    RunWorkflowResponse,
    SchedulerJobRead,
    WorkflowCreate,
    WorkflowRead,
    WorkflowToggle,
    WorkflowUpdate,
)
from stageflow.automation.workflows import workflow_service
from stageflow.core.database import get_db
from stageflow.crm.api import get_current_user, http_error
from stageflow.crm.authz import ActorUser, Operation, authorize

router = APIRouter(prefix="/api/automation", tags=["automation"])


def _run_response(result: RunResultRead) -> RunWorkflowResponse:
    return RunWorkflowResponse(success=result.status != "failed", result=result)


@router.post("/run", response_model=RunWorkflowResponse)
def run_workflow(
    request: Request,
    dto: RunWorkflowRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RunWorkflowResponse | JSONResponse:
    try:
        return _run_response(automation_run_service.run_workflow(db, user, dto))
    except HTTPException as exc:
        return http_error(request, exc, "automation_run_failed")


@router.get("/run", response_model=RunWorkflowResponse)
def test_workflow(
    request: Request,
    workflow_id: uuid.UUID = Query(),
    record_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RunWorkflowResponse | JSONResponse:
    try:
        return _run_response(automation_run_service.test_workflow(db, user, workflow_id, record_id))
    except HTTPException as exc:
        return http_error(request, exc, "automation_test_failed")


@router.get("/runs", response_model=list[AutomationRunRead])
def list_runs(
    request: Request,
    workflow_id: uuid.UUID | None = Query(default=None),
    record_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRunRead] | JSONResponse:
    try:
        return automation_run_service.list_runs(
            db,
            user,
            workflow_id=workflow_id,
            record_id=record_id,
            status_filter=status_filter,
            limit=limit,
        )
    except HTTPException as exc:
        return http_error(request, exc, "automation_run_list_failed")


@router.get("/runs/{run_id}", response_model=AutomationRunRead)
def get_run(
    request: Request,
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRunRead | JSONResponse:
    try:
        return automation_run_service.get_run(db, user, run_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_run_get_failed")


@router.post("/runs/{run_id}/retry", response_model=RetryResult)
def retry_run(
    request: Request,
    run_id: uuid.UUID,
    dto: RetryRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RetryResult | JSONResponse:
    try:
        return automation_run_service.retry_run(db, user, run_id, dto or RetryRequest())
    except HTTPException as exc:
        return http_error(request, exc, "automation_retry_failed")


@router.get("/workflows", response_model=list[WorkflowRead])
def list_workflows(
    request: Request,
    module_id: uuid.UUID | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        return workflow_service.list_workflows(db, user, module_id=module_id, trigger_type=trigger_type)
    except HTTPException as exc:
        return http_error(request, exc, "automation_workflow_list_failed")


@router.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.create_workflow(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "automation_workflow_create_failed")


@router.get("/workflows/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.get_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_workflow_get_failed")


@router.patch("/workflows/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.update_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "automation_workflow_update_failed")


@router.post("/workflows/{workflow_id}/toggle", response_model=WorkflowRead)
def toggle_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowToggle,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.toggle_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "automation_workflow_toggle_failed")


@router.delete("/workflows/{workflow_id}", response_model=None)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        workflow_service.delete_workflow(db, user, workflow_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error(request, exc, "automation_workflow_delete_failed")


@router.get("/macros", response_model=list[MacroRead])
def list_macros(
    request: Request,
    module_id: uuid.UUID | None = Query(default=None),
    include_all: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MacroRead] | JSONResponse:
    try:
        return macro_service.list_macros(db, user, module_id=module_id, include_all=include_all)
    except HTTPException as exc:
        return http_error(request, exc, "automation_macro_list_failed")


@router.post("/macros", response_model=MacroRead, status_code=status.HTTP_201_CREATED)
def create_macro(
    request: Request,
    dto: MacroCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MacroRead | JSONResponse:
    try:
        return macro_service.create_macro(db, user, dto)
    except HTTPException as exc:
        return http_error(request, exc, "automation_macro_create_failed")


@router.get("/macros/{macro_id}", response_model=MacroRead)
def get_macro(
    request: Request,
    macro_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MacroRead | JSONResponse:
    try:
        return macro_service.get_macro(db, user, macro_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_macro_get_failed")


@router.patch("/macros/{macro_id}", response_model=MacroRead)
def update_macro(
    request: Request,
    macro_id: uuid.UUID,
    dto: MacroUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MacroRead | JSONResponse:
    try:
        return macro_service.update_macro(db, user, macro_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "automation_macro_update_failed")


@router.delete("/macros/{macro_id}", response_model=None)
def delete_macro(
    request: Request,
    macro_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        macro_service.delete_macro(db, user, macro_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error(request, exc, "automation_macro_delete_failed")


@router.post("/macros/{macro_id}/run", response_model=RunWorkflowResponse)
def run_macro(
    request: Request,
    macro_id: uuid.UUID,
    dto: MacroRunRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RunWorkflowResponse | JSONResponse:
    try:
        return _run_response(macro_service.run_macro(db, user, macro_id, dto.record_id))
    except HTTPException as exc:
        return http_error(request, exc, "automation_macro_run_failed")


@router.get("/jobs", response_model=list[SchedulerJobRead])
def list_jobs(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SchedulerJobRead] | JSONResponse:
    try:
        return scheduler_service.list_jobs(db, user, status_filter=status_filter, limit=limit)
    except HTTPException as exc:
        return http_error(request, exc, "automation_job_list_failed")


@router.get("/jobs/{job_id}", response_model=SchedulerJobRead)
def get_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SchedulerJobRead | JSONResponse:
    try:
        return scheduler_service.get_job(db, user, job_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_job_get_failed")


@router.post("/jobs/process", response_model=list[JobProcessSummary])
def process_due_jobs(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[JobProcessSummary] | JSONResponse:
    try:
        authorize(user, Operation.AUTOMATION_JOBS_MANAGE)
        return scheduler_service.process_due_jobs(db, limit=limit, org_id=user.org_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_job_process_failed")


@router.post("/jobs/scheduled", response_model=list[uuid.UUID])
def enqueue_scheduled_workflows(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[uuid.UUID] | JSONResponse:
    try:
        authorize(user, Operation.AUTOMATION_JOBS_MANAGE)
        return scheduler_service.process_scheduled_workflows(db, org_id=user.org_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_job_schedule_failed")


@router.post("/jobs/{job_id}/cancel", response_model=SchedulerJobRead)
def cancel_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SchedulerJobRead | JSONResponse:
    try:
        return scheduler_service.cancel_job(db, user, job_id)
    except HTTPException as exc:
        return http_error(request, exc, "automation_job_cancel_failed")
