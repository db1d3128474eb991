from stageflow.automation.models import CRMAutomationRun, CRMEnrollmentDraft, CRMMacro, CRMSchedulerJob, CRMWorkflow
from stageflow.automation.schemas import (
    MacroCreate,
    MacroRead,
    RunResultRead,
    SchedulerJobRead,
    WorkflowAction,
    WorkflowCreate,
    WorkflowRead,
)

__all__ = [
    "CRMWorkflow",
    "CRMMacro",
    "CRMAutomationRun",
    "CRMSchedulerJob",
    "CRMEnrollmentDraft",
    "WorkflowAction",
    "WorkflowCreate",
    "WorkflowRead",
    "MacroCreate",
    "MacroRead",
    "RunResultRead",
    "SchedulerJobRead",
]
