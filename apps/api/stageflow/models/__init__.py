from stageflow.models.audit import AuditLog
from stageflow.approvals.models import CRMApprovalAction, CRMApprovalProcess, CRMApprovalRequest, CRMApprovalRule
from stageflow.automation.models import CRMAutomationRun, CRMEnrollmentDraft, CRMMacro, CRMSchedulerJob, CRMWorkflow
from stageflow.blueprints.models import CRMBlueprint
from stageflow.crm.models import (
	CRMActivity,
	CRMCadence,
	CRMCadenceEnrollment,
	CRMIdempotencyKey,
	CRMModule,
	CRMModuleField,
	CRMNote,
	CRMNotification,
	CRMRecord,
	CRMStageHistory,
	CRMTask,
)
from stageflow.rules.models import CRMValidationRule

__all__ = [
	"AuditLog",
	"CRMModule",
	"CRMModuleField",
	"CRMRecord",
	"CRMStageHistory",
	"CRMIdempotencyKey",
	"CRMTask",
	"CRMActivity",
	"CRMNote",
	"CRMNotification",
	"CRMCadence",
	"CRMCadenceEnrollment",
	"CRMBlueprint",
	"CRMValidationRule",
	"CRMApprovalProcess",
	"CRMApprovalRule",
	"CRMApprovalRequest",
	"CRMApprovalAction",
	"CRMWorkflow",
	"CRMMacro",
	"CRMAutomationRun",
	"CRMSchedulerJob",
	"CRMEnrollmentDraft",
]
