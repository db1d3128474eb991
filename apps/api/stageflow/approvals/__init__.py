from stageflow.approvals.models import CRMApprovalAction, CRMApprovalProcess, CRMApprovalRequest, CRMApprovalRule
from stageflow.approvals.schemas import (
    ApprovalCommand,
    ApprovalProcessCreate,
    ApprovalProcessRead,
    ApprovalRequestCreate,
    ApprovalRequestRead,
    ApprovalRuleCreate,
    ApprovalRuleRead,
    DeleteCommand,
    FieldUpdateCommand,
    StageChangeCommand,
    UpdateCommand,
)

__all__ = [
    "CRMApprovalProcess",
    "CRMApprovalRule",
    "CRMApprovalRequest",
    "CRMApprovalAction",
    "ApprovalCommand",
    "StageChangeCommand",
    "FieldUpdateCommand",
    "UpdateCommand",
    "DeleteCommand",
    "ApprovalProcessCreate",
    "ApprovalProcessRead",
    "ApprovalRuleCreate",
    "ApprovalRuleRead",
    "ApprovalRequestCreate",
    "ApprovalRequestRead",
]
