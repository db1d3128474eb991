from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from fastapi import HTTPException, status


class Role(StrEnum):
    ADMIN = "crm_admin"
    MANAGER = "crm_manager"
    AGENT = "crm_agent"
    VIEWER = "crm_viewer"


class Operation(StrEnum):
    MODULE_READ = "module.read"
    MODULE_MANAGE = "module.manage"
    RECORD_READ = "record.read"
    RECORD_WRITE = "record.write"
    BLUEPRINT_MANAGE = "blueprint.manage"
    VALIDATION_RULE_MANAGE = "validation_rule.manage"
    TRANSITION_READ = "transition.read"
    TRANSITION_EXECUTE = "transition.execute"
    APPROVAL_READ = "approval.read"
    APPROVAL_REQUEST = "approval.request"
    APPROVAL_RESOLVE = "approval.resolve"
    APPROVAL_CANCEL = "approval.cancel"
    APPROVAL_PROCESS_MANAGE = "approval_process.manage"
    WORKFLOW_READ = "workflow.read"
    WORKFLOW_MANAGE = "workflow.manage"
    AUTOMATION_RUN = "automation.run"
    AUTOMATION_TEST = "automation.test"
    AUTOMATION_RETRY = "automation.retry"
    AUTOMATION_JOBS_MANAGE = "automation.jobs.manage"
    MACRO_READ = "macro.read"
    MACRO_MANAGE = "macro.manage"


_ALL_ROLES = frozenset(Role)
_STAFF = frozenset({Role.ADMIN, Role.MANAGER, Role.AGENT})
_LEADS = frozenset({Role.ADMIN, Role.MANAGER})
_ADMIN = frozenset({Role.ADMIN})

_GRANTS: dict[Operation, frozenset[Role]] = {
    Operation.MODULE_READ: _ALL_ROLES,
    Operation.MODULE_MANAGE: _ADMIN,
    Operation.RECORD_READ: _ALL_ROLES,
    Operation.RECORD_WRITE: _STAFF,
    Operation.BLUEPRINT_MANAGE: _ADMIN,
    Operation.VALIDATION_RULE_MANAGE: _ADMIN,
    Operation.TRANSITION_READ: _ALL_ROLES,
    Operation.TRANSITION_EXECUTE: _STAFF,
    Operation.APPROVAL_READ: _ALL_ROLES,
    Operation.APPROVAL_REQUEST: _STAFF,
    Operation.APPROVAL_RESOLVE: _STAFF,
    Operation.APPROVAL_CANCEL: _STAFF,
    Operation.APPROVAL_PROCESS_MANAGE: _ADMIN,
    Operation.WORKFLOW_READ: _LEADS,
    Operation.WORKFLOW_MANAGE: _LEADS,
    Operation.AUTOMATION_RUN: _LEADS,
    Operation.AUTOMATION_TEST: _LEADS,
    Operation.AUTOMATION_RETRY: _LEADS,
    Operation.AUTOMATION_JOBS_MANAGE: _ADMIN,
    Operation.MACRO_READ: _ALL_ROLES,
    Operation.MACRO_MANAGE: _LEADS,
}

AUTHORIZATION_TABLE: dict[tuple[Operation, Role], bool] = {
    (operation, role): role in _GRANTS.get(operation, frozenset())
    for operation in Operation
    for role in Role
}


@dataclass
class ActorUser:
    user_id: str
    org_id: str
    role: Role
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


SYSTEM_USER_ID = "system"


def system_actor(org_id: str, correlation_id: str | None = None) -> ActorUser:
    return ActorUser(user_id=SYSTEM_USER_ID, org_id=org_id, role=Role.ADMIN, correlation_id=correlation_id)


def is_allowed(role: Role, operation: Operation) -> bool:
    return AUTHORIZATION_TABLE.get((operation, role), False)


def authorize(actor_user: ActorUser, operation: Operation) -> None:
    if not is_allowed(actor_user.role, operation):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role {actor_user.role.value} may not perform {operation.value}",
        )


def parse_role(value: str) -> Role | None:
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None
