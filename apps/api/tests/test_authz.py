import pytest
from fastapi import HTTPException

from stageflow.crm.authz import (
    AUTHORIZATION_TABLE,
    ActorUser,
    Operation,
    Role,
    authorize,
    is_allowed,
    parse_role,
    system_actor,
)


def test_table_covers_every_operation_and_role() -> None:
    assert len(AUTHORIZATION_TABLE) == len(Operation) * len(Role)


@pytest.mark.parametrize(
    ("operation", "allowed"),
    [
        (Operation.RECORD_READ, {Role.ADMIN, Role.MANAGER, Role.AGENT, Role.VIEWER}),
        (Operation.RECORD_WRITE, {Role.ADMIN, Role.MANAGER, Role.AGENT}),
        (Operation.BLUEPRINT_MANAGE, {Role.ADMIN}),
        (Operation.WORKFLOW_MANAGE, {Role.ADMIN, Role.MANAGER}),
        (Operation.AUTOMATION_JOBS_MANAGE, {Role.ADMIN}),
        (Operation.MACRO_MANAGE, {Role.ADMIN, Role.MANAGER}),
        (Operation.APPROVAL_RESOLVE, {Role.ADMIN, Role.MANAGER, Role.AGENT}),
    ],
)
def test_grants(operation: Operation, allowed: set[Role]) -> None:
    assert {role for role in Role if is_allowed(role, operation)} == allowed


def test_authorize_raises_forbidden() -> None:
    viewer = ActorUser(user_id="v-1", org_id="org-1", role=Role.VIEWER)
    authorize(viewer, Operation.TRANSITION_READ)
    with pytest.raises(HTTPException) as exc:
        authorize(viewer, Operation.TRANSITION_EXECUTE)
    assert exc.value.status_code == 403


def test_parse_role_and_system_actor() -> None:
    assert parse_role(" CRM_Manager ") == Role.MANAGER
    assert parse_role("finance.admin") is None
    actor = system_actor("org-9", "corr-1")
    assert actor.is_admin
    assert actor.user_id == "system"
    assert actor.correlation_id == "corr-1"
