from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from stageflow.context import get_correlation_id
from stageflow.models.audit import AuditLog

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    *,
    org_id: str | None = None,
    session: Session | None = None,
) -> dict[str, Any]:
    """Append an audit entry.

    When a session is given the entry is also staged as an ``AuditLog`` row so it
    commits or rolls back together with the mutation it describes.
    """
    resolved_correlation_id = correlation_id or get_correlation_id()
    entry = {
        "id": str(uuid.uuid4()),
        "org_id": org_id,
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": resolved_correlation_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    if session is not None:
        session.add(
            AuditLog(
                id=uuid.UUID(entry["id"]),
                org_id=org_id,
                actor_id=actor_user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before_json=before,
                after_json=after,
                correlation_id=resolved_correlation_id,
            )
        )
    audit_entries.append(entry)
    return entry
