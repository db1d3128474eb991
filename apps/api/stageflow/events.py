from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from stageflow.context import get_correlation_id, get_workflow_depth
from stageflow.core.events import event_bus

published_events: list[dict[str, Any]] = []


def build_envelope(
    event_type: str,
    *,
    org_id: str,
    actor_user_id: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "org_id": org_id,
        "version": 1,
        "payload": payload,
    }


def _stamp_context(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    depth = get_workflow_depth()
    if depth is not None:
        meta = dict(envelope["meta"]) if isinstance(envelope.get("meta"), dict) else {}
        meta.setdefault("workflow_depth", depth)
        envelope["meta"] = meta


def publish(envelope: dict[str, Any]) -> None:
    """Record the envelope and fan it out to in-process subscribers such as the automation dispatcher."""
    _stamp_context(envelope)
    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if event_type:
        event_bus.publish(str(event_type), envelope)
