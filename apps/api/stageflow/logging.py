from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from stageflow.context import get_correlation_id, get_workflow_depth

ERROR_FIELD_LIMIT = 500

# Structured ``extra`` keys that reach the JSON output; anything else is dropped.
_KNOWN_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        "route_group",
        "org_id",
        # records and transitions
        "record_id",
        "module_id",
        "from_stage",
        "to_stage",
        "outcome",
        "approval_id",
        "decision",
        # automation
        "workflow_id",
        "macro_id",
        "run_id",
        "trigger",
        "action_type",
        "runs",
        "job_id",
        "job_type",
        "status",
        "attempts",
        "event_type",
        "event_id",
        "reason",
        "error",
    }
)

_base_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    """Stamp the ambient correlation id and workflow depth on every record."""
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    record.workflow_depth = get_workflow_depth()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        depth = getattr(record, "workflow_depth", None)
        if depth is not None:
            payload["workflow_depth"] = depth

        fields = {key: value for key, value in vars(record).items() if key in _KNOWN_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:ERROR_FIELD_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    if getattr(root, "_stageflow_configured", False):
        return

    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())

    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    root._stageflow_configured = True  # type: ignore[attr-defined]
