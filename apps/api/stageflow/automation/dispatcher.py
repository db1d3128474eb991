from __future__ import annotations

import contextvars
import logging
import threading
import uuid
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager, contextmanager
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.engine import RunResult, WorkflowEngine, workflow_engine
from stageflow.context import correlation_scope, workflow_depth_scope
from stageflow.core.config import get_settings
from stageflow.core.database import SessionLocal
from stageflow.core.events import InternalEvent
from stageflow.crm.authz import SYSTEM_USER_ID, ActorUser, Role
from stageflow.crm.records import (
    RECORD_CREATED_EVENT,
    RECORD_UPDATED_EVENT,
    STAGE_CHANGED_EVENT,
    RecordSnapshot,
    record_service,
)
from stageflow.metrics import observe_dispatch_failure, observe_guardrail_block

logger = logging.getLogger("stageflow.automation")

EVENT_TRIGGERS = {
    RECORD_CREATED_EVENT: "on_create",
    RECORD_UPDATED_EVENT: "on_update",
    STAGE_CHANGED_EVENT: "on_stage_change",
}

SessionScope = Callable[[], AbstractContextManager[Session]]


@contextmanager
def default_session_scope() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class AutomationDispatcher:
    """Post-commit bridge from record events to the workflow engine.

    Delivery is best effort: a failed or lost dispatch is logged and dropped,
    the committed mutation that raised the event is never affected.
    """

    def __init__(self, engine: WorkflowEngine | None = None, session_scope: SessionScope | None = None) -> None:
        self.engine = engine or workflow_engine
        self.session_scope: SessionScope = session_scope or default_session_scope
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    def handle_event(self, event: InternalEvent) -> None:
        if not isinstance(event.payload, dict):
            return
        envelope: dict[str, Any] = event.payload
        try:
            if get_settings().automation_dispatch_mode == "inline":
                self._dispatch_safely(envelope)
                return
            context = contextvars.copy_context()
            self._get_executor().submit(context.run, self._dispatch_safely, envelope)
        except Exception as exc:
            observe_dispatch_failure(event.name)
            logger.exception("automation.dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})

    def dispatch(self, envelope: dict[str, Any]) -> list[RunResult]:
        settings = get_settings()
        event_type = str(envelope.get("event_type") or "")
        trigger = EVENT_TRIGGERS.get(event_type)
        if trigger is None:
            return []
        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        record_id_raw = payload.get("record_id")
        org_id = str(envelope.get("org_id") or "")
        if not record_id_raw or not org_id:
            return []
        record_id = uuid.UUID(str(record_id_raw))
        event_id = str(envelope.get("event_id") or "") or None
        correlation_id = str(envelope.get("correlation_id") or "").strip() or None

        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        try:
            workflow_depth = int(meta.get("workflow_depth", 0))
        except (TypeError, ValueError):
            workflow_depth = 0

        with correlation_scope(correlation_id), workflow_depth_scope(workflow_depth):
            if workflow_depth >= settings.workflow_max_depth:
                self._block_depth(envelope, event_type, record_id, workflow_depth)
                return []

            with self.session_scope() as session:
                try:
                    live = record_service.load_snapshot(session, org_id, record_id)
                except HTTPException as exc:
                    if exc.status_code != status.HTTP_404_NOT_FOUND:
                        raise
                    logger.info(
                        "automation.dispatch_record_missing",
                        extra={"event_type": event_type, "record_id": str(record_id)},
                    )
                    return []

                # Match against the record as the event saw it; the row may have moved on since.
                record_raw = payload.get("record")
                snapshot = RecordSnapshot.from_dict(record_raw) if isinstance(record_raw, dict) else live
                previous_raw = payload.get("previous")
                previous = RecordSnapshot.from_dict(previous_raw) if isinstance(previous_raw, dict) else None
                actor = ActorUser(
                    user_id=str(envelope.get("actor_user_id") or SYSTEM_USER_ID),
                    org_id=org_id,
                    role=Role.ADMIN,
                    correlation_id=correlation_id,
                )
                triggers = [trigger]
                if event_type == RECORD_CREATED_EVENT and payload.get("source") == "webform":
                    triggers.append("webform")

                results: list[RunResult] = []
                for item in triggers:
                    results.extend(
                        self.engine.execute_matching_workflows(
                            session,
                            actor=actor,
                            record=snapshot,
                            trigger=item,
                            previous=previous,
                            event_id=event_id,
                        )
                    )
                logger.info(
                    "automation.dispatched",
                    extra={
                        "event_type": event_type,
                        "event_id": event_id,
                        "record_id": str(record_id),
                        "runs": len(results),
                    },
                )
                return results

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _dispatch_safely(self, envelope: dict[str, Any]) -> None:
        event_type = str(envelope.get("event_type") or "unknown")
        try:
            self.dispatch(envelope)
        except Exception as exc:
            observe_dispatch_failure(event_type)
            logger.exception(
                "automation.dispatch_failed",
                extra={"event_name": event_type, "event_id": envelope.get("event_id"), "error": str(exc)[:500]},
            )

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=get_settings().automation_dispatch_workers,
                    thread_name_prefix="stageflow-dispatch",
                )
            return self._executor

    def _block_depth(self, envelope: dict[str, Any], event_type: str, record_id: uuid.UUID, depth: int) -> None:
        settings = get_settings()
        details = {
            "reason": "MAX_DEPTH",
            "event_type": event_type,
            "event_id": envelope.get("event_id"),
            "workflow_depth": depth,
            "max_depth": settings.workflow_max_depth,
            "record_id": str(record_id),
        }
        # workflow_depth reaches the log record through the depth scope.
        logger.warning(
            "workflow_guardrail_blocked",
            extra={key: value for key, value in details.items() if key != "workflow_depth"},
        )
        observe_guardrail_block("MAX_DEPTH")
        audit.record(
            actor_user_id=str(envelope.get("actor_user_id") or SYSTEM_USER_ID),
            entity_type="crm_workflow",
            entity_id=str(envelope.get("event_id") or record_id),
            action="workflow.blocked",
            before=None,
            after=details,
            org_id=str(envelope.get("org_id") or "") or None,
        )


automation_dispatcher = AutomationDispatcher()
