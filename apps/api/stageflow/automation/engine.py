from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.actions import ActionContext, ActionExecutor, ActionResult, action_executor
from stageflow.automation.models import CRMAutomationRun, CRMMacro, CRMWorkflow
from stageflow.automation.schemas import ActionResultRead, RunResultRead
from stageflow.context import next_workflow_depth
from stageflow.core.config import get_settings
from stageflow.crm.authz import ActorUser
from stageflow.crm.conditions import condition_evaluator
from stageflow.crm.models import utcnow
from stageflow.crm.records import RecordSnapshot, publish_all, record_service
from stageflow.metrics import observe_automation_run, observe_guardrail_block

logger = logging.getLogger("stageflow.automation")
tracer = trace.get_tracer("stageflow.automation")

DUPLICATE_REASON = "duplicate request (idempotency)"


class WorkflowTimeoutError(Exception):
    pass


@dataclass(slots=True)
class RunResult:
    run_id: uuid.UUID | None
    source: str
    status: str
    record_id: uuid.UUID | None = None
    workflow_id: uuid.UUID | None = None
    macro_id: uuid.UUID | None = None
    actions_executed: list[ActionResult] = field(default_factory=list)
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    idempotency_key: str | None = None

    def to_read(self) -> RunResultRead:
        return RunResultRead(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            macro_id=self.macro_id,
            record_id=self.record_id,
            source=self.source,
            status=self.status,
            actions_executed=[ActionResultRead(**item.to_dict()) for item in self.actions_executed],
            output=self.output,
            error=self.error,
            idempotency_key=self.idempotency_key,
        )


def run_counters(results: list[ActionResult]) -> dict[str, int]:
    return {
        "actions_count": len(results),
        "success_count": sum(1 for item in results if item.status == "success"),
        "failed_count": sum(1 for item in results if item.status == "failed"),
        "skipped_count": sum(1 for item in results if item.status == "skipped"),
    }


class WorkflowEngine:
    def __init__(
        self,
        executor: ActionExecutor | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.executor = executor or action_executor
        self.clock = clock

    def skip_reason(
        self,
        workflow: CRMWorkflow,
        trigger: str,
        snapshot: RecordSnapshot,
        previous: RecordSnapshot | None = None,
    ) -> str | None:
        """Return why ``workflow`` must not run for this event, or None when it matches."""
        if not workflow.is_enabled or workflow.deleted_at is not None:
            return "workflow disabled"
        if workflow.module_id != snapshot.module_id:
            return "module mismatch"
        if workflow.trigger_type != trigger:
            return "trigger mismatch"

        config = workflow.trigger_config or {}
        current = snapshot.context()
        before = previous.context() if previous is not None else None
        if trigger == "on_update" and before is not None:
            watch_fields = config.get("watch_fields") or []
            if watch_fields and not any(current.get(key) != before.get(key) for key in watch_fields):
                return "watched fields unchanged"
        if trigger == "on_stage_change":
            from_stages = config.get("from_stages") or []
            to_stages = config.get("to_stages") or []
            if from_stages and before is not None and before.get("stage") not in from_stages:
                return "from stage not matched"
            if to_stages and snapshot.stage not in to_stages:
                return "to stage not matched"

        if not condition_evaluator.matches(workflow.conditions, current, before):
            return "conditions not met"
        return None

    def execute_matching_workflows(
        self,
        session: Session,
        *,
        actor: ActorUser,
        record: RecordSnapshot,
        trigger: str,
        previous: RecordSnapshot | None = None,
        dry_run: bool = False,
        event_id: str | None = None,
    ) -> list[RunResult]:
        """Run every enabled workflow of the record's module that matches ``trigger``.

        Workflows run in ascending priority. A failing workflow is recorded and the
        next one still runs.
        """
        workflows = session.scalars(
            select(CRMWorkflow)
            .where(
                and_(
                    CRMWorkflow.org_id == record.org_id,
                    CRMWorkflow.module_id == record.module_id,
                    CRMWorkflow.trigger_type == trigger,
                    CRMWorkflow.is_enabled.is_(True),
                    CRMWorkflow.deleted_at.is_(None),
                )
            )
            .order_by(CRMWorkflow.priority.asc(), CRMWorkflow.created_at.asc())
        ).all()

        results: list[RunResult] = []
        snapshot = record
        for workflow in workflows:
            workflow_id = workflow.id
            try:
                if results and not dry_run:
                    snapshot = record_service.load_snapshot(session, record.org_id, record.id)
                reason = self.skip_reason(workflow, trigger, snapshot, previous)
                if reason is not None:
                    logger.debug(
                        "automation.workflow_not_matched",
                        extra={"workflow_id": str(workflow_id), "record_id": str(record.id), "reason": reason},
                    )
                    continue
                results.append(
                    self.execute_workflow(
                        session,
                        workflow,
                        snapshot,
                        actor=actor,
                        trigger=trigger,
                        previous=previous,
                        dry_run=dry_run,
                        idempotency_key=f"event:{event_id}:{workflow_id}" if event_id else None,
                        event_id=event_id,
                    )
                )
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "automation.workflow_failed",
                    extra={"workflow_id": str(workflow_id), "record_id": str(record.id), "error": str(exc)[:500]},
                )
                results.append(
                    RunResult(
                        run_id=None,
                        source="workflow",
                        status="failed",
                        record_id=record.id,
                        workflow_id=workflow_id,
                        error=str(exc)[:500],
                    )
                )
        return results

    def execute_workflow(
        self,
        session: Session,
        workflow: CRMWorkflow,
        snapshot: RecordSnapshot,
        *,
        actor: ActorUser,
        trigger: str,
        previous: RecordSnapshot | None = None,
        dry_run: bool = False,
        idempotency_key: str | None = None,
        source: str = "workflow",
        retry_of: uuid.UUID | None = None,
        event_id: str | None = None,
    ) -> RunResult:
        reason = self.skip_reason(workflow, trigger, snapshot, previous)
        if reason is None and idempotency_key and not dry_run and self._run_exists(session, snapshot.org_id, idempotency_key):
            reason = DUPLICATE_REASON
        if reason is not None:
            observe_automation_run(source, "skipped", 0.0)
            logger.info(
                "automation.run_skipped",
                extra={"workflow_id": str(workflow.id), "record_id": str(snapshot.id), "reason": reason},
            )
            return RunResult(
                run_id=None,
                source=source,
                status="skipped",
                record_id=snapshot.id,
                workflow_id=workflow.id,
                error=reason,
                idempotency_key=idempotency_key,
            )
        return self.run_actions(
            session,
            snapshot,
            list(workflow.actions or []),
            actor=actor,
            trigger=trigger,
            source=source,
            dry_run=dry_run,
            author_role=workflow.created_by_role,
            workflow=workflow,
            idempotency_key=idempotency_key,
            retry_of=retry_of,
            event_id=event_id,
        )

    def run_actions(
        self,
        session: Session,
        snapshot: RecordSnapshot,
        actions: list[dict[str, Any]],
        *,
        actor: ActorUser,
        trigger: str,
        source: str,
        dry_run: bool = False,
        author_role: str | None = None,
        workflow: CRMWorkflow | None = None,
        macro: CRMMacro | None = None,
        idempotency_key: str | None = None,
        retry_of: uuid.UUID | None = None,
        event_id: str | None = None,
    ) -> RunResult:
        """Execute an action list in ``order`` and record the run.

        Every action is attempted even after a failure; the run is failed when any
        action failed or the run deadline passed. Dry runs persist nothing.
        """
        settings = get_settings()
        workflow_id = workflow.id if workflow is not None else None
        macro_id = macro.id if macro is not None else None
        started = self.clock()
        deadline = started + settings.workflow_run_timeout_seconds

        with tracer.start_as_current_span("stageflow.automation.run") as span:
            span.set_attribute("stageflow.record_id", str(snapshot.id))
            span.set_attribute("stageflow.run_source", source)
            span.set_attribute("stageflow.dry_run", dry_run)
            if actor.correlation_id:
                span.set_attribute("correlation_id", actor.correlation_id)
            if workflow_id is not None:
                span.set_attribute("stageflow.workflow_id", str(workflow_id))

            run_id: uuid.UUID | None = None
            if not dry_run:
                run = CRMAutomationRun(
                    org_id=snapshot.org_id,
                    module_id=snapshot.module_id,
                    workflow_id=workflow_id,
                    macro_id=macro_id,
                    record_id=snapshot.id,
                    source=source,
                    trigger=trigger,
                    status="running",
                    input={"trigger": trigger, "record": snapshot.to_dict()},
                    idempotency_key=idempotency_key,
                    retry_of=retry_of,
                    event_id=event_id,
                    created_by=actor.user_id,
                )
                session.add(run)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    observe_automation_run(source, "skipped", 0.0)
                    return RunResult(
                        run_id=None,
                        source=source,
                        status="skipped",
                        record_id=snapshot.id,
                        workflow_id=workflow_id,
                        macro_id=macro_id,
                        error=DUPLICATE_REASON,
                        idempotency_key=idempotency_key,
                    )
                run_id = run.id

            ctx = ActionContext(
                actor=actor,
                record=snapshot,
                dry_run=dry_run,
                author_role=author_role,
                workflow_id=workflow_id,
                macro_id=macro_id,
            )
            ordered = sorted(actions, key=lambda item: int(item.get("order", 0) or 0))
            limit = settings.workflow_max_actions
            results: list[ActionResult] = []
            error: str | None = None

            try:
                for action in ordered[:limit]:
                    self._check_deadline(deadline)
                    results.append(self.executor.execute(session, action, ctx))
                # The last action can overrun too.
                self._check_deadline(deadline)
            except WorkflowTimeoutError as exc:
                error = str(exc)
                observe_guardrail_block("TIMEOUT")
                logger.warning(
                    "workflow_guardrail_blocked",
                    extra={"reason": "TIMEOUT", "run_id": str(run_id), "workflow_id": str(workflow_id)},
                )

            if len(ordered) > limit:
                observe_guardrail_block("MAX_ACTIONS")
                logger.warning(
                    "workflow_guardrail_blocked",
                    extra={
                        "reason": "MAX_ACTIONS",
                        "run_id": str(run_id),
                        "workflow_id": str(workflow_id),
                        "actions": len(ordered),
                        "max_actions": limit,
                    },
                )
                for action in ordered[limit:]:
                    results.append(
                        ActionResult(
                            action_id=str(action.get("id") or ""),
                            type=str(action.get("type") or "unknown"),
                            status="skipped",
                            output={"reason": "max actions per run exceeded"},
                        )
                    )

            failed = [item for item in results if item.status == "failed"]
            if error is None and failed:
                error = failed[0].error
            if error is not None:
                run_status = "failed"
            else:
                run_status = "dry_run" if dry_run else "succeeded"
            output = run_counters(results)

            if run_id is not None:
                try:
                    self._finish_run(
                        session,
                        actor,
                        run_id,
                        workflow,
                        status=run_status,
                        results=results,
                        output=output,
                        error=error,
                    )
                except Exception as exc:
                    session.rollback()
                    logger.exception("automation.run_finalize_failed", extra={"run_id": str(run_id)})
                    run_status = "failed"
                    error = str(exc)[:500]
                    self._mark_failed(session, run_id, error)
                    ctx.envelopes.clear()

                # Events raised by the run carry the next depth so chained dispatch stays bounded.
                with next_workflow_depth():
                    publish_all(ctx.envelopes)

            duration = max(self.clock() - started, 0.0)
            span.set_attribute("stageflow.run_status", run_status)

        observe_automation_run(source, run_status, duration)
        logger.info(
            "automation.run_finished",
            extra={
                "run_id": str(run_id) if run_id else None,
                "workflow_id": str(workflow_id) if workflow_id else None,
                "macro_id": str(macro_id) if macro_id else None,
                "record_id": str(snapshot.id),
                "source": source,
                "status": run_status,
                "duration_ms": round(duration * 1000, 2),
                **output,
            },
        )
        return RunResult(
            run_id=run_id,
            source=source,
            status=run_status,
            record_id=snapshot.id,
            workflow_id=workflow_id,
            macro_id=macro_id,
            actions_executed=results,
            output=output,
            error=error,
            idempotency_key=idempotency_key,
        )

    def _check_deadline(self, deadline: float) -> None:
        if self.clock() > deadline:
            raise WorkflowTimeoutError(f"timeout: run exceeded {get_settings().workflow_run_timeout_seconds}s")

    def _finish_run(
        self,
        session: Session,
        actor: ActorUser,
        run_id: uuid.UUID,
        workflow: CRMWorkflow | None,
        *,
        status: str,
        results: list[ActionResult],
        output: dict[str, int],
        error: str | None,
    ) -> None:
        run = session.get(CRMAutomationRun, run_id)
        if run is None:
            return
        run.status = status
        run.actions_executed = [item.to_dict() for item in results]
        run.output = output
        run.error = error
        run.finished_at = utcnow()
        if workflow is not None:
            workflow.last_run_at = run.finished_at
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm_automation_run",
            entity_id=str(run_id),
            action="run",
            before=None,
            after={"status": status, "workflow_id": str(run.workflow_id) if run.workflow_id else None, **output},
            correlation_id=actor.correlation_id,
            org_id=run.org_id,
            session=session,
        )
        session.commit()

    def _mark_failed(self, session: Session, run_id: uuid.UUID, error: str) -> None:
        run = session.get(CRMAutomationRun, run_id)
        if run is None:
            return
        run.status = "failed"
        run.error = error
        run.finished_at = utcnow()
        session.commit()

    def _run_exists(self, session: Session, org_id: str, idempotency_key: str) -> bool:
        return (
            session.scalar(
                select(CRMAutomationRun.id).where(
                    and_(
                        CRMAutomationRun.org_id == org_id,
                        CRMAutomationRun.idempotency_key == idempotency_key,
                    )
                )
            )
            is not None
        )


workflow_engine = WorkflowEngine()
