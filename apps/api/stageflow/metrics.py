from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

stage_transitions_total = Counter(
    "stage_transitions_total",
    "Stage transition attempts by outcome",
    ["outcome"],
)

approval_decisions_total = Counter(
    "approval_decisions_total",
    "Approval request actions by decision",
    ["decision"],
)

automation_runs_total = Counter(
    "automation_runs_total",
    "Automation runs by source and status",
    ["source", "status"],
)

automation_run_duration_seconds = Histogram(
    "automation_run_duration_seconds",
    "Automation run duration in seconds",
    ["source"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Automation action results by type and status",
    ["action_type", "status"],
)

automation_dispatch_failures_total = Counter(
    "automation_dispatch_failures_total",
    "Post-commit automation dispatches that raised",
    ["event_type"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Automation guardrail blocks by reason",
    ["reason"],
)

scheduler_jobs_total = Counter(
    "scheduler_jobs_total",
    "Scheduler jobs processed by type and status",
    ["job_type", "status"],
)

scheduler_job_duration_seconds = Histogram(
    "scheduler_job_duration_seconds",
    "Scheduler job duration in seconds",
    ["job_type"],
)

validation_rule_failures_total = Counter(
    "validation_rule_failures_total",
    "Validation rule failures by rule type",
    ["rule_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(outcome: str) -> None:
    stage_transitions_total.labels(outcome=outcome).inc()


def observe_approval_decision(decision: str) -> None:
    approval_decisions_total.labels(decision=decision).inc()


def observe_automation_run(source: str, status: str, duration: float) -> None:
    automation_runs_total.labels(source=source, status=status).inc()
    automation_run_duration_seconds.labels(source=source).observe(duration)


def observe_automation_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_dispatch_failure(event_type: str) -> None:
    automation_dispatch_failures_total.labels(event_type=event_type).inc()


def observe_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_scheduler_job(job_type: str, status: str, duration: float) -> None:
    scheduler_jobs_total.labels(job_type=job_type, status=status).inc()
    scheduler_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_validation_failure(rule_type: str, count: int = 1) -> None:
    if count > 0:
        validation_rule_failures_total.labels(rule_type=rule_type).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
