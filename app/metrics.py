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

crm_transition_outcomes_total = Counter(
    "crm_transition_outcomes_total",
    "Transition gate outcomes by mode and status",
    ["mode", "status"],
)

crm_validation_duration_seconds = Histogram(
    "crm_validation_duration_seconds",
    "Validation rule pass duration in seconds",
    ["trigger"],
)

crm_validation_rule_config_errors_total = Counter(
    "crm_validation_rule_config_errors_total",
    "Validation rules skipped because of configuration errors",
    ["reason"],
)

crm_approval_decisions_total = Counter(
    "crm_approval_decisions_total",
    "Approval decision outcomes by action and status",
    ["action", "status"],
)

crm_audit_append_failures_total = Counter(
    "crm_audit_append_failures_total",
    "Audit events that could not be delivered to the audit sink",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition_outcome(mode: str, status: str) -> None:
    crm_transition_outcomes_total.labels(mode=mode, status=status).inc()


def observe_validation_pass(trigger: str, duration: float) -> None:
    crm_validation_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_validation_rule_config_error(reason: str) -> None:
    crm_validation_rule_config_errors_total.labels(reason=reason).inc()


def observe_approval_decision(action: str, status: str) -> None:
    crm_approval_decisions_total.labels(action=action, status=status).inc()


def observe_audit_append_failure() -> None:
    crm_audit_append_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
