"""Prometheus counters for the places where the pipeline quietly recovers."""
from __future__ import annotations

from typing import Dict

from prometheus_client import Counter, generate_latest

routing_fallbacks = Counter(
    "leadflow_routing_fallbacks_total",
    "Routing decisions replaced by the default agent",
    ["reason"],
)

json_parse_failures = Counter(
    "leadflow_json_parse_failures_total",
    "Model outputs from which no JSON value could be extracted",
    ["agent"],
)

ai_calls = Counter(
    "leadflow_ai_calls_total",
    "Completion service calls by outcome",
    ["agent", "outcome"],
)

executions = Counter(
    "leadflow_executions_total",
    "Executions that reached a terminal status",
    ["status"],
)

# In-process mirror for get_system_stats(); Prometheus stays the source of truth.
_summary: Dict[str, int] = {
    "routing_fallbacks": 0,
    "json_parse_failures": 0,
    "ai_call_failures": 0,
}


def record_routing_fallback(reason: str) -> None:
    routing_fallbacks.labels(reason=reason).inc()
    _summary["routing_fallbacks"] += 1


def record_json_parse_failure(agent: str) -> None:
    json_parse_failures.labels(agent=agent).inc()
    _summary["json_parse_failures"] += 1


def record_ai_call(agent: str, ok: bool) -> None:
    ai_calls.labels(agent=agent, outcome="success" if ok else "error").inc()
    if not ok:
        _summary["ai_call_failures"] += 1


def record_execution(status: str) -> None:
    executions.labels(status=status).inc()


def get_summary() -> Dict[str, int]:
    return dict(_summary)


def export_latest() -> bytes:
    return generate_latest()
