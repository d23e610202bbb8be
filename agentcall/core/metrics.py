from __future__ import annotations

from prometheus_client import Counter, Histogram

TASK_EXECUTIONS_TOTAL = Counter(
    "agentcall_task_executions_total",
    "Task executions grouped by task name and final status",
    labelnames=("task", "status"),
)

TASK_LATENCY_SECONDS = Histogram(
    "agentcall_task_latency_seconds",
    "End-to-end latency of execute_task and resume calls",
    labelnames=("task",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

CLARIFICATION_ROUNDS = Histogram(
    "agentcall_clarification_rounds",
    "Clarification rounds performed per task execution",
    labelnames=("task",),
    buckets=(0, 1, 2, 3, 4, 5, 8, 13),
)

TRANSPORT_CALLS_TOTAL = Counter(
    "agentcall_transport_calls_total",
    "Transport calls issued to agents grouped by outcome",
    labelnames=("agent", "outcome"),
)

CIRCUIT_OPEN_TOTAL = Counter(
    "agentcall_circuit_open_total",
    "Calls rejected because an agent circuit was open",
    labelnames=("agent",),
)

CIRCUIT_TRIP_TOTAL = Counter(
    "agentcall_circuit_trip_total",
    "Count of agent circuit breaker trips",
    labelnames=("agent",),
)

WEBHOOKS_RECEIVED_TOTAL = Counter(
    "agentcall_webhooks_received_total",
    "Inbound webhook notifications grouped by task type and status",
    labelnames=("task_type", "status"),
)

NORMALIZATION_FAILURES_TOTAL = Counter(
    "agentcall_normalization_failures_total",
    "Responses that could not be normalized, grouped by failure kind",
    labelnames=("kind",),
)


def record_task_execution(*, task: str, status: str, latency: float) -> None:
    TASK_EXECUTIONS_TOTAL.labels(task=task, status=status).inc()
    TASK_LATENCY_SECONDS.labels(task=task).observe(max(latency, 0.0))


def observe_clarification_rounds(*, task: str, rounds: int) -> None:
    CLARIFICATION_ROUNDS.labels(task=task).observe(max(rounds, 0))


def record_transport_call(*, agent: str, outcome: str) -> None:
    TRANSPORT_CALLS_TOTAL.labels(agent=agent, outcome=outcome).inc()


def increment_circuit_open(*, agent: str) -> None:
    CIRCUIT_OPEN_TOTAL.labels(agent=agent).inc()


def increment_circuit_trip(*, agent: str) -> None:
    CIRCUIT_TRIP_TOTAL.labels(agent=agent).inc()


def record_webhook_received(*, task_type: str, status: str) -> None:
    WEBHOOKS_RECEIVED_TOTAL.labels(task_type=task_type or "unknown", status=status or "unknown").inc()


def increment_normalization_failure(*, kind: str) -> None:
    NORMALIZATION_FAILURES_TOTAL.labels(kind=kind).inc()
