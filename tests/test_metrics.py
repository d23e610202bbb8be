from prometheus_client import REGISTRY

from agentcall.core import metrics


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_record_task_execution_increments_counter_and_histogram():
    labels = {"task": "metrics_sample", "status": "completed"}
    before = _sample("agentcall_task_executions_total", labels)
    latency_before = _sample("agentcall_task_latency_seconds_count", {"task": "metrics_sample"})

    metrics.record_task_execution(task="metrics_sample", status="completed", latency=0.2)

    assert _sample("agentcall_task_executions_total", labels) == before + 1
    assert _sample("agentcall_task_latency_seconds_count", {"task": "metrics_sample"}) == latency_before + 1


def test_circuit_and_transport_counters():
    trips_before = _sample("agentcall_circuit_trip_total", {"agent": "metrics-agent"})
    calls_before = _sample("agentcall_transport_calls_total", {"agent": "metrics-agent", "outcome": "error"})

    metrics.increment_circuit_trip(agent="metrics-agent")
    metrics.record_transport_call(agent="metrics-agent", outcome="error")

    assert _sample("agentcall_circuit_trip_total", {"agent": "metrics-agent"}) == trips_before + 1
    assert _sample("agentcall_transport_calls_total", {"agent": "metrics-agent", "outcome": "error"}) == calls_before + 1


def test_webhook_counter_defaults_missing_labels():
    labels = {"task_type": "unknown", "status": "completed"}
    before = _sample("agentcall_webhooks_received_total", labels)

    metrics.record_webhook_received(task_type="", status="completed")

    assert _sample("agentcall_webhooks_received_total", labels) == before + 1
