import asyncio
from itertools import chain, repeat

import pytest
from prometheus_client import REGISTRY

from agentcall.core.config import ExecutorSettings, Settings
from agentcall.core.exceptions import InputRequiredError, UnknownDeferredTokenError
from agentcall.orchestration import TaskExecutor, auto_approve_handler, field_handler
from agentcall.protocols.transport import CONTINUE_TASK, GET_TASK
from agentcall.schemas.agents import ProtocolKind
from agentcall.schemas.tasks import MessageRole, TaskStatus
from agentcall.schemas.webhooks import WebhookPayload
from agentcall.services.async_completion import TemplateWebhookManager
from agentcall.services.circuit_breaker import CircuitBreaker
from tests.helpers.stubs import RecordingDeferredStore, StubTransport, a2a_completed, make_agent, mcp_completed

BUDGET_QUESTION = {
    "structuredContent": {
        "status": "input-required",
        "message": "What is the campaign budget?",
        "field": "budget",
        "suggestions": [50000, 75000],
    }
}
MEDIA_BUY = {"media_buy_id": "mb-1", "packages": [{"package_id": "pkg-1"}]}


class SlowTransport:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = 0

    async def send_tool_call(self, agent, task_name, params, auth_token=None):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return mcp_completed({"products": []})


@pytest.mark.asyncio
async def test_completed_mcp_call_returns_data_and_conversation():
    transport = StubTransport([mcp_completed({"products": [{"product_id": "p1"}]}, "Found 1 product")])
    executor = TaskExecutor(transport)
    agent = make_agent().model_copy(update={"auth_token": "secret-token"})

    result = await executor.execute_task(agent, "get_products", {"brief": "sports"})

    assert result.success is True
    assert result.status is TaskStatus.COMPLETED
    assert result.data["products"] == [{"product_id": "p1"}]
    assert result.data["_message"] == "Found 1 product"
    assert result.metadata.clarification_rounds == 0
    assert result.metadata.agent.id == "agent-1"
    assert [message.role for message in result.conversation] == [MessageRole.USER, MessageRole.AGENT]
    assert transport.calls == [("agent-1", "get_products", {"brief": "sports"}, "secret-token")]
    assert executor.active_tasks() == []


@pytest.mark.asyncio
async def test_completed_a2a_call():
    transport = StubTransport([a2a_completed(MEDIA_BUY)])
    executor = TaskExecutor(transport)

    result = await executor.execute_task(make_agent(ProtocolKind.A2A), "create_media_buy", {"budget": 75000})

    assert result.success is True
    assert result.data == MEDIA_BUY


@pytest.mark.asyncio
async def test_clarification_round_trip_with_field_handler():
    transport = StubTransport([BUDGET_QUESTION, mcp_completed(MEDIA_BUY)])
    executor = TaskExecutor(transport)

    result = await executor.execute_task(
        make_agent(),
        "create_media_buy",
        {"budget": None},
        field_handler({"budget": 75000}),
    )

    assert result.success is True
    assert result.data == MEDIA_BUY
    assert result.metadata.clarification_rounds == 1
    assert len(result.conversation) == 4
    assert result.conversation[2].metadata.type == "input_response"
    assert result.conversation[2].content == 75000
    assert transport.task_names() == ["create_media_buy", CONTINUE_TASK]
    assert transport.calls[1][2] == {"contextId": result.metadata.task_id, "input": 75000}


@pytest.mark.asyncio
async def test_clarification_prefers_agent_context_id():
    question = {"status": "input-required", "message": "Which market?", "context_id": "ctx-remote"}
    transport = StubTransport([question, mcp_completed({"products": []})])
    executor = TaskExecutor(transport)

    result = await executor.execute_task(make_agent(), "get_products", {}, lambda ctx: "US")

    assert transport.calls[1][2] == {"contextId": "ctx-remote", "input": "US"}
    assert result.metadata.context_id == "ctx-remote"


@pytest.mark.asyncio
async def test_defer_then_resume():
    store = RecordingDeferredStore()
    transport = StubTransport([BUDGET_QUESTION, mcp_completed(MEDIA_BUY)])
    executor = TaskExecutor(transport, deferred_store=store)

    paused = await executor.execute_task(
        make_agent(),
        "create_media_buy",
        {"budget": None},
        lambda ctx: ctx.defer_to_human("T"),
    )

    assert paused.success is True
    assert paused.status is TaskStatus.DEFERRED
    assert paused.is_paused
    assert paused.deferred.token == "T"
    assert paused.deferred.question == "What is the campaign budget?"
    assert paused.metadata.input_request.field == "budget"
    assert [token for token, _ in store.set_calls] == ["T"]
    assert store.delete_calls == []

    result = await paused.deferred.resume(75000)

    assert result.success is True
    assert result.data == MEDIA_BUY
    assert result.metadata.task_id == paused.metadata.task_id
    assert result.metadata.clarification_rounds == 1
    assert len(result.conversation) == 4
    assert store.delete_calls == ["T"]
    assert await store.get("T") is None
    assert transport.calls[1][1:3] == (CONTINUE_TASK, {"contextId": paused.metadata.task_id, "input": 75000})


@pytest.mark.asyncio
async def test_resume_unknown_token_raises():
    executor = TaskExecutor(StubTransport())
    with pytest.raises(UnknownDeferredTokenError):
        await executor.resume("missing", 1)


@pytest.mark.asyncio
async def test_defer_storage_failure_is_reported():
    store = RecordingDeferredStore(fail_on_set=True)
    executor = TaskExecutor(StubTransport([BUDGET_QUESTION]), deferred_store=store)

    result = await executor.execute_task(make_agent(), "create_media_buy", {}, lambda ctx: ctx.defer_to_human("T"))

    assert result.success is False
    assert result.metadata.error_code == "STORAGE_ERROR"
    assert len(store.set_calls) == 1


@pytest.mark.asyncio
async def test_resume_storage_failure_is_reported():
    store = RecordingDeferredStore(fail_on_delete=True)
    transport = StubTransport([BUDGET_QUESTION, mcp_completed(MEDIA_BUY)])
    executor = TaskExecutor(transport, deferred_store=store)
    paused = await executor.execute_task(make_agent(), "create_media_buy", {}, lambda ctx: ctx.defer_to_human("T"))

    result = await executor.resume("T", 75000)

    assert paused.status is TaskStatus.DEFERRED
    assert result.success is False
    assert result.metadata.error_code == "STORAGE_ERROR"


@pytest.mark.asyncio
async def test_input_required_without_handler_pauses():
    executor = TaskExecutor(StubTransport([BUDGET_QUESTION]))

    result = await executor.execute_task(make_agent(), "create_media_buy", {})

    assert result.success is True
    assert result.status is TaskStatus.INPUT_REQUIRED
    assert result.metadata.input_request.question == "What is the campaign budget?"
    assert result.metadata.input_request.suggestions == [50000, 75000]


@pytest.mark.asyncio
async def test_input_required_can_raise_when_configured():
    executor = TaskExecutor(StubTransport([BUDGET_QUESTION]), settings=ExecutorSettings(throw_on_input_required=True))

    with pytest.raises(InputRequiredError) as excinfo:
        await executor.execute_task(make_agent(), "create_media_buy", {})

    assert excinfo.value.input_request.field == "budget"
    assert executor.active_tasks() == []


@pytest.mark.asyncio
async def test_clarification_limit_is_advisory_by_default():
    transport = StubTransport([BUDGET_QUESTION, BUDGET_QUESTION, mcp_completed(MEDIA_BUY)])
    executor = TaskExecutor(transport)

    result = await executor.execute_task(
        make_agent(), "create_media_buy", {}, auto_approve_handler, max_clarifications=1
    )

    assert result.success is True
    assert result.metadata.clarification_rounds == 2


@pytest.mark.asyncio
async def test_clarification_limit_can_be_enforced():
    transport = StubTransport([BUDGET_QUESTION, BUDGET_QUESTION])
    executor = TaskExecutor(
        transport,
        settings=ExecutorSettings(enforce_max_clarifications=True, max_clarifications=1),
    )

    result = await executor.execute_task(make_agent(), "create_media_buy", {}, auto_approve_handler)

    assert result.success is False
    assert result.metadata.error_code == "MAX_CLARIFICATIONS_EXCEEDED"
    assert result.metadata.clarification_rounds == 1


@pytest.mark.asyncio
async def test_handler_attempts_are_reported():
    seen = []

    def handler(ctx):
        seen.append((ctx.attempt, ctx.max_attempts, len(ctx.messages)))
        return 75000

    transport = StubTransport([BUDGET_QUESTION, BUDGET_QUESTION, mcp_completed(MEDIA_BUY)])
    await TaskExecutor(transport).execute_task(make_agent(), "create_media_buy", {}, handler)

    assert seen == [(1, 3, 2), (2, 3, 4)]


@pytest.mark.asyncio
async def test_handler_exception_becomes_failed_result():
    def broken(ctx):
        raise ValueError("no budget available")

    executor = TaskExecutor(StubTransport([BUDGET_QUESTION]))
    result = await executor.execute_task(make_agent(), "create_media_buy", {}, broken)

    assert result.success is False
    assert result.metadata.error_code == "HANDLER_ERROR"
    assert "no budget available" in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [lambda ctx: ctx.abort("too expensive"), lambda ctx: {"abort": True, "reason": "too expensive"}],
)
async def test_abort_fails_the_task(handler):
    executor = TaskExecutor(StubTransport([BUDGET_QUESTION]))
    result = await executor.execute_task(make_agent(), "create_media_buy", {}, handler)

    assert result.success is False
    assert result.metadata.error_code == "TASK_ABORTED"
    assert "too expensive" in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, status, code, message",
    [
        ({"status": "failed", "error": "Out of stock"}, TaskStatus.FAILED, "AGENT_FAILED", "Out of stock"),
        ({"status": "rejected", "message": "Policy"}, TaskStatus.REJECTED, "AGENT_REJECTED", "Policy"),
        ({"status": "canceled"}, TaskStatus.CANCELED, "AGENT_CANCELED", "Task canceled"),
    ],
)
async def test_agent_failure_statuses(raw, status, code, message):
    result = await TaskExecutor(StubTransport([raw])).execute_task(make_agent(), "create_media_buy", {})

    assert result.success is False
    assert result.status is status
    assert result.error == message
    assert result.metadata.error_code == code


@pytest.mark.asyncio
async def test_network_error_is_returned_not_raised():
    transport = StubTransport([ConnectionError("connection refused")])

    result = await TaskExecutor(transport).execute_task(make_agent(), "get_products", {})

    assert result.success is False
    assert result.status is TaskStatus.FAILED
    assert result.metadata.error_code == "TRANSPORT_ERROR"
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_open_circuit_fails_fast_without_transport_call():
    transport = StubTransport([ConnectionError("down")])
    executor = TaskExecutor(transport, circuit_breaker=CircuitBreaker(failure_threshold=1))

    first = await executor.execute_task(make_agent(), "get_products", {})
    second = await executor.execute_task(make_agent(), "get_products", {})

    assert first.metadata.error_code == "TRANSPORT_ERROR"
    assert second.metadata.error_code == "CIRCUIT_OPEN"
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_unknown_status_without_payload_fails():
    result = await TaskExecutor(StubTransport([{"status": "mystery"}])).execute_task(make_agent(), "get_products", {})

    assert result.success is False
    assert result.metadata.error_code == "PROTOCOL_ERROR"


@pytest.mark.asyncio
async def test_contract_violation_fails_the_task():
    transport = StubTransport([mcp_completed({"items": []})])

    result = await TaskExecutor(transport).execute_task(make_agent(), "get_products", {})

    assert result.success is False
    assert result.metadata.error_code == "SCHEMA_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_working_returns_immediately_with_poll_handle():
    transport = StubTransport([{"status": "working", "task_id": "t-1"}])
    executor = TaskExecutor(transport)

    result = await executor.execute_task(make_agent(), "create_media_buy", {})

    assert result.success is True
    assert result.status is TaskStatus.WORKING
    assert result.working is not None
    assert result.working.task_id == "t-1"
    assert len(transport.calls) == 1
    active = executor.get_active_task(result.metadata.task_id)
    assert active is not None and active.status is TaskStatus.WORKING


@pytest.mark.asyncio
async def test_submitted_with_generated_webhook_completes_by_polling():
    transport = StubTransport([{"status": "submitted", "task_id": "t-9"}])
    polls = chain([{"status": "working", "task_id": "t-9"}], repeat({"status": "completed", "data": {"products": []}}))
    transport.route(GET_TASK, lambda params: next(polls))
    webhooks = TemplateWebhookManager("https://hooks.example.com/{agent_id}/{task_type}/{operation_id}")
    executor = TaskExecutor(transport, webhook_manager=webhooks)

    submitted = await executor.execute_task(make_agent(), "get_products", {})

    assert submitted.success is True
    assert submitted.status is TaskStatus.SUBMITTED
    continuation = submitted.submitted
    assert continuation.webhook_url.startswith("https://hooks.example.com/agent-1/get_products/")
    assert webhooks.registered_url("t-9") == continuation.webhook_url

    result = await continuation.wait_for_completion(poll_interval=0)

    assert result.success is True
    assert result.data == {"products": []}
    assert transport.calls[1][1:3] == (GET_TASK, {"taskId": "t-9"})
    assert executor.active_tasks() == []


@pytest.mark.asyncio
async def test_submitted_with_agent_webhook_completes_by_webhook():
    transport = StubTransport([{"status": "submitted", "task_id": "t-9", "webhook_url": "https://cb.example.com/t-9"}])
    transport.route(GET_TASK, lambda params: {"status": "working", "task_id": "t-9"})
    executor = TaskExecutor(transport)

    submitted = await executor.execute_task(make_agent(), "get_products", {})
    assert submitted.submitted.webhook_url == "https://cb.example.com/t-9"

    resolved = executor.completion_manager.resolve_from_webhook(
        WebhookPayload(task_id="t-9", status="completed", result={"products": [{"product_id": "p1"}]})
    )
    result = await submitted.submitted.wait_for_completion(poll_interval=0.05)

    assert resolved is True
    assert result.success is True
    assert result.data == {"products": [{"product_id": "p1"}]}


@pytest.mark.asyncio
async def test_submitted_failure_while_polling_becomes_failed_result():
    transport = StubTransport([{"status": "submitted", "task_id": "t-9"}])
    transport.route(GET_TASK, lambda params: {"status": "failed", "error": "Inventory gone"})
    executor = TaskExecutor(transport)

    submitted = await executor.execute_task(make_agent(), "create_media_buy", {})
    result = await submitted.submitted.wait_for_completion(poll_interval=0)

    assert result.success is False
    assert result.error == "Inventory gone"
    assert result.metadata.error_code == "AGENT_FAILED"


@pytest.mark.asyncio
async def test_timeout_becomes_failed_result():
    transport = SlowTransport(delay=1.0)
    executor = TaskExecutor(transport)

    result = await executor.execute_task(make_agent(), "get_products", {}, timeout=0.01)

    assert result.success is False
    assert result.metadata.error_code == "TASK_TIMEOUT"
    assert executor.active_tasks() == []


@pytest.mark.asyncio
async def test_cancellation_propagates_and_clears_active_task():
    executor = TaskExecutor(SlowTransport(delay=1.0))
    task = asyncio.create_task(executor.execute_task(make_agent(), "get_products", {}))
    await asyncio.sleep(0.01)
    assert len(executor.active_tasks()) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert executor.active_tasks() == []


@pytest.mark.asyncio
async def test_conversation_storage_seeds_follow_up_calls():
    transport = StubTransport([mcp_completed({"products": []}), mcp_completed({"products": []})])
    executor = TaskExecutor(transport, settings=ExecutorSettings(enable_conversation_storage=True))

    first = await executor.execute_task(make_agent(), "get_products", {}, context_id="ctx-1")
    second = await executor.execute_task(make_agent(), "get_products", {}, context_id="ctx-1")

    assert first.metadata.task_id == "ctx-1"
    assert len(first.conversation) == 2
    assert len(second.conversation) == 4
    assert len(executor.get_conversation_history("ctx-1")) == 4

    executor.clear_conversation_history("ctx-1")
    assert executor.get_conversation_history("ctx-1") is None


@pytest.mark.asyncio
async def test_conversation_storage_is_off_by_default():
    executor = TaskExecutor(StubTransport([mcp_completed({"products": []})]))
    await executor.execute_task(make_agent(), "get_products", {}, context_id="ctx-1")
    assert executor.get_conversation_history("ctx-1") is None


@pytest.mark.asyncio
async def test_caller_params_are_not_mutated_by_history():
    params = {"brief": "sports"}
    executor = TaskExecutor(StubTransport([mcp_completed({"products": []})]))

    result = await executor.execute_task(make_agent(), "get_products", params)
    params["brief"] = "news"

    assert result.conversation[0].content == {"tool": "get_products", "params": {"brief": "sports"}}


def test_from_settings_wires_components():
    settings = Settings(
        circuit_breaker={"failure_threshold": 2, "reset_timeout_seconds": 5},
        polling={"poll_interval_seconds": 0.5},
        webhooks={"url_template": "https://hooks.example.com/{operation_id}"},
        executor={"max_clarifications": 7},
    )

    executor = TaskExecutor.from_settings(StubTransport(), settings)

    assert executor.completion_manager.poll_interval == 0.5
    assert isinstance(executor.completion_manager.webhook_manager, TemplateWebhookManager)
    assert executor.circuit_breaker.failure_threshold == 2


@pytest.mark.asyncio
async def test_working_result_serializes_poll_handle():
    transport = StubTransport([{"status": "working", "task_id": "t-1", "message": "Processing"}])

    result = await TaskExecutor(transport).execute_task(make_agent(), "create_media_buy", {})
    payload = result.to_dict()

    assert payload["status"] == "working"
    assert payload["success"] is True
    assert payload["working"] == {"task_id": "t-1", "webhook_url": None}
    assert "submitted" not in payload
    assert payload["metadata"]["task_name"] == "create_media_buy"


def _executions(task: str, status: str) -> float:
    return REGISTRY.get_sample_value("agentcall_task_executions_total", {"task": task, "status": status}) or 0.0


@pytest.mark.asyncio
async def test_submitted_task_records_execution_metrics_once():
    transport = StubTransport([{"status": "submitted", "task_id": "t-9"}])
    transport.route(GET_TASK, lambda params: {"status": "completed", "data": {"products": []}})
    executor = TaskExecutor(transport)
    submitted_before = _executions("get_products", "submitted")
    completed_before = _executions("get_products", "completed")

    submitted = await executor.execute_task(make_agent(), "get_products", {})
    assert _executions("get_products", "submitted") == submitted_before
    result = await submitted.submitted.wait_for_completion(poll_interval=0)

    assert result.status is TaskStatus.COMPLETED
    assert _executions("get_products", "submitted") == submitted_before
    assert _executions("get_products", "completed") == completed_before + 1


@pytest.mark.asyncio
async def test_default_deadline_does_not_bound_submitted_completion():
    transport = StubTransport([{"status": "submitted", "task_id": "t-9"}])
    transport.route(GET_TASK, lambda params: BUDGET_QUESTION)
    transport.route(CONTINUE_TASK, lambda params: mcp_completed({"products": []}))
    executor = TaskExecutor(transport, settings=ExecutorSettings(default_timeout_seconds=0.05))

    async def slow_handler(context):
        await asyncio.sleep(0.2)
        return 75000

    submitted = await executor.execute_task(make_agent(), "get_products", {}, slow_handler)
    result = await submitted.submitted.wait_for_completion(poll_interval=0)

    assert result.success is True
    assert result.status is TaskStatus.COMPLETED
    assert result.metadata.clarification_rounds == 1
