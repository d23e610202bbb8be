from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import uuid4

from agentcall.core import metrics
from agentcall.core.config import ExecutorSettings, Settings, WebhookSettings, get_settings
from agentcall.core.exceptions import (
    AgentCallError,
    CircuitOpenError,
    HandlerError,
    InputRequiredError,
    MaxClarificationError,
    ProtocolError,
    StorageError,
    TaskAbortedError,
    TaskTimeoutError,
    TransportError,
    UnknownDeferredTokenError,
)
from agentcall.core.logging import get_logger
from agentcall.protocols.transport import CONTINUE_TASK, Transport
from agentcall.schemas.agents import AgentDescriptor
from agentcall.schemas.tasks import (
    ConversationMessage,
    DeferredState,
    NormalizedResponse,
    TaskMetadata,
    TaskResult,
    TaskStatus,
)
from agentcall.services.async_completion import (
    AsyncCompletionManager,
    SubmittedContinuation,
    TemplateWebhookManager,
    WebhookManager,
)
from agentcall.services.circuit_breaker import CircuitBreaker
from agentcall.services.conversation import ConversationLedger
from agentcall.services.normalizer import ResponseNormalizer
from agentcall.services.storage import DeferredTaskStore, InMemoryDeferredTaskStore
from agentcall.services.webhooks import WebhookDispatcher

from .handlers import Abort, Defer, HandlerContext, InputHandler, coerce_decision, invoke_handler

logger = get_logger(name=__name__)

_FAILURE_CODES = {
    TaskStatus.FAILED: "AGENT_FAILED",
    TaskStatus.REJECTED: "AGENT_REJECTED",
    TaskStatus.CANCELED: "AGENT_CANCELED",
}


@dataclass(slots=True)
class ActiveTask:
    task_id: str
    task_name: str
    agent_id: str
    status: TaskStatus
    started_at: float
    clarification_rounds: int = 0


@dataclass(slots=True)
class _Execution:
    task_id: str
    task_name: str
    params: dict[str, Any]
    agent: AgentDescriptor
    ledger: ConversationLedger
    started_at: float
    handler: InputHandler | None
    max_clarifications: int
    throw_on_input_required: bool
    clarification_rounds: int = 0
    context_id: str | None = None
    active: ActiveTask | None = field(default=None, repr=False)


class DeferredContinuation:
    """Resume handle returned with a deferred result."""

    def __init__(self, executor: TaskExecutor, *, token: str, question: str | None, field: str | None) -> None:
        self._executor = executor
        self.token = token
        self.question = question
        self.field = field

    async def resume(self, value: Any, handler: InputHandler | None = None) -> TaskResult:
        return await self._executor.resume(self.token, value, handler)


class TaskExecutor:
    """Drives one task invocation through the agent status state machine.

    Every call to ``execute_task`` or ``resume`` returns a ``TaskResult``:
    agent failures, transport errors and malformed responses become failed
    results rather than exceptions. Circuit breaker state, the deferred store
    and conversation storage belong to this instance.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        settings: ExecutorSettings | None = None,
        normalizer: ResponseNormalizer | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        deferred_store: DeferredTaskStore | None = None,
        webhook_manager: WebhookManager | None = None,
        completion_manager: AsyncCompletionManager | None = None,
        webhook_settings: WebhookSettings | None = None,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._transport = transport
        self._settings = settings or ExecutorSettings()
        self._webhook_settings = webhook_settings
        self._normalizer = normalizer or ResponseNormalizer(strict=self._settings.strict_schema_validation)
        self._breaker = circuit_breaker or CircuitBreaker()
        self._store: DeferredTaskStore = deferred_store if deferred_store is not None else InMemoryDeferredTaskStore()
        self._completion = completion_manager or AsyncCompletionManager(
            self._send,
            self._normalizer,
            webhook_manager=webhook_manager,
            poll_interval=poll_interval,
        )
        self._clock = clock
        self._active: dict[str, ActiveTask] = {}
        self._conversations: dict[str, list[ConversationMessage]] | None = (
            {} if self._settings.enable_conversation_storage else None
        )

    @classmethod
    def from_settings(cls, transport: Transport, settings: Settings | None = None) -> TaskExecutor:
        settings = settings or get_settings()
        webhook_manager = (
            TemplateWebhookManager(settings.webhooks.url_template) if settings.webhooks.url_template else None
        )
        return cls(
            transport,
            settings=settings.executor,
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.circuit_breaker.failure_threshold,
                reset_timeout=settings.circuit_breaker.reset_timeout_seconds,
            ),
            deferred_store=InMemoryDeferredTaskStore(ttl_seconds=settings.storage.deferred_ttl_seconds),
            webhook_manager=webhook_manager,
            webhook_settings=settings.webhooks,
            poll_interval=settings.polling.poll_interval_seconds,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def normalizer(self) -> ResponseNormalizer:
        return self._normalizer

    @property
    def completion_manager(self) -> AsyncCompletionManager:
        return self._completion

    @property
    def deferred_store(self) -> DeferredTaskStore:
        return self._store

    def create_webhook_dispatcher(self, **kwargs: Any) -> WebhookDispatcher:
        """Build a dispatcher whose webhooks also wake this executor's submitted-task waiters."""
        if self._webhook_settings is not None:
            kwargs.setdefault("secret", self._webhook_settings.secret)
            kwargs.setdefault("max_skew_seconds", self._webhook_settings.max_skew_seconds)
        return WebhookDispatcher(completion_manager=self._completion, **kwargs)

    async def execute_task(
        self,
        agent: AgentDescriptor,
        task_name: str,
        params: Mapping[str, Any],
        handler: InputHandler | None = None,
        *,
        max_clarifications: int | None = None,
        context_id: str | None = None,
        timeout: float | None = None,
        throw_on_input_required: bool | None = None,
    ) -> TaskResult:
        history = None
        if context_id and self._conversations is not None:
            history = self._conversations.get(context_id)
        execution = self._begin(
            agent,
            task_name,
            dict(params),
            handler,
            task_id=context_id or str(uuid4()),
            ledger=ConversationLedger(history),
            max_clarifications=max_clarifications,
            throw_on_input_required=throw_on_input_required,
        )
        logger.info("task_started", task_id=execution.task_id, task=task_name, agent=agent.id)
        return await self._run(execution, self._execute(execution), self._deadline(timeout))

    async def resume(
        self,
        token: str,
        value: Any,
        handler: InputHandler | None = None,
        *,
        timeout: float | None = None,
    ) -> TaskResult:
        """Answer a deferred clarification and continue the task.

        Raises ``UnknownDeferredTokenError`` when no state is stored for ``token``.
        """
        try:
            state = await self._store.get(token)
        except Exception as exc:
            raise StorageError(f"Failed to load deferred task {token}: {exc}", details={"token": token}) from exc
        if state is None:
            raise UnknownDeferredTokenError(token)

        execution = self._begin(
            state.agent,
            state.task_name,
            dict(state.params),
            handler,
            task_id=state.task_id or token,
            ledger=ConversationLedger(state.conversation),
            max_clarifications=None,
            throw_on_input_required=None,
        )
        execution.clarification_rounds = state.clarification_rounds
        execution.context_id = state.context_id
        logger.info("task_resumed", task_id=execution.task_id, task=state.task_name, agent=state.agent.id)
        return await self._run(execution, self._resume(execution, state, value), self._deadline(timeout))

    def active_tasks(self) -> list[ActiveTask]:
        return list(self._active.values())

    def get_active_task(self, task_id: str) -> ActiveTask | None:
        return self._active.get(task_id)

    def get_conversation_history(self, task_id: str) -> list[ConversationMessage] | None:
        if self._conversations is None:
            return None
        history = self._conversations.get(task_id)
        return list(history) if history is not None else None

    def clear_conversation_history(self, task_id: str | None = None) -> None:
        if self._conversations is None:
            return
        if task_id is None:
            self._conversations.clear()
        else:
            self._conversations.pop(task_id, None)

    def _begin(
        self,
        agent: AgentDescriptor,
        task_name: str,
        params: dict[str, Any],
        handler: InputHandler | None,
        *,
        task_id: str,
        ledger: ConversationLedger,
        max_clarifications: int | None,
        throw_on_input_required: bool | None,
    ) -> _Execution:
        started_at = self._clock()
        execution = _Execution(
            task_id=task_id,
            task_name=task_name,
            params=params,
            agent=agent,
            ledger=ledger,
            started_at=started_at,
            handler=handler,
            max_clarifications=(
                self._settings.max_clarifications if max_clarifications is None else max_clarifications
            ),
            throw_on_input_required=(
                self._settings.throw_on_input_required if throw_on_input_required is None else throw_on_input_required
            ),
        )
        execution.active = ActiveTask(
            task_id=task_id,
            task_name=task_name,
            agent_id=agent.id,
            status=TaskStatus.WORKING,
            started_at=started_at,
        )
        self._active[task_id] = execution.active
        return execution

    def _deadline(self, timeout: float | None) -> float | None:
        return self._settings.default_timeout_seconds if timeout is None else timeout

    async def _run(
        self,
        execution: _Execution,
        body: Awaitable[TaskResult],
        timeout: float | None,
    ) -> TaskResult:
        result: TaskResult | None = None
        fallback = TaskStatus.CANCELED
        try:
            if timeout is None:
                result = await body
            else:
                result = await asyncio.wait_for(body, timeout=timeout)
        except asyncio.TimeoutError:
            error = TaskTimeoutError(
                f"Task {execution.task_id} timed out after {timeout}s",
                details={"task_id": execution.task_id, "timeout": timeout},
            )
            result = self._failure(execution, error)
        except InputRequiredError:
            fallback = TaskStatus.INPUT_REQUIRED
            raise
        except AgentCallError as exc:
            result = self._failure(execution, exc)
        except Exception as exc:
            logger.exception("task_unexpected_error", task_id=execution.task_id, task=execution.task_name)
            result = self._failure(execution, exc)
        finally:
            self._finish(execution, result, fallback)
        return result

    def _finish(
        self,
        execution: _Execution,
        result: TaskResult | None,
        fallback: TaskStatus = TaskStatus.CANCELED,
    ) -> None:
        status = result.status if result is not None else fallback
        handed_off = result is not None and (result.submitted is not None or result.working is not None)
        # Executions handed to a continuation are recorded once, when the continuation settles.
        if not handed_off:
            latency = self._clock() - execution.started_at
            metrics.record_task_execution(task=execution.task_name, status=status.value, latency=latency)
            metrics.observe_clarification_rounds(task=execution.task_name, rounds=execution.clarification_rounds)
        if result is not None and result.status in (TaskStatus.SUBMITTED, TaskStatus.WORKING) and execution.active:
            execution.active.status = result.status
        else:
            self._active.pop(execution.task_id, None)
        if self._conversations is not None:
            self._conversations[execution.task_id] = execution.ledger.snapshot()

    async def _execute(self, execution: _Execution) -> TaskResult:
        execution.ledger.record_request(execution.task_name, execution.params)
        raw = await self._send(execution.agent, execution.task_name, execution.params)
        execution.ledger.record_response(execution.task_name, raw)
        return await self._drive(execution, raw)

    async def _resume(self, execution: _Execution, state: DeferredState, value: Any) -> TaskResult:
        execution.clarification_rounds += 1
        execution.ledger.record_input_response(
            execution.task_name,
            value,
            field=state.field,
            attempt=execution.clarification_rounds,
        )
        raw = await self._send(
            execution.agent,
            CONTINUE_TASK,
            {"contextId": state.context_id, "input": value},
        )
        try:
            await self._store.delete(state.token)
        except Exception as exc:
            raise StorageError(
                f"Failed to remove deferred task {state.token}: {exc}",
                details={"token": state.token},
            ) from exc
        execution.ledger.record_response(execution.task_name, raw)
        return await self._drive(execution, raw)

    async def _send(self, agent: AgentDescriptor, task_name: str, params: Mapping[str, Any]) -> Any:
        async def _call() -> Any:
            try:
                return await self._transport.send_tool_call(agent, task_name, params, auth_token=agent.auth_token)
            except AgentCallError:
                raise
            except Exception as exc:
                raise TransportError(
                    f"Transport call '{task_name}' to agent '{agent.id}' failed: {exc}",
                    details={"agent_id": agent.id, "task": task_name},
                ) from exc

        try:
            raw = await self._breaker.call(agent.id, _call)
        except CircuitOpenError:
            metrics.record_transport_call(agent=agent.id, outcome="circuit_open")
            raise
        except AgentCallError:
            metrics.record_transport_call(agent=agent.id, outcome="error")
            raise
        metrics.record_transport_call(agent=agent.id, outcome="success")
        return raw

    async def _drive(
        self,
        execution: _Execution,
        raw: Any,
        response: NormalizedResponse | None = None,
    ) -> TaskResult:
        while True:
            if response is None:
                response = self._normalizer.interpret(raw, execution.task_name, execution.agent.protocol)
            logger.info(
                "task_status_interpreted",
                task_id=execution.task_id,
                task=execution.task_name,
                status=response.status.value,
            )
            status = response.status
            if status is TaskStatus.COMPLETED:
                return self._result(execution, status, success=True, data=response.payload)
            if status.is_failure:
                return self._result(
                    execution,
                    status,
                    success=False,
                    error=response.error_message,
                    error_code=_FAILURE_CODES[status],
                )
            if status is TaskStatus.WORKING:
                return await self._working(execution, response)
            if status is TaskStatus.SUBMITTED:
                return await self._submitted(execution, response)
            if status is TaskStatus.INPUT_REQUIRED:
                outcome = await self._clarify(execution, response)
                if isinstance(outcome, TaskResult):
                    return outcome
                raw, response = outcome, None
                continue
            raise ProtocolError(f"Unexpected status from agent: {status.value}", details={"status": status.value})

    async def _working(self, execution: _Execution, response: NormalizedResponse) -> TaskResult:
        handle = None
        if response.task_id:
            handle = await self._completion.submit(
                execution.agent,
                execution.task_name,
                response,
                self._async_finalizer(execution),
                self._async_failure(execution),
                register_webhook=False,
            )
        return self._result(execution, TaskStatus.WORKING, success=True, data=response.payload, working=handle)

    async def _submitted(self, execution: _Execution, response: NormalizedResponse) -> TaskResult:
        continuation = await self._completion.submit(
            execution.agent,
            execution.task_name,
            response,
            self._async_finalizer(execution),
            self._async_failure(execution),
        )
        return self._result(execution, TaskStatus.SUBMITTED, success=True, submitted=continuation)

    def _async_finalizer(self, execution: _Execution) -> Callable[[NormalizedResponse, Any], Awaitable[TaskResult]]:
        async def _finalize(response: NormalizedResponse, raw: Any) -> TaskResult:
            execution.ledger.record_response(execution.task_name, raw)
            return await self._run(execution, self._drive(execution, raw, response), None)

        return _finalize

    def _async_failure(self, execution: _Execution) -> Callable[[AgentCallError], Awaitable[TaskResult]]:
        async def _fail(error: AgentCallError) -> TaskResult:
            result = self._failure(execution, error)
            self._finish(execution, result)
            return result

        return _fail

    async def _clarify(self, execution: _Execution, response: NormalizedResponse) -> TaskResult | Any:
        request = response.input_request
        assert request is not None
        if execution.handler is None:
            if execution.throw_on_input_required:
                raise InputRequiredError(request)
            logger.info("task_input_required", task_id=execution.task_id, field=request.field)
            return self._result(
                execution,
                TaskStatus.INPUT_REQUIRED,
                success=True,
                input_request=request,
            )

        attempt = execution.clarification_rounds + 1
        if self._settings.enforce_max_clarifications and attempt > execution.max_clarifications:
            raise MaxClarificationError(execution.task_id, execution.max_clarifications)

        context = HandlerContext(
            task_id=execution.task_id,
            task_name=execution.task_name,
            agent=execution.agent,
            attempt=attempt,
            max_attempts=execution.max_clarifications,
            messages=execution.ledger.snapshot(),
            input_request=request,
            ledger=execution.ledger,
        )
        try:
            decision = coerce_decision(await invoke_handler(execution.handler, context))
        except AgentCallError:
            raise
        except Exception as exc:
            raise HandlerError(f"Input handler failed: {exc}", details={"task_id": execution.task_id}) from exc

        if isinstance(decision, Abort):
            raise TaskAbortedError(decision.reason)
        if isinstance(decision, Defer):
            return await self._defer(execution, response, decision.token)

        execution.clarification_rounds = attempt
        if execution.active is not None:
            execution.active.clarification_rounds = attempt
        context_id = request.context_id or response.task_id or execution.context_id or execution.task_id
        execution.context_id = context_id
        logger.info(
            "task_clarification_answered",
            task_id=execution.task_id,
            field=request.field,
            attempt=attempt,
        )
        execution.ledger.record_input_response(execution.task_name, decision.value, field=request.field, attempt=attempt)
        raw = await self._send(execution.agent, CONTINUE_TASK, {"contextId": context_id, "input": decision.value})
        execution.ledger.record_response(execution.task_name, raw)
        return raw

    async def _defer(self, execution: _Execution, response: NormalizedResponse, token: str) -> TaskResult:
        request = response.input_request
        assert request is not None
        state = DeferredState(
            token=token,
            task_name=execution.task_name,
            params=execution.params,
            agent=execution.agent,
            context_id=request.context_id or response.task_id or execution.context_id or execution.task_id,
            task_id=execution.task_id,
            question=request.question,
            field=request.field,
            clarification_rounds=execution.clarification_rounds,
            conversation=execution.ledger.snapshot(),
        )
        try:
            await self._store.set(token, state)
        except Exception as exc:
            raise StorageError(f"Failed to persist deferred task {token}: {exc}", details={"token": token}) from exc
        logger.info("task_deferred", task_id=execution.task_id, token=token)
        return self._result(
            execution,
            TaskStatus.DEFERRED,
            success=True,
            input_request=request,
            deferred=DeferredContinuation(self, token=token, question=request.question, field=request.field),
        )

    def _failure(self, execution: _Execution, error: BaseException) -> TaskResult:
        code = getattr(error, "code", None) or "UNEXPECTED_ERROR"
        logger.warning(
            "task_failed",
            task_id=execution.task_id,
            task=execution.task_name,
            agent=execution.agent.id,
            error_code=code,
            error=str(error),
        )
        return self._result(execution, TaskStatus.FAILED, success=False, error=str(error), error_code=code)

    def _result(
        self,
        execution: _Execution,
        status: TaskStatus,
        *,
        success: bool,
        data: Any | None = None,
        error: str | None = None,
        error_code: str | None = None,
        input_request: Any | None = None,
        submitted: SubmittedContinuation | None = None,
        deferred: DeferredContinuation | None = None,
        working: SubmittedContinuation | None = None,
    ) -> TaskResult:
        metadata = TaskMetadata(
            task_id=execution.task_id,
            task_name=execution.task_name,
            agent=execution.agent.summary(),
            status=status,
            clarification_rounds=execution.clarification_rounds,
            response_time_ms=(self._clock() - execution.started_at) * 1000.0,
            context_id=execution.context_id,
            error_code=error_code,
            input_request=input_request,
        )
        if status.is_terminal:
            logger.info("task_finished", task_id=execution.task_id, status=status.value, success=success)
        return TaskResult(
            success=success,
            status=status,
            metadata=metadata,
            conversation=execution.ledger.snapshot(),
            data=data,
            error=error,
            submitted=submitted,
            deferred=deferred,
            working=working,
        )


__all__ = ["ActiveTask", "DeferredContinuation", "TaskExecutor"]
