from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Mapping, Protocol
from uuid import uuid4

from agentcall.core.exceptions import AgentCallError, ProtocolError, TaskTimeoutError
from agentcall.core.logging import get_logger
from agentcall.protocols.transport import GET_TASK
from agentcall.schemas.agents import AgentDescriptor, ProtocolKind
from agentcall.schemas.tasks import NormalizedResponse, TaskSnapshot, TaskStatus
from agentcall.schemas.webhooks import WebhookPayload

from .normalizer import ResponseNormalizer

if TYPE_CHECKING:
    from agentcall.schemas.tasks import TaskResult

logger = get_logger(name=__name__)

SendCallable = Callable[[AgentDescriptor, str, Mapping[str, Any]], Awaitable[Any]]
Finalizer = Callable[[NormalizedResponse, Any], Awaitable["TaskResult"]]
FailureHandler = Callable[[AgentCallError], Awaitable["TaskResult"]]

_POLL_CONTINUE = frozenset({TaskStatus.WORKING, TaskStatus.SUBMITTED})


class WebhookManager(Protocol):
    """Produces callback URLs and registers them with an agent."""

    def generate_url(self, agent_id: str, task_type: str, operation_id: str) -> str:
        ...

    async def register_webhook(self, agent: AgentDescriptor, task_id: str, webhook_url: str) -> None:
        ...


class TemplateWebhookManager:
    """Builds callback URLs from a template with ``{agent_id}``, ``{task_type}`` and ``{operation_id}`` macros."""

    def __init__(self, url_template: str) -> None:
        self._template = url_template
        self._registrations: dict[str, str] = {}

    def generate_url(self, agent_id: str, task_type: str, operation_id: str) -> str:
        return (
            self._template.replace("{agent_id}", agent_id)
            .replace("{task_type}", task_type)
            .replace("{operation_id}", operation_id)
        )

    async def register_webhook(self, agent: AgentDescriptor, task_id: str, webhook_url: str) -> None:
        self._registrations[task_id] = webhook_url
        logger.info("webhook_registered", agent=agent.id, task_id=task_id)

    def registered_url(self, task_id: str) -> str | None:
        return self._registrations.get(task_id)


def snapshot_from_raw(task_id: str, raw: Any) -> TaskSnapshot:
    """Read a ``tasks/get`` reply, tolerating MCP and A2A wrappers around the task record."""
    task: Mapping[str, Any] | None = None
    if isinstance(raw, Mapping):
        for candidate in (raw, raw.get("structuredContent"), raw.get("result")):
            if isinstance(candidate, Mapping) and isinstance(candidate.get("task"), Mapping):
                task = candidate["task"]
                break
        if task is None and "status" in raw:
            task = raw
    if task is None or not isinstance(task.get("status"), str):
        raise ProtocolError(f"tasks/get returned no task status for {task_id}", details={"task_id": task_id})
    error = task.get("error")
    if isinstance(error, Mapping):
        error = error.get("message")
    return TaskSnapshot(
        task_id=str(task.get("task_id") or task.get("taskId") or task_id),
        status=task["status"],
        task_type=task.get("task_type") or task.get("taskType"),
        created_at=task.get("created_at") or task.get("createdAt"),
        updated_at=task.get("updated_at") or task.get("updatedAt"),
        result=task.get("result"),
        error=error if isinstance(error, str) else None,
    )


def webhook_to_envelope(payload: WebhookPayload) -> dict[str, Any]:
    envelope: dict[str, Any] = {"status": payload.status, "data": payload.result}
    if payload.task_id:
        envelope["task_id"] = payload.task_id
    if payload.context_id:
        envelope["context_id"] = payload.context_id
    if payload.error is not None:
        envelope["error"] = payload.error
    if payload.message:
        envelope["message"] = payload.message
    return envelope


class SubmittedContinuation:
    """Tracking handle for a task the agent will finish later."""

    def __init__(
        self,
        *,
        manager: AsyncCompletionManager,
        agent: AgentDescriptor,
        task_name: str,
        task_id: str | None,
        webhook_url: str | None,
        operation_id: str,
        finalize: Finalizer,
        fail: FailureHandler,
        webhook_future: asyncio.Future[WebhookPayload] | None,
    ) -> None:
        self._manager = manager
        self.agent = agent
        self.task_name = task_name
        self.task_id = task_id
        self.webhook_url = webhook_url
        self.operation_id = operation_id
        self._finalize = finalize
        self._fail = fail
        self._webhook_future = webhook_future

    async def track(self) -> TaskSnapshot:
        """Poll the agent once for the current task status."""
        if not self.task_id:
            raise ProtocolError("Submitted task carries no task id to poll", details={"task_name": self.task_name})
        raw = await self._manager.fetch_raw(self.agent, self.task_id)
        return snapshot_from_raw(self.task_id, raw)

    async def wait_for_completion(
        self,
        poll_interval: float | None = None,
        *,
        timeout: float | None = None,
    ) -> TaskResult:
        """Block until the task reaches a terminal or paused status.

        Polling and webhook delivery race; whichever produces a settled status
        first wins and the other is cancelled. There is no internal deadline
        unless ``timeout`` is given.
        """
        interval = self._manager.poll_interval if poll_interval is None else poll_interval
        if timeout is None:
            return await self._wait(interval)
        try:
            return await asyncio.wait_for(self._wait(interval), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TaskTimeoutError(
                f"Task {self.task_id} did not complete within {timeout}s",
                details={"task_id": self.task_id, "timeout": timeout},
            ) from exc

    async def _wait(self, interval: float) -> TaskResult:
        contenders: list[asyncio.Future[Any]] = []
        if self.task_id:
            contenders.append(asyncio.ensure_future(self._poll_until_settled(interval)))
        if self._webhook_future is not None:
            contenders.append(asyncio.ensure_future(self._await_webhook()))
        if not contenders:
            raise ProtocolError(
                "Submitted task has neither a task id nor a webhook to wait on",
                details={"task_name": self.task_name},
            )
        try:
            done, _ = await asyncio.wait(contenders, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for contender in contenders:
                if not contender.done():
                    contender.cancel()
        winner = done.pop()
        # Settled: later waits fall back to polling only.
        self._manager.discard(self.operation_id, self.task_id)
        self._webhook_future = None
        return winner.result()

    async def _poll_until_settled(self, interval: float) -> TaskResult:
        assert self.task_id is not None
        while True:
            try:
                raw = await self._manager.fetch_raw(self.agent, self.task_id)
            except AgentCallError as exc:
                return await self._fail(exc)
            result = await self._settle(raw, self.agent.protocol, keep_polling=True)
            if result is not None:
                return result
            await asyncio.sleep(interval)

    async def _await_webhook(self) -> TaskResult:
        assert self._webhook_future is not None
        payload = await asyncio.shield(self._webhook_future)
        result = await self._settle(webhook_to_envelope(payload), None, keep_polling=False)
        assert result is not None
        return result

    async def _settle(self, raw: Any, protocol_hint: ProtocolKind | None, *, keep_polling: bool) -> TaskResult | None:
        try:
            response = self._manager.normalizer.interpret(raw, self.task_name, protocol_hint)
        except AgentCallError as exc:
            return await self._fail(exc)
        logger.debug("submitted_task_observed", task_id=self.task_id, status=response.status.value)
        if keep_polling and response.status in _POLL_CONTINUE:
            return None
        return await self._finalize(response, raw)


class AsyncCompletionManager:
    """Owns submitted-task continuations and the webhook futures that can resolve them."""

    def __init__(
        self,
        send: SendCallable,
        normalizer: ResponseNormalizer,
        *,
        webhook_manager: WebhookManager | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        self._send = send
        self.normalizer = normalizer
        self.webhook_manager = webhook_manager
        self.poll_interval = poll_interval
        self._pending: dict[str, asyncio.Future[WebhookPayload]] = {}

    async def fetch_raw(self, agent: AgentDescriptor, task_id: str) -> Any:
        return await self._send(agent, GET_TASK, {"taskId": task_id})

    async def submit(
        self,
        agent: AgentDescriptor,
        task_name: str,
        response: NormalizedResponse,
        finalize: Finalizer,
        fail: FailureHandler,
        *,
        register_webhook: bool = True,
    ) -> SubmittedContinuation:
        operation_id = uuid4().hex
        task_id = response.task_id
        webhook_url = response.webhook_url
        # A webhook can only be matched by task id or by an operation id the callback URL carries.
        correlatable = bool(task_id)
        if register_webhook and webhook_url is None and self.webhook_manager is not None:
            webhook_url = self.webhook_manager.generate_url(agent.id, task_name, operation_id)
            correlatable = correlatable or operation_id in webhook_url
            if task_id:
                await self.webhook_manager.register_webhook(agent, task_id, webhook_url)

        future: asyncio.Future[WebhookPayload] | None = None
        if register_webhook and webhook_url is not None and correlatable:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            self._pending[operation_id] = future
            if task_id:
                self._pending[task_id] = future

        logger.info(
            "task_submitted",
            agent=agent.id,
            task=task_name,
            task_id=task_id,
            webhook=webhook_url is not None,
        )
        return SubmittedContinuation(
            manager=self,
            agent=agent,
            task_name=task_name,
            task_id=task_id,
            webhook_url=webhook_url,
            operation_id=operation_id,
            finalize=finalize,
            fail=fail,
            webhook_future=future,
        )

    def resolve_from_webhook(self, payload: WebhookPayload) -> bool:
        """Wake any waiter for the task named in ``payload``. Returns True when a waiter was resolved."""
        if TaskStatus.parse(payload.status) in _POLL_CONTINUE:
            return False
        future = None
        keys = [key for key in (payload.task_id, payload.operation_id) if key]
        for key in keys:
            future = self._pending.get(key)
            if future is not None:
                break
        if future is None:
            return False
        stale = [key for key, value in self._pending.items() if value is future]
        for key in stale:
            self._pending.pop(key, None)
        if future.done():
            return False
        future.set_result(payload)
        return True

    def discard(self, operation_id: str, task_id: str | None = None) -> None:
        """Drop the webhook future registered for a continuation and cancel it if still unresolved."""
        future = self._pending.pop(operation_id, None)
        if future is None:
            return
        if task_id and self._pending.get(task_id) is future:
            del self._pending[task_id]
        if not future.done():
            future.cancel()

    def pending_count(self) -> int:
        return len({id(future) for future in self._pending.values()})


__all__ = [
    "AsyncCompletionManager",
    "SubmittedContinuation",
    "TemplateWebhookManager",
    "WebhookManager",
    "snapshot_from_raw",
    "webhook_to_envelope",
]
