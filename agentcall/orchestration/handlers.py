from __future__ import annotations

import inspect
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, NoReturn, Union
from uuid import uuid4

from agentcall.core.exceptions import TaskAbortedError
from agentcall.core.logging import get_logger
from agentcall.schemas.agents import AgentDescriptor
from agentcall.schemas.tasks import ConversationMessage, InputRequest
from agentcall.services.conversation import ConversationLedger

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class Answer:
    value: Any


@dataclass(frozen=True, slots=True)
class Defer:
    token: str


@dataclass(frozen=True, slots=True)
class Abort:
    reason: str | None = None


HandlerDecision = Union[Answer, Defer, Abort]


def coerce_decision(value: Any) -> HandlerDecision:
    """Map a handler return value onto a directive.

    Plain values become ``Answer``; ``{"defer": True, "token": ...}`` and
    ``{"abort": True, "reason": ...}`` dictionaries are accepted as legacy
    spellings of ``Defer`` and ``Abort``.
    """
    if isinstance(value, (Answer, Defer, Abort)):
        return value
    if isinstance(value, Mapping):
        if value.get("defer") is True:
            return Defer(token=str(value.get("token") or uuid4()))
        if value.get("abort") is True:
            reason = value.get("reason")
            return Abort(reason=str(reason) if reason is not None else None)
    return Answer(value)


@dataclass(slots=True)
class HandlerContext:
    """Everything a clarification handler sees when an agent asks for input."""

    task_id: str
    task_name: str
    agent: AgentDescriptor
    attempt: int
    max_attempts: int
    messages: list[ConversationMessage]
    input_request: InputRequest
    ledger: ConversationLedger = field(repr=False)

    def was_field_discussed(self, field_name: str) -> bool:
        return self.ledger.was_field_discussed(field_name)

    def get_previous_response(self, field_name: str) -> Any | None:
        return self.ledger.previous_response(field_name)

    def get_summary(self) -> str:
        return self.ledger.summary()

    def defer_to_human(self, token: str | None = None) -> Defer:
        return Defer(token=token or str(uuid4()))

    def abort(self, reason: str | None = None) -> NoReturn:
        raise TaskAbortedError(reason)


InputHandler = Callable[[HandlerContext], Any]


async def invoke_handler(handler: InputHandler, context: HandlerContext) -> Any:
    value = handler(context)
    if inspect.isawaitable(value):
        value = await value
    return value


async def _resolve(response: Any, context: HandlerContext) -> Any:
    if callable(response):
        return await invoke_handler(response, context)
    return response


def auto_approve_handler(context: HandlerContext) -> bool:
    return True


def defer_all_handler(context: HandlerContext) -> Defer:
    return context.defer_to_human()


def field_handler(
    field_map: Mapping[str, Any],
    default: Any | InputHandler | None = None,
) -> InputHandler:
    """Answer by the requested field name; values may be literals or handlers."""

    async def _handler(context: HandlerContext) -> Any:
        name = context.input_request.field
        if name and name in field_map:
            return await _resolve(field_map[name], context)
        if default is not None:
            return await _resolve(default, context)
        return context.defer_to_human()

    return _handler


def conditional_handler(
    conditions: Sequence[tuple[Callable[[HandlerContext], bool], InputHandler]],
    default: InputHandler = defer_all_handler,
) -> InputHandler:
    async def _handler(context: HandlerContext) -> Any:
        for condition, handler in conditions:
            if condition(context):
                return await invoke_handler(handler, context)
        return await invoke_handler(default, context)

    return _handler


def retry_handler(responses: Sequence[Any], default: Any | InputHandler = defer_all_handler) -> InputHandler:
    """Return ``responses[attempt - 1]``, then ``default`` once the list is exhausted."""

    async def _handler(context: HandlerContext) -> Any:
        index = context.attempt - 1
        if 0 <= index < len(responses):
            return await _resolve(responses[index], context)
        return await _resolve(default, context)

    return _handler


def suggestion_handler(index: int = 0, fallback: InputHandler = defer_all_handler) -> InputHandler:
    """Pick one of the agent's suggestions; ``-1`` selects the last."""

    async def _handler(context: HandlerContext) -> Any:
        suggestions = context.input_request.suggestions or []
        if suggestions:
            if index == -1:
                return suggestions[-1]
            if 0 <= index < len(suggestions):
                return suggestions[index]
        return await invoke_handler(fallback, context)

    return _handler


def _satisfies(value: Any, validation: Mapping[str, Any]) -> bool:
    allowed = validation.get("enum")
    if isinstance(allowed, (list, tuple)) and value not in allowed:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        minimum = validation.get("min")
        maximum = validation.get("max")
        if minimum is not None and value < minimum:
            return False
        if maximum is not None and value > maximum:
            return False
    pattern = validation.get("pattern")
    if isinstance(value, str) and isinstance(pattern, str) and not re.search(pattern, value):
        return False
    return True


def validated_handler(value: Any, fallback: InputHandler = defer_all_handler) -> InputHandler:
    """Answer with ``value`` only when it satisfies the request's validation rules."""

    async def _handler(context: HandlerContext) -> Any:
        validation = context.input_request.validation
        if not validation or _satisfies(value, validation):
            return value
        return await invoke_handler(fallback, context)

    return _handler


def combine_handlers(handlers: Sequence[InputHandler], default: InputHandler = defer_all_handler) -> InputHandler:
    """Try handlers in order; a defer, abort, or failure moves on to the next one."""

    async def _handler(context: HandlerContext) -> Any:
        for handler in handlers:
            try:
                decision = coerce_decision(await invoke_handler(handler, context))
            except Exception as exc:
                logger.debug("combined_handler_skipped", task_id=context.task_id, error=str(exc))
                continue
            if isinstance(decision, Answer):
                return decision.value
        return await invoke_handler(default, context)

    return _handler


__all__ = [
    "Abort",
    "Answer",
    "Defer",
    "HandlerContext",
    "HandlerDecision",
    "InputHandler",
    "auto_approve_handler",
    "coerce_decision",
    "combine_handlers",
    "conditional_handler",
    "defer_all_handler",
    "field_handler",
    "invoke_handler",
    "retry_handler",
    "suggestion_handler",
    "validated_handler",
]
