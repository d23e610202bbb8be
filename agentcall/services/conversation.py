from __future__ import annotations

import copy
from collections.abc import Iterator
from typing import Any, Iterable

from agentcall.schemas.tasks import ConversationMessage, MessageMetadata, MessageRole


class ConversationLedger:
    """Append-only, causally ordered record of one task execution.

    Entries are never mutated once recorded; content is deep-copied on the way
    in so later changes to caller-owned params do not rewrite history.
    """

    def __init__(self, messages: Iterable[ConversationMessage] | None = None) -> None:
        self._messages: list[ConversationMessage] = list(messages or ())

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(tuple(self._messages))

    def _append(self, role: MessageRole, content: Any, metadata: MessageMetadata) -> ConversationMessage:
        message = ConversationMessage(role=role, content=copy.deepcopy(content), metadata=metadata)
        self._messages.append(message)
        return message

    def record_request(self, task_name: str, params: Any) -> ConversationMessage:
        return self._append(
            MessageRole.USER,
            {"tool": task_name, "params": params},
            MessageMetadata(type="request", tool_name=task_name),
        )

    def record_response(self, task_name: str, raw: Any) -> ConversationMessage:
        return self._append(
            MessageRole.AGENT,
            raw,
            MessageMetadata(type="response", tool_name=task_name),
        )

    def record_input_response(
        self,
        task_name: str,
        value: Any,
        *,
        field: str | None = None,
        attempt: int | None = None,
    ) -> ConversationMessage:
        return self._append(
            MessageRole.USER,
            value,
            MessageMetadata(type="input_response", tool_name=task_name, field=field, attempt=attempt),
        )

    def snapshot(self) -> list[ConversationMessage]:
        return list(self._messages)

    def was_field_discussed(self, field: str) -> bool:
        return any(message.metadata.field == field for message in self._messages)

    def previous_response(self, field: str) -> Any | None:
        for message in reversed(self._messages):
            if message.metadata.type == "input_response" and message.metadata.field == field:
                return message.content
        return None

    def summary(self) -> str:
        lines = []
        for message in self._messages:
            content = message.content
            if isinstance(content, (dict, list)):
                rendered = _truncate(repr(content))
            else:
                rendered = _truncate(str(content))
            lines.append(f"{message.role.value} ({message.metadata.type}): {rendered}")
        return "\n".join(lines)


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


__all__ = ["ConversationLedger"]
