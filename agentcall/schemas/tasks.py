from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .agents import AgentDescriptor, AgentSummary

if TYPE_CHECKING:
    from agentcall.orchestration.executor import DeferredContinuation
    from agentcall.services.async_completion import SubmittedContinuation


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    WORKING = "working"
    SUBMITTED = "submitted"
    INPUT_REQUIRED = "input-required"
    DEFERRED = "deferred"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_paused(self) -> bool:
        return self in (TaskStatus.INPUT_REQUIRED, TaskStatus.DEFERRED)

    @property
    def is_failure(self) -> bool:
        return self in (TaskStatus.FAILED, TaskStatus.REJECTED, TaskStatus.CANCELED)

    @classmethod
    def parse(cls, value: Any) -> TaskStatus | None:
        """Map a wire status string onto a known status, or None when unrecognized."""
        if isinstance(value, TaskStatus):
            return value
        if not isinstance(value, str):
            return None
        candidate = value.strip().lower().replace("_", "-")
        candidate = _STATUS_ALIASES.get(candidate, candidate)
        try:
            return cls(candidate)
        except ValueError:
            return None


_TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.REJECTED, TaskStatus.CANCELED}
)
_STATUS_ALIASES = {"cancelled": "canceled", "complete": "completed", "success": "completed"}


class InputRequest(BaseModel):
    question: str = Field(..., min_length=1)
    field: str | None = None
    suggestions: list[Any] | None = None
    context_id: str | None = None
    expected_type: str | None = None
    required: bool = True
    validation: dict[str, Any] | None = None
    context: str | None = None


class NormalizedResponse(BaseModel):
    """Canonical response shape shared by MCP and A2A agents."""

    model_config = ConfigDict(frozen=True)

    status: TaskStatus
    payload: Any | None = None
    error_message: str | None = None
    input_request: InputRequest | None = None
    task_id: str | None = None
    webhook_url: str | None = None
    raw_status: str | None = None

    @model_validator(mode="after")
    def _check_population(self) -> NormalizedResponse:
        status = self.status
        if status is TaskStatus.COMPLETED:
            if self.payload is None or self.error_message is not None or self.input_request is not None:
                raise ValueError("completed responses carry a payload and nothing else")
        elif status.is_failure:
            if not self.error_message or self.payload is not None or self.input_request is not None:
                raise ValueError(f"{status.value} responses carry an error message and nothing else")
        elif status is TaskStatus.INPUT_REQUIRED:
            if self.input_request is None or self.payload is not None or self.error_message is not None:
                raise ValueError("input-required responses carry an input request and nothing else")
        elif self.error_message is not None or self.input_request is not None:
            raise ValueError(f"{status.value} responses cannot carry an error message or input request")
        return self


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    tool_name: str | None = None
    timestamp_ms: int = Field(default_factory=lambda: int(time.time() * 1000))
    field: str | None = None
    attempt: int | None = None


class ConversationMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    role: MessageRole
    content: Any = None
    metadata: MessageMetadata


class DeferredState(BaseModel):
    """Persisted record of a clarification whose answer was postponed."""

    token: str = Field(..., min_length=1)
    task_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    agent: AgentDescriptor
    context_id: str | None = None
    task_id: str | None = None
    question: str | None = None
    field: str | None = None
    clarification_rounds: int = Field(default=0, ge=0)
    conversation: list[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TaskSnapshot(BaseModel):
    task_id: str
    status: str
    task_type: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    result: Any | None = None
    error: str | None = None


class TaskMetadata(BaseModel):
    task_id: str
    task_name: str
    agent: AgentSummary
    status: TaskStatus
    clarification_rounds: int = 0
    response_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    context_id: str | None = None
    error_code: str | None = None
    input_request: InputRequest | None = None


@dataclass(slots=True)
class TaskResult:
    """Outcome of one execute_task or resume call."""

    success: bool
    status: TaskStatus
    metadata: TaskMetadata
    conversation: list[ConversationMessage] = field(default_factory=list)
    data: Any | None = None
    error: str | None = None
    submitted: SubmittedContinuation | None = None
    deferred: DeferredContinuation | None = None
    working: SubmittedContinuation | None = None

    @property
    def is_paused(self) -> bool:
        return self.status.is_paused

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "data": self.data,
            "error": self.error,
            "metadata": self.metadata.model_dump(mode="json"),
            "conversation": [message.model_dump(mode="json") for message in self.conversation],
        }
        if self.submitted is not None:
            payload["submitted"] = {"task_id": self.submitted.task_id, "webhook_url": self.submitted.webhook_url}
        if self.working is not None:
            payload["working"] = {"task_id": self.working.task_id, "webhook_url": self.working.webhook_url}
        if self.deferred is not None:
            payload["deferred"] = {"token": self.deferred.token, "question": self.deferred.question}
        return payload


__all__ = [
    "ConversationMessage",
    "DeferredState",
    "InputRequest",
    "MessageMetadata",
    "MessageRole",
    "NormalizedResponse",
    "TaskMetadata",
    "TaskResult",
    "TaskSnapshot",
    "TaskStatus",
]
