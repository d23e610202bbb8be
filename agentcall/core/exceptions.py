from __future__ import annotations

from typing import Any, Mapping, Sequence


class AgentCallError(RuntimeError):
    """Base class for every error raised by agentcall."""

    code = "AGENTCALL_ERROR"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class TransportError(AgentCallError):
    """Raised when the agent could not be reached or the connection failed."""

    code = "TRANSPORT_ERROR"


class CircuitOpenError(AgentCallError):
    """Raised when the circuit breaker for an agent is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, agent_id: str, *, retry_in: float | None = None) -> None:
        super().__init__(
            f"Circuit breaker open for agent '{agent_id}'",
            details={"agent_id": agent_id, "retry_in": retry_in},
        )
        self.agent_id = agent_id
        self.retry_in = retry_in


class ProtocolError(AgentCallError):
    """Raised when an agent answers with a well-formed error envelope or an unusable status."""

    code = "PROTOCOL_ERROR"


class NormalizationError(AgentCallError):
    """Raised when a raw agent response cannot be converted to the canonical shape."""

    code = "NORMALIZATION_ERROR"


class UnrecognizedShapeError(NormalizationError):
    """Raised when a response carries neither the MCP nor the A2A fingerprint."""

    code = "UNRECOGNIZED_SHAPE"


class MissingArtifactError(NormalizationError):
    """Raised when a completed A2A response has no artifacts."""

    code = "MISSING_ARTIFACT"


class MissingDataPartError(NormalizationError):
    """Raised when the authoritative A2A artifact has no data part."""

    code = "MISSING_DATA_PART"


class IntermediateStatusError(NormalizationError):
    """Raised when asked to normalize a response that is still in flight."""

    code = "INTERMEDIATE_STATUS"

    def __init__(self, status: str) -> None:
        super().__init__(
            f"Cannot normalize an intermediate status: {status}. Only terminal responses can be normalized.",
            details={"status": status},
        )
        self.status = status


class SchemaValidationError(AgentCallError):
    """Raised when a completed payload violates the tool's output contract."""

    code = "SCHEMA_VALIDATION_ERROR"

    def __init__(self, tool_name: str, issues: Sequence[str]) -> None:
        self.tool_name = tool_name
        self.issues = list(issues)
        super().__init__(
            f"Response validation failed for {tool_name}: {'; '.join(self.issues)}",
            details={"tool_name": tool_name, "issues": self.issues},
        )


class TaskTimeoutError(AgentCallError):
    """Raised when a caller-imposed deadline elapses."""

    code = "TASK_TIMEOUT"


class InputRequiredError(AgentCallError):
    """Raised for input-required responses when the caller opted into throw-on-pause."""

    code = "INPUT_REQUIRED"

    def __init__(self, input_request: Any) -> None:
        question = getattr(input_request, "question", None) or "Agent requires additional input"
        super().__init__(f"Input required: {question}", details={"field": getattr(input_request, "field", None)})
        self.input_request = input_request


class StorageError(AgentCallError):
    """Raised when the deferred task store fails."""

    code = "STORAGE_ERROR"


class HandlerError(AgentCallError):
    """Raised when a clarification handler fails."""

    code = "HANDLER_ERROR"


class TaskAbortedError(HandlerError):
    """Raised when a clarification handler aborts the task."""

    code = "TASK_ABORTED"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(f"Task aborted: {reason or 'aborted by handler'}", details={"reason": reason})
        self.reason = reason


class MaxClarificationError(AgentCallError):
    """Raised when clarification rounds exceed the enforced bound."""

    code = "MAX_CLARIFICATIONS_EXCEEDED"

    def __init__(self, task_id: str | None, max_attempts: int) -> None:
        super().__init__(
            f"Maximum clarification attempts ({max_attempts}) exceeded for task {task_id}",
            details={"task_id": task_id, "max_attempts": max_attempts},
        )
        self.task_id = task_id
        self.max_attempts = max_attempts


class UnknownDeferredTokenError(AgentCallError, LookupError):
    """Raised when resuming a token that has no stored deferred state."""

    code = "UNKNOWN_DEFERRED_TOKEN"

    def __init__(self, token: str) -> None:
        super().__init__(f"Deferred task not found: {token}", details={"token": token})
        self.token = token


class WebhookVerificationError(AgentCallError):
    """Raised when an inbound webhook signature or timestamp is rejected."""

    code = "WEBHOOK_VERIFICATION_FAILED"


__all__ = [
    "AgentCallError",
    "CircuitOpenError",
    "HandlerError",
    "InputRequiredError",
    "IntermediateStatusError",
    "MaxClarificationError",
    "MissingArtifactError",
    "MissingDataPartError",
    "NormalizationError",
    "ProtocolError",
    "SchemaValidationError",
    "StorageError",
    "TaskAbortedError",
    "TaskTimeoutError",
    "TransportError",
    "UnknownDeferredTokenError",
    "UnrecognizedShapeError",
    "WebhookVerificationError",
]
