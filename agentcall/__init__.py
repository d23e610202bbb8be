"""Client-side task orchestration for MCP and A2A agents."""

from agentcall.core.exceptions import AgentCallError
from agentcall.orchestration.executor import TaskExecutor
from agentcall.orchestration.handlers import Abort, Answer, Defer, HandlerContext
from agentcall.schemas.agents import AgentDescriptor, ProtocolKind
from agentcall.schemas.tasks import TaskResult, TaskStatus

__all__ = [
    "Abort",
    "AgentCallError",
    "AgentDescriptor",
    "Answer",
    "Defer",
    "HandlerContext",
    "ProtocolKind",
    "TaskExecutor",
    "TaskResult",
    "TaskStatus",
]
