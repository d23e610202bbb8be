"""
Orchestration Package

Task execution components shared by every agent protocol:
- The task state machine (clarification loop, deferral, resume)
- Clarification handler directives and prebuilt handlers
"""

from .executor import DeferredContinuation, TaskExecutor
from .handlers import (
    Abort,
    Answer,
    Defer,
    HandlerContext,
    auto_approve_handler,
    combine_handlers,
    conditional_handler,
    defer_all_handler,
    field_handler,
    retry_handler,
    suggestion_handler,
    validated_handler,
)

__all__ = [
    # Executor
    "TaskExecutor",
    "DeferredContinuation",
    # Handler directives
    "Answer",
    "Defer",
    "Abort",
    "HandlerContext",
    # Prebuilt handlers
    "auto_approve_handler",
    "defer_all_handler",
    "field_handler",
    "conditional_handler",
    "retry_handler",
    "suggestion_handler",
    "validated_handler",
    "combine_handlers",
]
