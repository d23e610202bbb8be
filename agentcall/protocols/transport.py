from __future__ import annotations

from typing import Any, Mapping, Protocol
from uuid import uuid4

from agentcall.schemas.agents import AgentDescriptor

CONTINUE_TASK = "continue_task"
GET_TASK = "tasks/get"


class Transport(Protocol):
    """Sends one tool call to an agent and returns the raw protocol response."""

    async def send_tool_call(
        self,
        agent: AgentDescriptor,
        task_name: str,
        params: Mapping[str, Any],
        auth_token: str | None = None,
    ) -> Any:
        ...


def build_mcp_request(task_name: str, params: Mapping[str, Any], *, request_id: str | None = None) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id or uuid4().hex,
        "method": "tools/call",
        "params": {"name": task_name, "arguments": dict(params)},
    }


def build_a2a_request(task_name: str, params: Mapping[str, Any], *, request_id: str | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {
        "messageId": uuid4().hex,
        "role": "user",
        "kind": "message",
        "parts": [{"kind": "data", "data": {"skill": task_name, "input": dict(params)}}],
    }
    context_id = params.get("contextId")
    if context_id:
        message["contextId"] = context_id
    return {
        "jsonrpc": "2.0",
        "id": request_id or uuid4().hex,
        "method": "message/send",
        "params": {"message": message},
    }


__all__ = [
    "CONTINUE_TASK",
    "GET_TASK",
    "Transport",
    "build_a2a_request",
    "build_mcp_request",
]
