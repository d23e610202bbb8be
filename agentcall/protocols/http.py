from __future__ import annotations

from typing import Any, Mapping

import httpx

from agentcall.core.config import TransportSettings
from agentcall.core.exceptions import ProtocolError, TransportError
from agentcall.core.logging import get_logger
from agentcall.schemas.agents import AgentDescriptor, ProtocolKind

from .transport import build_a2a_request, build_mcp_request

logger = get_logger(name=__name__)


class HttpTransport:
    """JSON-RPC over HTTP for MCP and A2A agents."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        verify_ssl: bool = True,
        extra_headers: Mapping[str, str] | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            verify=verify_ssl,
        )
        self._extra_headers = dict(extra_headers or {})

    @classmethod
    def from_settings(cls, settings: TransportSettings) -> HttpTransport:
        return cls(
            timeout_seconds=settings.timeout_seconds,
            verify_ssl=settings.verify_ssl,
            extra_headers=settings.extra_headers,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self, agent: AgentDescriptor, auth_token: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self._extra_headers)
        headers.update(agent.headers)
        token = auth_token or agent.auth_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def send_tool_call(
        self,
        agent: AgentDescriptor,
        task_name: str,
        params: Mapping[str, Any],
        auth_token: str | None = None,
    ) -> Any:
        if agent.protocol is ProtocolKind.MCP:
            body = build_mcp_request(task_name, params)
        else:
            body = build_a2a_request(task_name, params)

        try:
            response = await self._client.post(
                agent.endpoint_uri,
                json=body,
                headers=self._headers(agent, auth_token),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "agent_http_error",
                agent=agent.id,
                task=task_name,
                status=exc.response.status_code,
            )
            raise TransportError(
                f"Agent '{agent.id}' returned HTTP {exc.response.status_code}",
                details={"agent_id": agent.id, "status": exc.response.status_code},
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("agent_request_failed", agent=agent.id, task=task_name, error=str(exc))
            raise TransportError(
                f"Request to agent '{agent.id}' failed: {exc}",
                details={"agent_id": agent.id},
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError(
                f"Agent '{agent.id}' returned a non-JSON body",
                details={"agent_id": agent.id},
            ) from exc

        if agent.protocol is ProtocolKind.MCP and isinstance(payload, Mapping) and "jsonrpc" in payload:
            error = payload.get("error")
            if error:
                message = error.get("message") if isinstance(error, Mapping) else str(error)
                raise ProtocolError(
                    f"MCP error from agent '{agent.id}': {message}",
                    details={"agent_id": agent.id, "error": error},
                )
            return payload.get("result")
        return payload


__all__ = ["HttpTransport"]
