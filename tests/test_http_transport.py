import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from agentcall.core.config import TransportSettings
from agentcall.core.exceptions import ProtocolError, TransportError
from agentcall.protocols.http import HttpTransport
from agentcall.schemas.agents import AgentDescriptor, ProtocolKind


def _agent(protocol: ProtocolKind, **extra) -> AgentDescriptor:
    return AgentDescriptor(
        id="agent-1",
        name="Sales Agent",
        endpoint_uri="https://agent.example.com/rpc",
        protocol=protocol,
        **extra,
    )


def _transport(handler) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(client=client, extra_headers={"X-Client": "agentcall"})


@pytest.mark.asyncio
async def test_mcp_tool_call_envelope_and_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["headers"] = request.headers
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"structuredContent": {"products": []}}})

    transport = _transport(handler)
    agent = _agent(ProtocolKind.MCP, auth_token="agent-token", headers={"X-Tenant": "acme"})

    raw = await transport.send_tool_call(agent, "get_products", {"brief": "sports"})

    assert raw == {"structuredContent": {"products": []}}
    assert seen["body"]["method"] == "tools/call"
    assert seen["body"]["params"] == {"name": "get_products", "arguments": {"brief": "sports"}}
    assert seen["headers"]["authorization"] == "Bearer agent-token"
    assert seen["headers"]["x-tenant"] == "acme"
    assert seen["headers"]["x-client"] == "agentcall"


@pytest.mark.asyncio
async def test_a2a_message_envelope_returns_whole_body():
    seen = {}
    body = {"jsonrpc": "2.0", "id": 1, "result": {"kind": "task", "status": {"state": "working"}}}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=body)

    transport = _transport(handler)
    raw = await transport.send_tool_call(
        _agent(ProtocolKind.A2A),
        "continue_task",
        {"contextId": "ctx-1", "input": 75000},
        auth_token="override",
    )

    assert raw == body
    message = seen["body"]["params"]["message"]
    assert seen["body"]["method"] == "message/send"
    assert message["contextId"] == "ctx-1"
    assert message["parts"][0]["data"] == {"skill": "continue_task", "input": {"contextId": "ctx-1", "input": 75000}}


@pytest.mark.asyncio
async def test_http_error_status_raises_transport_error():
    transport = _transport(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(TransportError, match="HTTP 503"):
        await transport.send_tool_call(_agent(ProtocolKind.MCP), "get_products", {})


@pytest.mark.asyncio
async def test_connection_error_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError):
        await _transport(handler).send_tool_call(_agent(ProtocolKind.MCP), "get_products", {})


@pytest.mark.asyncio
async def test_mcp_json_rpc_error_raises_protocol_error():
    transport = _transport(
        lambda request: httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Unknown tool"}}
        )
    )

    with pytest.raises(ProtocolError, match="Unknown tool"):
        await transport.send_tool_call(_agent(ProtocolKind.MCP), "get_widgets", {})


@pytest.mark.asyncio
async def test_non_json_body_raises_protocol_error():
    transport = _transport(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(ProtocolError, match="non-JSON"):
        await transport.send_tool_call(_agent(ProtocolKind.A2A), "get_products", {})


@pytest.mark.asyncio
async def test_transport_from_settings_owns_its_client(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        url="https://agent.example.com/rpc",
        json={"jsonrpc": "2.0", "id": 1, "result": {"structuredContent": {"formats": []}}},
        match_headers={"X-Client": "agentcall"},
    )
    settings = TransportSettings(timeout_seconds=5, extra_headers={"X-Client": "agentcall"})

    async with HttpTransport.from_settings(settings) as transport:
        raw = await transport.send_tool_call(_agent(ProtocolKind.MCP), "list_creative_formats", {})

    assert raw == {"structuredContent": {"formats": []}}
    assert transport._client.is_closed
