from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProtocolKind(str, Enum):
    """Wire protocol spoken by a remote agent."""

    MCP = "mcp"
    A2A = "a2a"


class AgentDescriptor(BaseModel):
    """Protocol identity of a remote agent. Immutable for the duration of a call."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    endpoint_uri: str = Field(..., min_length=1)
    protocol: ProtocolKind
    auth_token: str | None = Field(default=None, repr=False)
    headers: dict[str, str] = Field(default_factory=dict)

    def summary(self) -> AgentSummary:
        return AgentSummary(id=self.id, name=self.name, protocol=self.protocol)


class AgentSummary(BaseModel):
    """Agent identity echoed back in task metadata without auth material."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    protocol: ProtocolKind
