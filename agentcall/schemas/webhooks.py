from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WebhookPayload(BaseModel):
    """Inbound task status notification posted to a registered callback URL."""

    model_config = ConfigDict(extra="allow")

    operation_id: str | None = None
    task_type: str | None = None
    status: str
    result: Any | None = None
    error: Any | None = None
    message: str | None = None
    context_id: str | None = None
    task_id: str | None = None
    timestamp: str | float | None = None


class WebhookMetadata(BaseModel):
    operation_id: str | None = None
    context_id: str | None = None
    task_id: str | None = None
    agent_id: str | None = None
    task_type: str | None = None
    status: str
    error: Any | None = None
    timestamp: str | float | None = None


class NotificationMetadata(WebhookMetadata):
    notification_type: str
    sequence_number: int | None = None
    next_expected_at: str | None = None


class Activity(BaseModel):
    type: str
    operation_id: str | None = None
    agent_id: str | None = None
    context_id: str | None = None
    task_id: str | None = None
    task_type: str | None = None
    status: str | None = None
    payload: Any | None = None
    timestamp: str | float | datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = ["Activity", "NotificationMetadata", "WebhookMetadata", "WebhookPayload"]
