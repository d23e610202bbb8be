from __future__ import annotations

import hashlib
import hmac
import inspect
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, Mapping

from pydantic import ValidationError

from agentcall.core import metrics
from agentcall.core.exceptions import WebhookVerificationError
from agentcall.core.logging import get_logger
from agentcall.schemas.webhooks import Activity, NotificationMetadata, WebhookMetadata, WebhookPayload

from .async_completion import AsyncCompletionManager

logger = get_logger(name=__name__)

SIGNATURE_HEADER = "X-ADCP-Signature"
TIMESTAMP_HEADER = "X-ADCP-Timestamp"
DELIVERY_TASK_TYPE = "media_buy_delivery"

StatusHandler = Callable[[Any, WebhookMetadata], Awaitable[None] | None]
ActivityHandler = Callable[[Activity], Awaitable[None] | None]
NotificationHandler = Callable[[Any, NotificationMetadata], Awaitable[None] | None]


async def _call(handler: Callable[..., Any], *args: Any) -> None:
    value = handler(*args)
    if inspect.isawaitable(value):
        await value


def _compact_json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=False)


class WebhookDispatcher:
    """Route inbound task webhooks to caller callbacks.

    Status changes go to the handler registered for the payload's ``task_type``
    and fall back to ``on_task_status_change``. ``on_activity`` observes every
    webhook. Callback failures are logged and never propagate to the sender.
    """

    def __init__(
        self,
        *,
        status_handlers: Mapping[str, StatusHandler] | None = None,
        on_task_status_change: StatusHandler | None = None,
        on_activity: ActivityHandler | None = None,
        on_delivery_notification: NotificationHandler | None = None,
        completion_manager: AsyncCompletionManager | None = None,
        secret: str | None = None,
        max_skew_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._status_handlers: dict[str, StatusHandler] = dict(status_handlers or {})
        self._fallback = on_task_status_change
        self._on_activity = on_activity
        self._on_delivery_notification = on_delivery_notification
        self._completion_manager = completion_manager
        self._secret = secret
        self._max_skew = max_skew_seconds
        self._clock = clock

    def on_status_change(self, task_type: str, handler: StatusHandler) -> None:
        self._status_handlers[task_type] = handler

    @staticmethod
    def sign(body: str | bytes | Mapping[str, Any], secret: str, timestamp: int | str) -> str:
        if isinstance(body, Mapping):
            body = _compact_json(body)
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        message = f"{timestamp}.{body}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def verify_signature(self, body: str | bytes, signature: str | None, timestamp: str | int | None) -> None:
        if self._secret is None:
            return
        if not signature or timestamp is None:
            raise WebhookVerificationError("Missing webhook signature or timestamp")
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError) as exc:
            raise WebhookVerificationError(f"Invalid webhook timestamp: {timestamp!r}") from exc
        if abs(self._clock() - sent_at) > self._max_skew:
            raise WebhookVerificationError(
                "Webhook timestamp outside the accepted window",
                details={"timestamp": sent_at, "max_skew_seconds": self._max_skew},
            )
        expected = self.sign(body, self._secret, sent_at)
        if not hmac.compare_digest(expected, signature):
            raise WebhookVerificationError("Webhook signature mismatch")

    async def handle_request(
        self,
        body: str | bytes,
        headers: Mapping[str, str],
        *,
        agent_id: str | None = None,
    ) -> None:
        """Verify and dispatch a raw webhook request body."""
        lowered = {key.lower(): value for key, value in headers.items()}
        try:
            self.verify_signature(body, lowered.get(SIGNATURE_HEADER.lower()), lowered.get(TIMESTAMP_HEADER.lower()))
        except WebhookVerificationError:
            logger.warning("webhook_verification_failed", agent=agent_id)
            raise
        try:
            document = json.loads(body)
            payload = WebhookPayload.model_validate(document)
        except (ValueError, ValidationError) as exc:
            raise WebhookVerificationError(f"Malformed webhook payload: {exc}") from exc
        await self.handle(payload, agent_id=agent_id)

    async def handle(self, payload: WebhookPayload | Mapping[str, Any], *, agent_id: str | None = None) -> None:
        if not isinstance(payload, WebhookPayload):
            payload = WebhookPayload.model_validate(payload)

        metrics.record_webhook_received(task_type=payload.task_type or "unknown", status=payload.status)
        metadata = WebhookMetadata(
            operation_id=payload.operation_id,
            context_id=payload.context_id,
            task_id=payload.task_id,
            agent_id=agent_id or "unknown",
            task_type=payload.task_type,
            status=payload.status,
            error=payload.error,
            timestamp=payload.timestamp or time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        )
        logger.info(
            "webhook_received",
            agent=metadata.agent_id,
            task_type=payload.task_type,
            task_id=payload.task_id,
            status=payload.status,
        )

        await self._emit_activity(
            Activity(
                type="webhook_received",
                operation_id=metadata.operation_id,
                agent_id=metadata.agent_id,
                context_id=metadata.context_id,
                task_id=metadata.task_id,
                task_type=metadata.task_type,
                status=payload.status,
                payload=payload.result,
                timestamp=metadata.timestamp,
            )
        )

        if self._completion_manager is not None:
            self._completion_manager.resolve_from_webhook(payload)

        result = payload.result
        if (
            payload.task_type == DELIVERY_TASK_TYPE
            and isinstance(result, Mapping)
            and "notification_type" in result
        ):
            notification = NotificationMetadata(
                **metadata.model_dump(),
                notification_type=str(result["notification_type"]),
                sequence_number=result.get("sequence_number"),
                next_expected_at=result.get("next_expected_at"),
            )
            if self._on_delivery_notification is not None:
                await self._safe_call(self._on_delivery_notification, result, notification, task_type=payload.task_type)
            return

        handler = self._status_handlers.get(payload.task_type or "") or self._fallback
        if handler is not None:
            await self._safe_call(handler, result, metadata, task_type=payload.task_type)

    async def _emit_activity(self, activity: Activity) -> None:
        if self._on_activity is not None:
            await self._safe_call(self._on_activity, activity, task_type=activity.task_type)

    async def _safe_call(self, handler: Callable[..., Any], *args: Any, task_type: str | None) -> None:
        try:
            await _call(handler, *args)
        except Exception as exc:
            logger.exception("webhook_handler_failed", task_type=task_type, error=str(exc))


__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "WebhookDispatcher",
]
