from __future__ import annotations

from agentcall.core.config import Settings, get_settings
from agentcall.core.logging import configure_logging, get_logger
from agentcall.orchestration.executor import TaskExecutor
from agentcall.protocols.http import HttpTransport
from agentcall.protocols.transport import Transport

logger = get_logger(name=__name__)


def create_executor(settings: Settings | None = None, *, transport: Transport | None = None) -> TaskExecutor:
    """Configure logging and build an executor wired from settings.

    Without an explicit ``transport`` an ``HttpTransport`` is created from the
    transport settings group.
    """
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level, json_output=settings.observability.json_logs)
    transport = transport or HttpTransport.from_settings(settings.transport)
    executor = TaskExecutor.from_settings(transport, settings)
    logger.info(
        "executor_created",
        environment=settings.environment,
        transport=type(transport).__name__,
        failure_threshold=settings.circuit_breaker.failure_threshold,
    )
    return executor


__all__ = ["create_executor"]
