from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExecutorSettings(BaseModel):
    max_clarifications: int = Field(3, ge=0, description="Clarification rounds exposed to handlers as max_attempts.")
    enforce_max_clarifications: bool = Field(
        False,
        description="Fail the task once a clarification round exceeds max_clarifications.",
    )
    throw_on_input_required: bool = Field(
        False,
        description="Raise InputRequiredError instead of returning a paused result when no handler is supplied.",
    )
    strict_schema_validation: bool = Field(
        True,
        description="Treat output contract violations as failures rather than warnings.",
    )
    enable_conversation_storage: bool = Field(
        False,
        description="Keep per-task conversation history on the executor for later inspection.",
    )
    default_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Deadline applied to execute_task when the caller does not pass one.",
    )


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = Field(5, ge=1, description="Consecutive failures that open the circuit.")
    reset_timeout_seconds: float = Field(60.0, gt=0, description="Cool-down before an open circuit admits a trial call.")


class PollingSettings(BaseModel):
    poll_interval_seconds: float = Field(2.0, gt=0, description="Delay between tasks/get polls for submitted tasks.")


class WebhookSettings(BaseModel):
    url_template: str | None = Field(
        default=None,
        description="Callback URL template supporting {agent_id}, {task_type} and {operation_id} macros.",
    )
    secret: str | None = Field(default=None, description="Shared secret used for HMAC webhook signatures.")
    max_skew_seconds: int = Field(300, ge=1, description="Accepted age of a signed webhook timestamp.")


class StorageSettings(BaseModel):
    deferred_ttl_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Expiry applied to in-memory deferred task state; None keeps entries until resumed.",
    )


class TransportSettings(BaseModel):
    timeout_seconds: float = Field(30.0, gt=0)
    verify_ssl: bool = Field(True)
    extra_headers: dict[str, str] = Field(default_factory=dict)


class ObservabilitySettings(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True, description="Render logs as JSON lines instead of console output.")


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)  # type: ignore[arg-type]
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)  # type: ignore[arg-type]
    polling: PollingSettings = Field(default_factory=PollingSettings)  # type: ignore[arg-type]
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)  # type: ignore[arg-type]
    storage: StorageSettings = Field(default_factory=StorageSettings)  # type: ignore[arg-type]
    transport: TransportSettings = Field(default_factory=TransportSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="AGENTCALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
