from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentcall.core.exceptions import SchemaValidationError


class ToolOutput(BaseModel):
    """Base for tool output contracts; agents may return fields beyond the contract."""

    model_config = ConfigDict(extra="allow")

    errors: list[Any] | None = None


class GetProductsResponse(ToolOutput):
    products: list[dict[str, Any]]


class ListCreativeFormatsResponse(ToolOutput):
    formats: list[dict[str, Any]]


class PackageResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    package_id: str | None = None
    buyer_ref: str | None = None


class CreateMediaBuyResponse(ToolOutput):
    media_buy_id: str | None = None
    buyer_ref: str | None = None
    packages: list[PackageResult] = Field(default_factory=list)


class UpdateMediaBuyResponse(ToolOutput):
    media_buy_id: str
    buyer_ref: str | None = None


class SyncedCreative(BaseModel):
    model_config = ConfigDict(extra="allow")

    creative_id: str
    action: Literal["created", "updated", "unchanged", "failed", "deleted"]


class SyncCreativesResponse(ToolOutput):
    dry_run: bool | None = None
    creatives: list[SyncedCreative]


class ListCreativesResponse(ToolOutput):
    creatives: list[dict[str, Any]]


class GetMediaBuyDeliveryResponse(ToolOutput):
    notification_type: Literal["scheduled", "final", "delayed", "adjusted"] | None = None
    media_buy_deliveries: list[dict[str, Any]]


class ListAuthorizedPropertiesResponse(ToolOutput):
    properties: list[Any]


class ProvidePerformanceFeedbackResponse(ToolOutput):
    success: bool


class Signal(BaseModel):
    model_config = ConfigDict(extra="allow")

    signal_agent_segment_id: str
    name: str


class GetSignalsResponse(ToolOutput):
    signals: list[Signal]


class ActivateSignalResponse(ToolOutput):
    decisioning_platform_segment_id: str | None = None
    estimated_activation_duration_minutes: float | None = Field(default=None, ge=0)


def default_contracts() -> dict[str, type[BaseModel]]:
    return {
        "get_products": GetProductsResponse,
        "list_creative_formats": ListCreativeFormatsResponse,
        "create_media_buy": CreateMediaBuyResponse,
        "update_media_buy": UpdateMediaBuyResponse,
        "sync_creatives": SyncCreativesResponse,
        "list_creatives": ListCreativesResponse,
        "get_media_buy_delivery": GetMediaBuyDeliveryResponse,
        "list_authorized_properties": ListAuthorizedPropertiesResponse,
        "provide_performance_feedback": ProvidePerformanceFeedbackResponse,
        "get_signals": GetSignalsResponse,
        "activate_signal": ActivateSignalResponse,
    }


class ContractRegistry:
    """Output contracts keyed by tool name."""

    def __init__(self, contracts: Mapping[str, type[BaseModel]] | None = None) -> None:
        self._contracts: dict[str, type[BaseModel]] = dict(default_contracts() if contracts is None else contracts)

    def register(self, tool_name: str, contract: type[BaseModel]) -> None:
        self._contracts[tool_name] = contract

    def get(self, tool_name: str) -> type[BaseModel] | None:
        return self._contracts.get(tool_name)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._contracts

    def validate(self, tool_name: str, payload: Any) -> None:
        contract = self._contracts.get(tool_name)
        if contract is None:
            return
        if not isinstance(payload, Mapping):
            raise SchemaValidationError(tool_name, [f"expected an object, got {type(payload).__name__}"])
        candidate = {key: value for key, value in payload.items() if key != "_message"}
        try:
            contract.model_validate(candidate)
        except ValidationError as exc:
            issues = [_format_issue(error) for error in exc.errors()]
            raise SchemaValidationError(tool_name, issues) from exc


def _format_issue(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    return f"{location}: {error.get('msg', 'invalid value')}"


__all__ = [
    "ContractRegistry",
    "ToolOutput",
    "default_contracts",
]
