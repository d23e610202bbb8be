from __future__ import annotations

import json
from typing import Any, Mapping

from agentcall.core import metrics
from agentcall.core.exceptions import (
    IntermediateStatusError,
    MissingArtifactError,
    MissingDataPartError,
    NormalizationError,
    ProtocolError,
    SchemaValidationError,
    UnrecognizedShapeError,
)
from agentcall.core.logging import get_logger
from agentcall.schemas.agents import ProtocolKind
from agentcall.schemas.contracts import ContractRegistry
from agentcall.schemas.tasks import InputRequest, NormalizedResponse, TaskStatus

logger = get_logger(name=__name__)

_SNIPPET_LENGTH = 100
_INTERMEDIATE = frozenset({TaskStatus.WORKING, TaskStatus.SUBMITTED, TaskStatus.INPUT_REQUIRED})
_ENVELOPE_KEYS = frozenset({"id", "name"})
_DEFAULT_QUESTION = "Additional input required"


def _has_mcp_fingerprint(raw: Mapping[str, Any]) -> bool:
    return "structuredContent" in raw or "isError" in raw or "content" in raw


def _has_a2a_fingerprint(raw: Mapping[str, Any]) -> bool:
    return "result" in raw or "error" in raw


def _resolve_fingerprints(mcp: bool, a2a: bool) -> ProtocolKind | None:
    # Both present: MCP wins.
    if mcp:
        return ProtocolKind.MCP
    if a2a:
        return ProtocolKind.A2A
    return None


def _text_entries(content: Any) -> list[str]:
    if isinstance(content, Mapping):
        content = [content]
    if not isinstance(content, list):
        return []
    return [
        item["text"]
        for item in content
        if isinstance(item, Mapping) and item.get("type") == "text" and isinstance(item.get("text"), str) and item["text"]
    ]


def _part_texts(parts: Any) -> list[str]:
    if not isinstance(parts, list):
        return []
    return [
        part["text"]
        for part in parts
        if isinstance(part, Mapping) and part.get("kind") == "text" and isinstance(part.get("text"), str) and part["text"]
    ]


def _with_message(data: Any, texts: list[str]) -> Any:
    if texts and isinstance(data, Mapping):
        return {**data, "_message": "\n".join(texts)}
    return data


def _mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


def _first_str(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


def _error_text(error: Any) -> str | None:
    if isinstance(error, str):
        return error or None
    if isinstance(error, Mapping):
        return _first_str(error.get("message"), error.get("detail"), error.get("code"))
    if isinstance(error, list) and error:
        messages = [_error_text(item) for item in error]
        joined = "; ".join(message for message in messages if message)
        return joined or None
    return None


class ResponseNormalizer:
    """Convert MCP and A2A wire responses into ``NormalizedResponse`` values.

    ``normalize`` extracts the final payload from a terminal-shaped response and
    validates it against the tool's output contract. ``interpret`` reads the
    task-level status first, so live task flows can tell a completed payload
    from a working, submitted, or input-required marker.
    """

    def __init__(self, contracts: ContractRegistry | None = None, *, strict: bool = True) -> None:
        self._contracts = contracts if contracts is not None else ContractRegistry()
        self._strict = strict

    @property
    def contracts(self) -> ContractRegistry:
        return self._contracts

    def detect_protocol(self, raw: Any) -> ProtocolKind | None:
        if not isinstance(raw, Mapping):
            return None
        return _resolve_fingerprints(_has_mcp_fingerprint(raw), _has_a2a_fingerprint(raw))

    def normalize(
        self,
        raw: Any,
        tool_name: str | None = None,
        protocol_hint: ProtocolKind | None = None,
    ) -> NormalizedResponse:
        if isinstance(raw, NormalizedResponse):
            return raw
        try:
            return self._normalize(raw, tool_name, protocol_hint)
        except (NormalizationError, SchemaValidationError) as exc:
            metrics.increment_normalization_failure(kind=exc.code.lower())
            raise

    def _normalize(
        self,
        raw: Any,
        tool_name: str | None,
        protocol_hint: ProtocolKind | None,
    ) -> NormalizedResponse:
        if not isinstance(raw, Mapping):
            raise UnrecognizedShapeError(
                f"Unable to extract a response from {type(raw).__name__}",
                details={"type": type(raw).__name__},
            )
        protocol = self._select_protocol(raw, protocol_hint)
        if protocol is ProtocolKind.MCP:
            return self._normalize_mcp(raw, tool_name)
        if protocol is ProtocolKind.A2A:
            return self._normalize_a2a(raw, tool_name)
        if "data" in raw:
            return self._normalize_envelope(raw, tool_name)
        raise UnrecognizedShapeError(
            "Unable to extract a response from the protocol wrapper",
            details={"keys": sorted(str(key) for key in raw.keys())},
        )

    def _select_protocol(self, raw: Mapping[str, Any], hint: ProtocolKind | None) -> ProtocolKind | None:
        mcp = _has_mcp_fingerprint(raw)
        a2a = _has_a2a_fingerprint(raw)
        if hint is ProtocolKind.MCP and mcp:
            return hint
        if hint is ProtocolKind.A2A and a2a:
            return hint
        return _resolve_fingerprints(mcp, a2a)

    def _normalize_mcp(self, raw: Mapping[str, Any], tool_name: str | None) -> NormalizedResponse:
        content = raw.get("content")
        texts = _text_entries(content)
        if raw.get("isError") is True:
            message = "\n".join(texts) or "MCP tool call failed"
            return NormalizedResponse(status=TaskStatus.FAILED, error_message=message)

        structured = raw.get("structuredContent")
        if structured is not None:
            return self._completed(_with_message(structured, texts), tool_name)

        if texts:
            text = texts[0]
            try:
                parsed = json.loads(text)
            except ValueError:
                snippet = text[:_SNIPPET_LENGTH] + "..." if len(text) > _SNIPPET_LENGTH else text
                metrics.increment_normalization_failure(kind="invalid_text_payload")
                return NormalizedResponse(
                    status=TaskStatus.FAILED,
                    error_message=f'Response does not contain structured data. Text content: "{snippet}"',
                )
            return self._completed(parsed, tool_name)

        raise UnrecognizedShapeError("Invalid MCP response format: no structuredContent or text content")

    def _normalize_a2a(self, raw: Mapping[str, Any], tool_name: str | None) -> NormalizedResponse:
        result = _mapping(raw.get("result")) or {}
        for candidate in (raw.get("status"), _mapping(result.get("status")) and result["status"].get("state")):
            status = TaskStatus.parse(candidate)
            if status in _INTERMEDIATE:
                raise IntermediateStatusError(status.value)
            if status is not None and status.is_failure:
                message = self._status_message(result) or _error_text(raw.get("error")) or f"Task {status.value}"
                return NormalizedResponse(status=status, error_message=message)

        error = raw.get("error") or result.get("error")
        if error:
            message = _error_text(error) or "A2A JSON-RPC error occurred"
            return NormalizedResponse(status=TaskStatus.FAILED, error_message=message)

        artifacts = result.get("artifacts")
        if not isinstance(artifacts, list) or not artifacts:
            raise MissingArtifactError("A2A completed response must have at least one artifact")

        artifact = _mapping(artifacts[-1]) or {}
        parts = artifact.get("parts")
        if not isinstance(parts, list):
            raise MissingDataPartError("A2A artifact missing parts array")
        data_parts = [
            part for part in parts if isinstance(part, Mapping) and part.get("kind") == "data"
        ]
        if not data_parts or data_parts[-1].get("data") is None:
            raise MissingDataPartError("A2A completed response must have a data part in its last artifact")

        data = data_parts[-1]["data"]
        if isinstance(data, Mapping):
            inner = data.get("response")
            if isinstance(inner, Mapping) and set(data.keys()) - {"response"} <= _ENVELOPE_KEYS:
                data = inner
        return self._completed(_with_message(data, _part_texts(parts)), tool_name)

    def _normalize_envelope(self, raw: Mapping[str, Any], tool_name: str | None) -> NormalizedResponse:
        status = TaskStatus.parse(raw.get("status"))
        if status is not None and status.is_failure:
            message = self._error_message(raw) or f"Task {status.value}"
            return NormalizedResponse(status=status, error_message=message)
        if status in _INTERMEDIATE:
            raise IntermediateStatusError(status.value)
        data = raw.get("data")
        message = raw.get("message")
        return self._completed(_with_message(data, [message] if isinstance(message, str) and message else []), tool_name)

    def _completed(self, payload: Any, tool_name: str | None) -> NormalizedResponse:
        if payload is None:
            raise UnrecognizedShapeError("Response did not carry a payload")
        if isinstance(payload, Mapping):
            errors = payload.get("errors")
            substantive = set(payload.keys()) - {"errors", "_message", "context"}
            if isinstance(errors, list) and errors and not substantive:
                return NormalizedResponse(
                    status=TaskStatus.FAILED,
                    error_message=_error_text(errors) or "Agent reported errors",
                )
        if tool_name:
            try:
                self._contracts.validate(tool_name, payload)
            except SchemaValidationError as exc:
                if self._strict:
                    raise
                logger.warning("schema_validation_skipped", tool=tool_name, issues=exc.issues)
        return NormalizedResponse(status=TaskStatus.COMPLETED, payload=payload)

    def interpret(
        self,
        raw: Any,
        tool_name: str | None = None,
        protocol_hint: ProtocolKind | None = None,
    ) -> NormalizedResponse:
        """Read the task-level status of a live response and normalize accordingly."""
        if isinstance(raw, NormalizedResponse):
            return raw
        if not isinstance(raw, Mapping):
            return self.normalize(raw, tool_name, protocol_hint)

        raw = self._unwrap_task_envelope(raw)
        status_text = self._status_text(raw)
        task_id = self._task_id(raw)
        webhook_url = self._webhook_url(raw)

        if status_text is None:
            response = self.normalize(raw, tool_name, protocol_hint)
            return self._with_ids(response, task_id, webhook_url)

        status = TaskStatus.parse(status_text)
        if status is None or status is TaskStatus.DEFERRED:
            return self._lenient(raw, status_text, tool_name, protocol_hint, task_id, webhook_url)

        if status is TaskStatus.COMPLETED:
            response = self.normalize(raw, tool_name, protocol_hint)
            return self._with_ids(response, task_id, webhook_url)
        if status is TaskStatus.INPUT_REQUIRED:
            return NormalizedResponse(
                status=status,
                input_request=self._input_request(raw),
                task_id=task_id,
                webhook_url=webhook_url,
                raw_status=status_text,
            )
        if status.is_failure:
            return NormalizedResponse(
                status=status,
                error_message=self._error_message(raw) or f"Task {status.value}",
                task_id=task_id,
                webhook_url=webhook_url,
                raw_status=status_text,
            )
        return NormalizedResponse(
            status=status,
            payload=self._progress_payload(raw),
            task_id=task_id,
            webhook_url=webhook_url,
            raw_status=status_text,
        )

    def _lenient(
        self,
        raw: Mapping[str, Any],
        status_text: str,
        tool_name: str | None,
        protocol_hint: ProtocolKind | None,
        task_id: str | None,
        webhook_url: str | None,
    ) -> NormalizedResponse:
        try:
            response = self.normalize(raw, tool_name, protocol_hint)
        except NormalizationError:
            payload = raw.get("data") if raw.get("data") is not None else raw.get("result")
            if payload is None:
                raise ProtocolError(f"Unknown status: {status_text}", details={"status": status_text}) from None
            response = NormalizedResponse(status=TaskStatus.COMPLETED, payload=payload)
        logger.info("unknown_status_treated_as_completed", status=status_text, tool=tool_name)
        return self._with_ids(response, task_id, webhook_url, raw_status=status_text)

    @staticmethod
    def _with_ids(
        response: NormalizedResponse,
        task_id: str | None,
        webhook_url: str | None,
        *,
        raw_status: str | None = None,
    ) -> NormalizedResponse:
        updates: dict[str, Any] = {}
        if task_id and not response.task_id:
            updates["task_id"] = task_id
        if webhook_url and not response.webhook_url:
            updates["webhook_url"] = webhook_url
        if raw_status and not response.raw_status:
            updates["raw_status"] = raw_status
        return response.model_copy(update=updates) if updates else response

    @staticmethod
    def _unwrap_task_envelope(raw: Mapping[str, Any]) -> Mapping[str, Any]:
        """Flatten a ``tasks/get`` reply of the form ``{task: {status, result?}}``."""
        task = _mapping(raw.get("task"))
        if task is None:
            structured = _mapping(raw.get("structuredContent"))
            task = _mapping(structured.get("task")) if structured else None
        if task is None:
            result = _mapping(raw.get("result"))
            task = _mapping(result.get("task")) if result else None
        if task is None or "status" not in task:
            return raw
        envelope: dict[str, Any] = {"status": task.get("status"), "data": task.get("result")}
        for key in ("task_id", "taskId", "id", "context_id", "contextId", "webhook_url"):
            if task.get(key) is not None:
                envelope[key] = task[key]
        for key in ("error", "message", "input_request"):
            if task.get(key) is not None:
                envelope[key] = task[key]
        return envelope

    @staticmethod
    def _sources(raw: Mapping[str, Any]) -> list[Mapping[str, Any]]:
        sources: list[Mapping[str, Any]] = [raw]
        for key in ("input_request", "inputRequest", "structuredContent", "data"):
            candidate = _mapping(raw.get(key))
            if candidate is not None:
                sources.append(candidate)
        result = _mapping(raw.get("result"))
        if result is not None:
            sources.append(result)
            status = _mapping(result.get("status"))
            message = _mapping(status.get("message")) if status else None
            for part in (message or {}).get("parts") or []:
                if isinstance(part, Mapping) and isinstance(part.get("data"), Mapping):
                    sources.append(part["data"])
        return sources

    def _lookup(self, raw: Mapping[str, Any], *keys: str) -> Any:
        for source in self._sources(raw):
            for key in keys:
                value = source.get(key)
                if value is not None:
                    return value
        return None

    def _status_text(self, raw: Mapping[str, Any]) -> str | None:
        top = raw.get("status")
        if isinstance(top, str) and top:
            return top
        result = _mapping(raw.get("result"))
        status = _mapping(result.get("status")) if result else None
        if status and isinstance(status.get("state"), str):
            return status["state"]
        structured = _mapping(raw.get("structuredContent"))
        if structured and TaskStatus.parse(structured.get("status")) is not None:
            return structured["status"]
        return None

    def _task_id(self, raw: Mapping[str, Any]) -> str | None:
        value = self._lookup(raw, "task_id", "taskId")
        if value is None:
            result = _mapping(raw.get("result"))
            if result and result.get("kind") == "task":
                value = result.get("id")
        return str(value) if value is not None else None

    def _webhook_url(self, raw: Mapping[str, Any]) -> str | None:
        value = self._lookup(raw, "webhook_url", "webhookUrl")
        return value if isinstance(value, str) and value else None

    def _status_message(self, result: Mapping[str, Any]) -> str | None:
        status = _mapping(result.get("status"))
        message = _mapping(status.get("message")) if status else None
        if message is None:
            return None
        texts = _part_texts(message.get("parts"))
        return "\n".join(texts) or None

    def _error_message(self, raw: Mapping[str, Any]) -> str | None:
        for source in self._sources(raw):
            text = _error_text(source.get("error")) or _error_text(source.get("errors"))
            if text:
                return text
        result = _mapping(raw.get("result"))
        if result is not None:
            text = self._status_message(result)
            if text:
                return text
        return _first_str(*(source.get("message") for source in self._sources(raw)))

    def _input_request(self, raw: Mapping[str, Any]) -> InputRequest:
        result = _mapping(raw.get("result"))
        question = _first_str(
            self._lookup(raw, "question"),
            self._lookup(raw, "prompt"),
            self._lookup(raw, "message"),
            self._status_message(result) if result else None,
        )
        suggestions = self._lookup(raw, "options", "choices", "suggestions")
        validation = self._lookup(raw, "validation")
        context_id = self._lookup(raw, "contextId", "context_id")
        required = self._lookup(raw, "required")
        return InputRequest(
            question=question or _DEFAULT_QUESTION,
            field=_first_str(self._lookup(raw, "field", "parameter")),
            suggestions=list(suggestions) if isinstance(suggestions, (list, tuple)) else None,
            context_id=str(context_id) if context_id is not None else None,
            expected_type=_first_str(self._lookup(raw, "expected_type", "expectedType")),
            required=required if isinstance(required, bool) else True,
            validation=dict(validation) if isinstance(validation, Mapping) else None,
            context=_first_str(self._lookup(raw, "context", "description")),
        )

    @staticmethod
    def _progress_payload(raw: Mapping[str, Any]) -> Any | None:
        for key in ("data", "structuredContent", "progress"):
            value = raw.get(key)
            if value is not None:
                return value
        return None


__all__ = ["ResponseNormalizer"]
