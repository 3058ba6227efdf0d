"""
Executes one planned tool call against the gateway.

Destructive calls of the execute tool are not run here: the executor gathers schema metadata and
a preview of the target resource, registers a validation request and hands that back instead.
Every other call is dispatched, its JSON payload summarized, and failures are turned into a
structured error object rather than raised.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from opsbridge.agent.aggregators import summarize_payload
from opsbridge.agent.history_tracker import normalize_meta
from opsbridge.agent.validation import ValidationManager
from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.payload import (
    collect_ground_truth_numbers,
    extract_tool_json_payload,
)
from opsbridge.core.schema import (
    AssistantSummary,
    ToolMeta,
    ValidationRequest,
)
from opsbridge.tools import (
    ToolGateway,
    ToolGatewayError,
)

logger = logging.getLogger(__name__)

PREVIEW_PRIORITY_FIELDS = (
    "id",
    "title",
    "name",
    "handle",
    "status",
    "code",
    "sku",
    "email",
    "description",
    "amount",
    "currency_code",
    "created_at",
    "updated_at",
)
PREVIEW_FALLBACK_FIELDS = 6

_METHOD_TOKEN_RE = re.compile(r"(Post|Delete|Put|Patch)")
_METHOD_BY_TOKEN = {"post": "POST", "delete": "DELETE", "put": "PUT", "patch": "PATCH"}


@dataclass
class ExecuteOutcome:
    """What happened when the executor handled one call."""

    result: Any = None
    payload: Any = None
    truth: Optional[Dict[str, float]] = None
    summary: Optional[AssistantSummary] = None
    error: Optional[Dict[str, Any]] = None
    validation_request: Optional[ValidationRequest] = None
    meta: Optional[ToolMeta] = None


def error_object(exc: BaseException) -> Dict[str, Any]:
    """Structured error recorded in history when a gateway call raises."""
    error: Dict[str, Any] = {"error": True, "message": str(exc) or exc.__class__.__name__}
    if isinstance(exc, ToolGatewayError):
        error["message"] = exc.message
        if isinstance(exc.code, (int, str)) and not isinstance(exc.code, bool):
            error["code"] = exc.code
        if exc.data is not None:
            error["data"] = exc.data
        if exc.result is not None:
            error["result"] = exc.result
    return error


def attach_summary(result: Any, summary: AssistantSummary) -> None:
    """Append the summary as an extra JSON text entry of the gateway envelope."""
    entry = {"type": "text", "text": json.dumps({"assistant_summary": summary.model_dump()})}
    if not isinstance(result, dict):
        return
    content = result.get("content")
    if isinstance(content, list):
        content.append(entry)
    else:
        result["content"] = [entry]


def derive_read_operation_id(operation_id: str) -> Optional[str]:
    """``AdminPostProductsId`` -> ``AdminGetProductsId``; ``None`` when there is no write token."""
    if not _METHOD_TOKEN_RE.search(operation_id):
        return None
    return _METHOD_TOKEN_RE.sub("Get", operation_id, count=1)


def method_from_operation_id(operation_id: str) -> str:
    match = _METHOD_TOKEN_RE.search(operation_id)
    return _METHOD_BY_TOKEN[match.group(1).lower()] if match else "POST"


def path_params_of(args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for key in ("pathParams", "path_parameters"):
        value = args.get(key)
        if isinstance(value, dict) and value:
            return value
    return None


def clean_field_enums(value: Any) -> Optional[Dict[str, List[Any]]]:
    """Keep ``field -> [allowed values]`` pairs; values may be any JSON scalar."""
    if not isinstance(value, dict):
        return None
    cleaned = {
        str(field): [item for item in options if item is None or isinstance(item, (str, int, float, bool))]
        for field, options in value.items()
        if isinstance(options, list)
    }
    return {field: options for field, options in cleaned.items() if options} or None


def clean_read_only_fields(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, str) and item] or None


def compact_preview(payload: Any) -> Optional[Dict[str, Any]]:
    """Reduce a read payload to a short single-entity summary."""
    entity = payload
    # {"product": {...}} style wrappers hold the entity one level down.
    if isinstance(entity, dict) and len(entity) == 1:
        (only,) = entity.values()
        if isinstance(only, dict):
            entity = only
    if not isinstance(entity, dict):
        return None

    scalars = {
        key: value
        for key, value in entity.items()
        if value not in (None, "") and not isinstance(value, (dict, list))
    }
    preview = {key: scalars[key] for key in PREVIEW_PRIORITY_FIELDS if key in scalars}
    if not preview:
        preview = dict(list(scalars.items())[:PREVIEW_FALLBACK_FIELDS])
    return preview or None


def _now_ms() -> float:
    return time.time() * 1000.0


class ToolExecutor:
    """Runs tool calls for the ask loop; one instance may be shared by many turns."""

    def __init__(
        self,
        gateway: ToolGateway,
        validation_manager: ValidationManager,
        config: Settings | None = None,
    ) -> None:
        self.gateway = gateway
        self.validation_manager = validation_manager
        self.config = config or settings
        self._validation_re = re.compile(self.config.VALIDATION_PATTERN, re.IGNORECASE)

    # ------------------------------------------------------------------
    # Validation gate
    # ------------------------------------------------------------------
    def requires_validation(self, tool_name: str, args: Dict[str, Any]) -> bool:
        """True for execute-tool calls whose operation id looks destructive."""
        if tool_name != self.config.EXECUTE_TOOL_NAME:
            return False
        operation_id = args.get("operationId")
        return isinstance(operation_id, str) and bool(self._validation_re.search(operation_id))

    async def fetch_schema(self, operation_id: str) -> Dict[str, Any]:
        """Schema metadata for *operation_id*; empty on any failure."""
        try:
            result = await self.gateway.call_tool(
                self.config.SCHEMA_TOOL_NAME, {"operationId": operation_id}
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Schema lookup for %s failed: %s", operation_id, exc)
            return {}
        payload = extract_tool_json_payload(result)
        return payload if isinstance(payload, dict) else {}

    async def fetch_preview(self, operation_id: str, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Compact view of the resource a destructive call targets; ``None`` on any failure."""
        path_params = path_params_of(args)
        read_operation = derive_read_operation_id(operation_id)
        if not path_params or not read_operation:
            return None
        try:
            result = await self.gateway.call_tool(
                self.config.EXECUTE_TOOL_NAME,
                {"operationId": read_operation, "pathParams": path_params},
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Preview via %s failed: %s", read_operation, exc)
            return None
        if isinstance(result, dict) and result.get("isError") is True:
            return None
        return compact_preview(extract_tool_json_payload(result))

    async def _request_validation(self, args: Dict[str, Any]) -> ValidationRequest:
        operation_id = str(args["operationId"])
        schema = await self.fetch_schema(operation_id)
        preview = await self.fetch_preview(operation_id, args)

        enums = schema.get("bodyFieldEnums")
        read_only = schema.get("bodyFieldReadOnly")
        method = schema.get("method")
        path = schema.get("path")
        return self.validation_manager.create_validation_request(
            operation_id=operation_id,
            method=method.upper() if isinstance(method, str) and method else method_from_operation_id(operation_id),
            path=path if isinstance(path, str) else "",
            args=args,
            body_field_enums=clean_field_enums(enums),
            body_field_read_only=clean_read_only_fields(read_only),
            resource_preview=preview,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(
        self,
        tool_name: str,
        args: Dict[str, Any],
        skip_validation: bool = False,
    ) -> ExecuteOutcome:
        """
        Handle one tool call.

        Parameters
        ----------
        tool_name, args:
            The normalized call.
        skip_validation:
            Set when resuming an approved call so it is not gated a second time.

        Returns
        -------
        ExecuteOutcome
            Exactly one of ``validation_request``, ``error`` or ``result`` is meaningful.
        """
        if not skip_validation and self.requires_validation(tool_name, args):
            request = await self._request_validation(args)
            logger.info(
                "Operation %s requires approval (validation %s)", request.operation_id, request.id
            )
            return ExecuteOutcome(validation_request=request)

        started_ms = _now_ms()
        started = time.perf_counter()
        try:
            result = await self.gateway.call_tool(tool_name, args)
        except Exception as exc:  # pylint: disable=broad-except
            duration = (time.perf_counter() - started) * 1000.0
            logger.warning("Tool %s failed: %s", tool_name, exc)
            return ExecuteOutcome(
                error=error_object(exc),
                meta=normalize_meta(duration, started_ms, started_ms + duration),
            )
        duration = (time.perf_counter() - started) * 1000.0
        meta = normalize_meta(duration, started_ms, started_ms + duration)

        payload = extract_tool_json_payload(result)
        truth = collect_ground_truth_numbers(payload)
        summary = summarize_payload(payload)
        if summary is not None:
            attach_summary(result, summary)

        return ExecuteOutcome(result=result, payload=payload, truth=truth, summary=summary, meta=meta)
