"""Compact digest of the HTTP-like outcomes of past calls of one operation."""

from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
)

from opsbridge.anps.evaluator import (
    coerce_status,
    extract_operation_id,
    normalize_operation_id,
)
from opsbridge.config import settings
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import (
    HistoryEntry,
    StatusDigest,
)

MAX_STATUS_ENTRIES = 5
_STATUS_KEYS = ("statusCode", "status", "code", "status_code")
_MESSAGE_KEYS = ("error", "message", "statusText", "reason", "title")


def _candidate_records(entry: HistoryEntry) -> List[Dict[str, Any]]:
    records: List[Dict[str, Any]] = []
    payload = extract_tool_json_payload(entry.tool_result)
    if isinstance(payload, dict):
        records.append(payload)
    result = entry.tool_result
    if isinstance(result, dict):
        records.append(result)
        nested = result.get("result")
        if isinstance(nested, dict):
            records.append(nested)
        nested_payload = extract_tool_json_payload(nested)
        if isinstance(nested_payload, dict):
            records.append(nested_payload)
    return records


def _read_status(record: Dict[str, Any]) -> Optional[int]:
    for key in _STATUS_KEYS:
        if record.get(key) is not None:
            return coerce_status(record[key])
    return None


def _read_message(record: Dict[str, Any]) -> Optional[str]:
    for key in _MESSAGE_KEYS:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def summarize_status_messages(
    history: Sequence[HistoryEntry], operation_id: str, execute_tool: str | None = None
) -> List[StatusDigest]:
    """Up to the last five matching calls, oldest first."""
    tool = execute_tool or settings.EXECUTE_TOOL_NAME
    target = normalize_operation_id(operation_id)
    digests: List[StatusDigest] = []

    for entry in reversed(history):
        if entry.tool_name != tool:
            continue
        entry_id = extract_operation_id(entry.tool_args)
        if not entry_id or normalize_operation_id(entry_id) != target:
            continue

        status: Optional[int] = None
        message: Optional[str] = None
        for record in _candidate_records(entry):
            if status is None:
                status = _read_status(record)
            if message is None:
                message = _read_message(record)
            if status is not None and message is not None:
                break

        summary = entry.tool_args.get("summary")
        digests.append(
            StatusDigest(
                status_code=status,
                message=message,
                operation_summary=summary.strip() if isinstance(summary, str) and summary.strip() else entry_id,
            )
        )
        if len(digests) >= MAX_STATUS_ENTRIES:
            break

    digests.reverse()
    return digests
