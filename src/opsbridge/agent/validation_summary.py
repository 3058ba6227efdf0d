"""Markdown message shown to the operator while a destructive call waits for approval."""

import json
import re
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
)

from opsbridge.config import settings
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import (
    HistoryEntry,
    ValidationRequest,
)

LABEL_CANDIDATE_KEYS = ("name", "title", "handle", "code", "sku", "display_name", "label")
DIFF_KEYS = ("body", "pathParams", "path_parameters", "query", "queryParams", "headers")
MAX_DIFF_NOTES = 6
MAX_DIFF_DEPTH = 4
DIFF_VALUE_MAX_LENGTH = 120

_ACRONYMS = {"Id": "ID", "Ids": "IDs", "Url": "URL", "Sku": "SKU", "Skus": "SKUs", "Api": "API"}
_OPERATION_PREFIX_RE = re.compile(r"^(Admin|Store)(Post|Delete|Put|Patch)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Small text helpers
# ---------------------------------------------------------------------------
def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def friendly_key(key: str) -> str:
    words = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", key).replace("_", " ").split()
    return " ".join(_ACRONYMS.get(word.capitalize(), word.capitalize()) for word in words)


def format_operation_title(operation_id: str) -> str:
    """``AdminPostProducts`` -> ``Create Products``."""
    if not operation_id:
        return ""
    spaced = re.sub(r"([A-Z])", r" \1", _OPERATION_PREFIX_RE.sub("", operation_id)).strip()
    if re.search("Delete", operation_id, re.IGNORECASE):
        action = "Delete"
    elif re.search("Post", operation_id, re.IGNORECASE):
        action = "Create"
    elif re.search("Put|Patch", operation_id, re.IGNORECASE):
        action = "Update"
    else:
        action = "Modify"
    return f"{action} {spaced}".strip()


def has_renderable_data(value: Any) -> bool:
    if isinstance(value, list):
        return any(has_renderable_data(item) for item in value)
    if isinstance(value, dict):
        return any(has_renderable_data(item) for item in value.values())
    return True


def pick_label(record: Any) -> Optional[str]:
    """Best human label for a record: a known name-like key, else the first string found."""
    if not isinstance(record, dict):
        return None
    for key in LABEL_CANDIDATE_KEYS:
        candidate = record.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    for value in record.values():
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = pick_label(value)
            if nested:
                return nested
    return None


def build_label_map(sources: Iterable[Any]) -> Dict[str, str]:
    """Map entity ids seen anywhere in *sources* to their human labels."""
    labels: Dict[str, str] = {}

    def visit(value: Any) -> None:
        if isinstance(value, list):
            for item in value:
                visit(item)
        elif isinstance(value, dict):
            entity_id = value.get("id")
            if isinstance(entity_id, str) and entity_id not in labels:
                for key in LABEL_CANDIDATE_KEYS:
                    label = value.get(key)
                    if isinstance(label, str) and label.strip() and label.strip() != entity_id:
                        labels[entity_id] = label.strip()
                        break
            for child in value.values():
                visit(child)

    for source in sources:
        visit(source)
    return labels


def _format_primitive(value: Any, labels: Dict[str, str]) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        label = labels.get(value)
        return f"{label} ({value})" if label else value
    return str(value)


def format_data(value: Any, labels: Dict[str, str], indent: int = 0) -> str:
    """Render nested data as an indented markdown bullet list."""
    pad = "  " * indent
    if isinstance(value, dict):
        lines: List[str] = []
        for key, child in value.items():
            if not has_renderable_data(child):
                continue
            prefix = f"{pad}- **{friendly_key(str(key))}**"
            if isinstance(child, (dict, list)):
                lines.append(f"{prefix}\n{format_data(child, labels, indent + 1)}")
            else:
                lines.append(f"{prefix}: {_format_primitive(child, labels)}")
        return "\n".join(lines) or f"{pad}- (empty)"
    if isinstance(value, list):
        return "\n".join(format_data(item, labels, indent) for item in value) or f"{pad}- (empty)"
    return f"{pad}- {_format_primitive(value, labels)}"


# ---------------------------------------------------------------------------
# Diff against a failed previous attempt
# ---------------------------------------------------------------------------
def _stable(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


_MISSING = object()


def _format_diff_value(value: Any) -> str:
    if value is _MISSING:
        return "`undefined`"
    if isinstance(value, str):
        return f'"{truncate(value, DIFF_VALUE_MAX_LENGTH)}"'
    return truncate(json.dumps(value, default=str), DIFF_VALUE_MAX_LENGTH)


def _record_diff(path: str, previous: Any, current: Any, notes: List[str], depth: int) -> None:
    if len(notes) >= MAX_DIFF_NOTES:
        return
    if previous is not _MISSING and current is not _MISSING and _stable(previous) == _stable(current):
        return
    if depth < MAX_DIFF_DEPTH and isinstance(previous, dict) and isinstance(current, dict):
        for key in list(dict.fromkeys([*previous, *current])):
            next_path = f"{path}.{key}" if path else str(key)
            _record_diff(next_path, previous.get(key, _MISSING), current.get(key, _MISSING), notes, depth + 1)
            if len(notes) >= MAX_DIFF_NOTES:
                return
        return

    if previous is _MISSING:
        notes.append(f"Added `{path}` = {_format_diff_value(current)}")
    elif current is _MISSING:
        notes.append(f"Removed `{path}` (was {_format_diff_value(previous)})")
    else:
        notes.append(
            f"Updated `{path}` from {_format_diff_value(previous)} to {_format_diff_value(current)}"
        )


def collect_diff_notes(previous_args: Dict[str, Any], current_args: Dict[str, Any]) -> List[str]:
    """Describe up to six argument paths that changed since the previous attempt."""
    notes: List[str] = []
    for key in DIFF_KEYS:
        previous = previous_args.get(key, _MISSING)
        current = current_args.get(key, _MISSING)
        if previous is _MISSING and current is _MISSING:
            continue
        label = "pathParams" if key == "path_parameters" else key
        _record_diff(label, previous, current, notes, 0)
        if len(notes) >= MAX_DIFF_NOTES:
            break
    return notes


def is_failed_attempt(result: Any) -> bool:
    if not isinstance(result, dict):
        return False
    if result.get("error") is True or result.get("isError") is True:
        return True
    for key in ("status", "statusCode", "status_code", "code"):
        candidate = result.get(key)
        if isinstance(candidate, int) and not isinstance(candidate, bool) and candidate >= 400:
            return True
    nested = result.get("result")
    if isinstance(nested, dict):
        status = nested.get("status")
        if nested.get("isError") is True or (isinstance(status, int) and status >= 400):
            return True
    return False


def extract_error_message(result: Any) -> Optional[str]:
    if not isinstance(result, dict):
        return None
    candidates: List[Any] = [result.get("message")]
    if isinstance(result.get("error"), str):
        candidates.append(result["error"])
    data = result.get("data")
    if isinstance(data, dict):
        candidates.append(data.get("message"))
        for entry in data.get("errors") or []:
            candidates.append(entry.get("message") if isinstance(entry, dict) else entry)
    nested = result.get("result")
    if isinstance(nested, dict):
        candidates.append(nested.get("message"))
        for item in nested.get("content") or []:
            if isinstance(item, dict):
                candidates.append(item.get("text"))
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return truncate(candidate.strip(), 160)
    return None


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def _first_record(args: Dict[str, Any], keys: Sequence[str]) -> Optional[Dict[str, Any]]:
    for key in keys:
        if isinstance(args.get(key), dict):
            return args[key]
    return None


def build_validation_summary(
    request: ValidationRequest,
    history: Sequence[HistoryEntry],
    execute_tool_name: str | None = None,
) -> str:
    """Render the "Pending Approval" markdown for *request*."""
    execute_tool = execute_tool_name or settings.EXECUTE_TOOL_NAME
    method = (request.method or "POST").upper()
    action = {"DELETE": "delete", "POST": "create", "PUT": "update", "PATCH": "update"}.get(
        method, "process"
    )

    args = request.args or {}
    body = args.get("body")
    if body is not None and not isinstance(body, (dict, list)):
        body = {"Value": body}
    path_params = _first_record(args, ("pathParams", "path_parameters"))
    query_params = _first_record(args, ("query", "queryParams"))
    header_params = _first_record(args, ("headers",))

    sources: List[Any] = [request.resource_preview, args, body]
    sources.extend(extract_tool_json_payload(entry.tool_result) for entry in history)
    labels = build_label_map(source for source in sources if source is not None)

    label = pick_label(request.resource_preview) or pick_label(body)
    intro = f"I'm ready to {action} **{label}**." if label else f"I'm ready to {action} this resource."

    sections: List[str] = []

    previous = next(
        (
            entry
            for entry in reversed(history)
            if entry.tool_name == execute_tool
            and isinstance(entry.tool_args, dict)
            and entry.tool_args.get("operationId") == request.operation_id
        ),
        None,
    )
    if previous is not None and is_failed_attempt(previous.tool_result):
        change_notes: List[str] = []
        message = extract_error_message(previous.tool_result)
        if message:
            change_notes.append(f"- Last attempt failed: {message}")
        diff = collect_diff_notes(previous.tool_args, args)
        if diff:
            change_notes.append("- Updates since last attempt:")
            change_notes.extend(f"  - {note}" for note in diff)
        if change_notes:
            sections.append("**What Changed**\n" + "\n".join(change_notes))

    operation_lines: List[str] = []
    if request.operation_id:
        title = format_operation_title(request.operation_id)
        operation_lines.append(f"- Operation: {title or request.operation_id}")
    if request.path or request.method:
        endpoint = f"{method} {request.path}".strip() if request.path else method
        operation_lines.append(f"- Endpoint: `{endpoint}`")
    if operation_lines:
        sections.append("**Operation**\n" + "\n".join(operation_lines))

    if request.resource_preview and has_renderable_data(request.resource_preview):
        sections.append("**Existing Resource**\n" + format_data(request.resource_preview, labels))

    if body is not None and has_renderable_data(body):
        title = {"DELETE": "Target Details", "POST": "Request Payload"}.get(method, "Proposed Changes")
        sections.append(f"**{title}**\n" + format_data(body, labels))

    for heading, params in (
        ("Path Parameters", path_params),
        ("Query Parameters", query_params),
        ("Custom Headers", header_params),
    ):
        if params and has_renderable_data(params):
            sections.append(f"**{heading}**\n" + format_data(params, labels))

    details = "\n\n".join(sections) if sections else "_No structured details available for review._"
    return (
        f"## 🔐 Pending Approval\n\n{intro}\n\n{details}\n\n---\n\n"
        "Nothing has been executed yet. Approve to proceed or reject to abort."
    )
