"""
Turn loosely-shaped planner output into a strict :data:`~opsbridge.core.schema.Plan`.

LLMs rarely stick to one field naming scheme, so this module accepts synonyms for the action and
for every field it reads.  It is a total function: anything it cannot make sense of becomes a
``FinalAnswer`` carrying :data:`FALLBACK_MESSAGE`, which guarantees the loop always progresses.
"""

import re
from typing import (
    Any,
    Dict,
    Literal,
    Mapping,
    Optional,
)

from opsbridge.core.payload import ensure_markdown_minimum
from opsbridge.core.schema import (
    CallTool,
    FinalAnswer,
    Plan,
)

FALLBACK_MESSAGE = ensure_markdown_minimum(
    "I'm sorry, I couldn't complete that request. Please try rephrasing your question."
)

_FINAL_ACTIONS = frozenset({"final_answer", "finalanswer", "final_answer_step", "answer", "respond"})
_TOOL_ACTIONS = frozenset(
    {
        "call_tool",
        "calltool",
        "tool_call",
        "toolcall",
        "use_tool",
        "tool",
        "openapi_execute",
        "openapi_search",
        "openapi_schema",
    }
)
_ANSWER_FIELDS = ("answer", "response", "final_answer", "final", "message", "text")
_TOOL_NAME_FIELDS = ("tool_name", "toolName", "tool", "call_tool", "tool_call")
_TOOL_ARG_FIELDS = ("tool_args", "toolArgs", "arguments", "args")

_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")
_SEP_RE = re.compile(r"[\s-]+")


def _to_snake(text: str) -> str:
    return _SEP_RE.sub("_", _CAMEL_RE.sub(r"\1_\2", text)).lower()


def normalize_action(action: Any) -> Optional[Literal["final_answer", "call_tool"]]:
    """Map an action string (or synonym) to one of the two plan variants."""
    if not isinstance(action, str):
        return None
    trimmed = action.strip()
    if not trimmed:
        return None
    # Dotted actions such as "openapi.execute" name the tool directly.
    if "." in trimmed:
        return "call_tool"

    snake = _to_snake(trimmed)
    if snake in _FINAL_ACTIONS:
        return "final_answer"
    if snake in _TOOL_ACTIONS:
        return "call_tool"
    return None


def _non_empty_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def coerce_answer(plan: Mapping[str, Any]) -> Optional[str]:
    """Return the first non-blank answer-like field."""
    for field in _ANSWER_FIELDS:
        candidate = plan.get(field)
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def extract_operation_id(plan: Mapping[str, Any]) -> Optional[str]:
    """Find an operation id on the plan itself or inside its tool arguments."""
    raw_args = plan.get("tool_args")
    nested: Mapping[str, Any] = raw_args if isinstance(raw_args, dict) else {}
    for candidate in (
        plan.get("operationId"),
        plan.get("operation_id"),
        nested.get("operationId"),
        nested.get("operation_id"),
    ):
        found = _non_empty_string(candidate)
        if found:
            return found
    return None


def _tool_name(plan: Mapping[str, Any]) -> Optional[str]:
    action = plan.get("action")
    if isinstance(action, str) and "." in action:
        return action.strip()
    for field in _TOOL_NAME_FIELDS:
        found = _non_empty_string(plan.get(field))
        if found:
            return found
    return None


def _tool_args(plan: Mapping[str, Any], operation_id: Optional[str]) -> Dict[str, Any]:
    raw_args: Any = None
    for field in _TOOL_ARG_FIELDS:
        if plan.get(field) is not None:
            raw_args = plan[field]
            break

    args: Dict[str, Any] = dict(raw_args) if isinstance(raw_args, dict) else {}
    if operation_id and not isinstance(args.get("operationId"), str):
        args["operationId"] = operation_id
    return args


def normalize_plan(raw_plan: Any) -> Plan:
    """
    Normalize *raw_plan* into a ``FinalAnswer`` or ``CallTool``.

    Parameters
    ----------
    raw_plan:
        Whatever the planner produced: usually a dict, but ``None``, lists and scalars are
        accepted too.

    Returns
    -------
    Plan
        Never raises; unrecognized input yields ``FinalAnswer(answer=FALLBACK_MESSAGE)``.
    """
    if not isinstance(raw_plan, dict) or not raw_plan:
        return FinalAnswer(answer=FALLBACK_MESSAGE, raw=raw_plan)

    action = normalize_action(raw_plan.get("action"))

    if action == "final_answer":
        return FinalAnswer(answer=coerce_answer(raw_plan), raw=raw_plan)

    if action == "call_tool":
        operation_id = extract_operation_id(raw_plan)
        tool_name = _tool_name(raw_plan) or operation_id
        if tool_name:
            return CallTool(
                tool_name=tool_name,
                tool_args=_tool_args(raw_plan, operation_id),
                raw=raw_plan,
            )

    return FinalAnswer(answer=FALLBACK_MESSAGE, raw=raw_plan)
