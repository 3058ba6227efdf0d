"""
Helpers for the JSON payloads that travel through tool envelopes.

Gateway results look like ``{"content": [{"type": "text", "text": "...json..."}], "isError": ...}``.
Text entries carrying JSON are the only payload channel; anything else is opaque.
"""

import json
import math
import re
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

JsonScalar = Union[str, int, float, bool, None]
JsonValue = Union[JsonScalar, List[Any], Dict[str, Any]]

_FENCE_RE = re.compile(r"```(?:json)?\n([\s\S]*?)\n```", re.IGNORECASE)
_MARKDOWN_RE = re.compile(
    r"(^\s{0,3}#{1,6}\s)|(^\s*[-*+]\s)|(\n\n-\s)|(\n\n\d+\.\s)|(```)|(^\s*>\s)"
    r"|(\*\*[^*]+\*\*)|(`[^`]+`)",
    re.MULTILINE,
)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

_DOLLAR_OPERATORS = frozenset(
    {
        "gt",
        "gte",
        "lt",
        "lte",
        "eq",
        "ne",
        "in",
        "nin",
        "not",
        "like",
        "ilike",
        "re",
        "fulltext",
        "overlap",
        "contains",
        "contained",
        "exists",
        "and",
        "or",
    }
)

GROUND_TRUTH_KEYS = (
    "available",
    "available_quantity",
    "inventory_quantity",
    "stocked_quantity",
    "reserved_quantity",
    "count",
    "total",
    "orders",
    "items",
)


# ---------------------------------------------------------------------------
# Type helpers
# ---------------------------------------------------------------------------
def is_plain_record(value: Any) -> bool:
    """Return True for JSON objects (dicts), False for arrays and scalars."""
    return isinstance(value, dict)


def is_number(value: Any) -> bool:
    """Return True for real JSON numbers (bool excluded)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def walk_json(value: Any, path: str = "") -> Iterator[Tuple[str, JsonScalar]]:
    """
    Depth-first visitor over a JSON tree yielding ``(path, scalar)`` pairs.

    Object keys are dot-joined, arrays add a ``[]`` suffix.  ``None`` leaves are skipped.
    """
    if value is None:
        return
    if isinstance(value, list):
        next_path = f"{path}[]" if path else "[]"
        for item in value:
            yield from walk_json(item, next_path)
        return
    if isinstance(value, dict):
        for key, child in value.items():
            yield from walk_json(child, f"{path}.{key}" if path else str(key))
        return
    if isinstance(value, (str, int, float, bool)):
        yield path, value


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def strip_json_fences(text: str) -> str:
    """Return the body of a ```json fenced block, or *text* unchanged."""
    match = _FENCE_RE.search(text or "")
    return match.group(1) if match else text


def safe_parse_json(maybe_json: Any) -> Optional[JsonValue]:
    """
    Parse a JSON-looking string; never raises.

    Tries the whole (fence-stripped) text, then the outermost ``{...}`` slice, then the
    outermost ``[...]`` slice.
    """
    if not isinstance(maybe_json, str):
        return None
    stripped = strip_json_fences(maybe_json).strip()

    try:
        return json.loads(stripped)
    except ValueError:
        pass

    for opener, closer in (("{", "}"), ("[", "]")):
        first = stripped.find(opener)
        last = stripped.rfind(closer)
        if first != -1 and last > first:
            try:
                return json.loads(stripped[first : last + 1])
            except ValueError:
                continue
    return None


def extract_tool_json_payload(tool_result: Any) -> Optional[JsonValue]:
    """Parse the first text entry of a gateway envelope as JSON."""
    if not isinstance(tool_result, dict):
        return None
    content = tool_result.get("content")
    if not isinstance(content, list):
        return None
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(
            item.get("text"), str
        ):
            return safe_parse_json(item["text"])
    return None


def text_envelope(value: Any, is_error: bool = False) -> Dict[str, Any]:
    """Wrap *value* in a gateway envelope with a single JSON text entry."""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    envelope: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        envelope["isError"] = True
    return envelope


# ---------------------------------------------------------------------------
# Argument normalization
# ---------------------------------------------------------------------------
def _numeric_string_to_int(value: Any) -> Any:
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return value


def normalize_tool_args(value: Any, key_path: Tuple[str, ...] = ()) -> Any:
    """
    Normalize planner-produced arguments before they reach the gateway.

    Query operators gain a ``$`` prefix, ``fields`` lists become comma strings and numeric
    ``limit``/``offset`` strings become ints.
    """
    last_key = key_path[-1] if key_path else None
    if isinstance(value, list):
        if last_key == "fields":
            return ",".join(str(item) for item in value)
        return [normalize_tool_args(item, key_path) for item in value]
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, child in value.items():
            bare = str(key).lstrip("$")
            new_key = f"${bare}" if bare in _DOLLAR_OPERATORS else key
            out[new_key] = normalize_tool_args(child, key_path + (new_key,))
        return out
    if last_key in ("limit", "offset"):
        return _numeric_string_to_int(value)
    return value


# ---------------------------------------------------------------------------
# Grounding
# ---------------------------------------------------------------------------
def collect_ground_truth_numbers(payload: Any) -> Optional[Dict[str, float]]:
    """Pull business-meaningful numeric fields from the top level of a payload."""
    if not isinstance(payload, dict):
        return None
    out = {key: payload[key] for key in GROUND_TRUTH_KEYS if is_number(payload.get(key))}
    return out or None


_NUMBER_RE = re.compile(r"(?<![\w.])-?\d[\d,]*(?:\.\d+)?")


def find_ungrounded_numbers(answer: str, truth: Mapping[str, float]) -> List[float]:
    """
    Return numbers asserted in *answer* that match no observed ground-truth value.

    Small integers (0-10) are ignored; they are usually list ordinals or counts of prose items.
    """
    observed = {float(value) for value in truth.values()}
    ungrounded: List[float] = []
    for raw in _NUMBER_RE.findall(answer or ""):
        try:
            number = float(raw.replace(",", ""))
        except ValueError:
            continue
        if math.isnan(number) or 0 <= number <= 10:
            continue
        if number not in observed and number not in ungrounded:
            ungrounded.append(number)
    return ungrounded


# ---------------------------------------------------------------------------
# Answer formatting
# ---------------------------------------------------------------------------
def ensure_markdown_minimum(answer: Optional[str]) -> str:
    """
    Ensure the assistant answer is presented as Markdown.

    Text without any Markdown structure becomes a ``### Answer`` heading followed by bullets
    (one per line, or one per sentence for single-line text).  Valid JSON is fenced instead.
    """
    text = str(answer or "").strip()
    if not text:
        return ""
    if _MARKDOWN_RE.search(text):
        return text

    stripped = strip_json_fences(text)
    if stripped[:1] in ("{", "["):
        try:
            json.loads(stripped)
            return "```json\n" + stripped + "\n```"
        except ValueError:
            pass

    lines = [line.strip() for line in stripped.splitlines() if line.strip()]
    items = lines
    if len(lines) <= 1:
        items = [part.strip() for part in _SENTENCE_SPLIT_RE.split(stripped) if part.strip()]
    return "\n".join(["### Answer", ""] + [f"- {item}" for item in items])
