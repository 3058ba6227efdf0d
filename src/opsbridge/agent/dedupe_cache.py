"""
Duplicate-call suppression for mutating tool invocations.

Planners are non-deterministic and happily repeat a POST they already made.  The cache remembers
every successful *cacheable* call of a turn, keyed by tool name plus a canonical serialization of
its arguments.  Tools listed in ``approximate_tools`` also match argument trees whose timestamp
fields differ by less than the configured tolerance.
"""

import json
import logging
import re
import threading
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
)

from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.schema import HistoryEntry

logger = logging.getLogger(__name__)

_TIMESTAMP_KEY_RE = re.compile(r"(_at|At)$")


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------
def stable_stringify(value: Any) -> str:
    """Serialize *value* deterministically: sorted object keys, compact JSON scalars."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def cache_key(tool_name: str, args: Any) -> str:
    return f"{tool_name}:{stable_stringify(args)}"


def parse_timestamp(value: str) -> Optional[float]:
    """Parse an ISO-8601-ish string into epoch milliseconds; naive values are read as UTC."""
    text = value.strip()
    if not text:
        return None
    text = text.replace(" ", "T", 1)
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000.0


def approx_equal(left: Any, right: Any, tolerance_ms: int, key: Optional[str] = None) -> bool:
    """
    Compare two argument trees, allowing timestamp jitter.

    Lists must have equal length and objects equal key sets.  Strings under a key ending in
    ``_at``/``At`` are equal when both parse as timestamps no more than *tolerance_ms* apart.
    """
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(approx_equal(a, b, tolerance_ms, key) for a, b in zip(left, right))

    if isinstance(left, dict) and isinstance(right, dict):
        if set(left) != set(right):
            return False
        return all(approx_equal(left[k], right[k], tolerance_ms, k) for k in left)

    if (
        key is not None
        and _TIMESTAMP_KEY_RE.search(key)
        and isinstance(left, str)
        and isinstance(right, str)
    ):
        left_ms = parse_timestamp(left)
        right_ms = parse_timestamp(right)
        if left_ms is not None and right_ms is not None:
            return abs(left_ms - right_ms) <= tolerance_ms

    if type(left) is not type(right):
        return False
    return left == right


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
class ToolDedupeCache:
    """Keyed store of successful cacheable tool calls."""

    def __init__(
        self,
        approximate_tools: Iterable[str] | None = None,
        tolerance_ms: int | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or settings
        self.approximate_tools = frozenset(
            approximate_tools if approximate_tools is not None else cfg.APPROXIMATE_DEDUPE_TOOLS
        )
        self.tolerance_ms = tolerance_ms if tolerance_ms is not None else cfg.TIMESTAMP_TOLERANCE_MS
        self._entries: Dict[str, HistoryEntry] = {}
        self._by_tool: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, tool_name: str, args: Any, cacheable: bool) -> Optional[HistoryEntry]:
        """Return the entry of an earlier identical (or near-identical) call, if any."""
        if not cacheable:
            return None
        with self._lock:
            hit = self._entries.get(cache_key(tool_name, args))
            if hit is not None:
                return hit
            if tool_name not in self.approximate_tools:
                return None
            for candidate in self._by_tool.get(tool_name, []):
                if approx_equal(candidate["args"], args, self.tolerance_ms):
                    logger.debug("Approximate dedupe match for tool '%s'", tool_name)
                    return candidate["entry"]
        return None

    def set(self, tool_name: str, args: Any, entry: HistoryEntry, cacheable: bool) -> None:
        """Remember *entry* as the result of a cacheable call."""
        if not cacheable:
            return
        key = cache_key(tool_name, args)
        with self._lock:
            is_new = key not in self._entries
            self._entries[key] = entry
            bucket = self._by_tool.setdefault(tool_name, [])
            if is_new:
                bucket.append({"args": args, "entry": entry})
            else:
                for candidate in bucket:
                    if cache_key(tool_name, candidate["args"]) == key:
                        candidate["entry"] = entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_tool.clear()
