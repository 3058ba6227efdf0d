"""Append-only log of the tool calls made during one conversational turn."""

import logging
import math
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
)

from opsbridge.agent.dedupe_cache import ToolDedupeCache
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import (
    AssistantSummary,
    HistoryEntry,
    ToolMeta,
)

logger = logging.getLogger(__name__)

SYNTHETIC_PREFIX = "assistant."
NOTE_TOOL = "assistant.note"
SUMMARY_TOOL = "assistant.summary"

DUPLICATE_NOTE_REASON = "duplicate_tool_call"
DUPLICATE_NOTE_MESSAGE = (
    "Skipped identical tool call because the same request already succeeded earlier in this "
    "conversation. Reuse the previous result instead of repeating the POST."
)


def is_synthetic(entry: HistoryEntry) -> bool:
    """Notes and summaries inserted by the loop itself."""
    return entry.tool_name.startswith(SYNTHETIC_PREFIX)


def is_mutating_execute_call(args: Any) -> bool:
    """An execute call is mutating when its arguments carry a request body."""
    return isinstance(args, dict) and "body" in args


def is_error_result(result: Any) -> bool:
    """True for the structured error objects produced when a tool call fails."""
    if isinstance(result, dict):
        return result.get("error") is True or result.get("isError") is True
    return False


def _non_negative_int(value: Optional[float]) -> Optional[int]:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return max(0, int(value))


def normalize_meta(
    duration_ms: Optional[float] = None,
    started_at_ms: Optional[float] = None,
    finished_at_ms: Optional[float] = None,
) -> Optional[ToolMeta]:
    """Truncate timing values to non-negative ints; ``None`` when nothing is known."""
    duration = _non_negative_int(duration_ms)
    started = _non_negative_int(started_at_ms)
    finished = _non_negative_int(finished_at_ms)
    if duration is None and started is None and finished is None:
        return None
    return ToolMeta(duration_ms=duration, started_at_ms=started, finished_at_ms=finished)


class HistoryTracker:
    """
    Ordered list of :class:`HistoryEntry` plus the turn's dedupe cache.

    The tracker is owned by exactly one run of the ask loop.  Synthetic entries (tool names
    starting with ``assistant.``) are never returned by :meth:`latest_payload` and never cached.
    """

    def __init__(
        self,
        initial_history: Iterable[HistoryEntry] | None = None,
        dedupe_cache: ToolDedupeCache | None = None,
    ) -> None:
        self._entries: List[HistoryEntry] = list(initial_history or [])
        self.dedupe_cache = dedupe_cache if dedupe_cache is not None else ToolDedupeCache()

    @property
    def entries(self) -> List[HistoryEntry]:
        return self._entries

    def snapshot(self) -> List[HistoryEntry]:
        """Deep copy of the entries, safe to hand to callers or store in a resume token."""
        return [entry.model_copy(deep=True) for entry in self._entries]

    def reseed_cache(self, is_cacheable: Callable[[HistoryEntry], bool]) -> int:
        """
        Rebuild the dedupe cache from successful entries already in the history.

        Used when a suspended turn is resumed in a fresh tracker.  Returns the number of
        entries cached.
        """
        seeded = 0
        for entry in self._entries:
            if is_synthetic(entry) or is_error_result(entry.tool_result):
                continue
            if is_cacheable(entry):
                self.dedupe_cache.set(entry.tool_name, entry.tool_args, entry, True)
                seeded += 1
        return seeded

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def latest_payload(self) -> Any:
        """Most recent JSON payload from a real tool result, or ``None``."""
        for entry in reversed(self._entries):
            if is_synthetic(entry):
                continue
            payload = extract_tool_json_payload(entry.tool_result)
            if payload is not None:
                return payload
        return None

    def get_cached_success(self, tool_name: str, args: Any, cacheable: bool) -> Optional[HistoryEntry]:
        if not cacheable:
            return None
        return self.dedupe_cache.get(tool_name, args, cacheable)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def record_result(
        self,
        tool_name: str,
        args: Any,
        result: Any,
        cacheable: bool,
        meta: Optional[ToolMeta] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(tool_name=tool_name, tool_args=args, tool_result=result, tool_meta=meta)
        self._entries.append(entry)
        if not is_error_result(result):
            self.dedupe_cache.set(tool_name, args, entry, cacheable)
        return entry

    def record_error(
        self,
        tool_name: str,
        args: Any,
        error: Dict[str, Any],
        meta: Optional[ToolMeta] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(tool_name=tool_name, tool_args=args, tool_result=error, tool_meta=meta)
        self._entries.append(entry)
        return entry

    def record_duplicate(self, tool_name: str, reused: Optional[HistoryEntry] = None) -> None:
        """Insert a note explaining the skipped call, followed by a copy of the reused entry."""
        self._entries.append(
            HistoryEntry(
                tool_name=NOTE_TOOL,
                tool_args={"reason": DUPLICATE_NOTE_REASON, "tool_name": tool_name},
                tool_result={"message": DUPLICATE_NOTE_MESSAGE},
            )
        )
        if reused is not None:
            self._entries.append(reused.model_copy(deep=True))

    def record_summary(self, source_tool: str, summary: AssistantSummary) -> None:
        self._entries.append(
            HistoryEntry(
                tool_name=SUMMARY_TOOL,
                tool_args={"source_tool": source_tool},
                tool_result={"assistant_summary": summary.model_dump()},
            )
        )
