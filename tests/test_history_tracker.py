"""History tracker bookkeeping."""

from opsbridge.agent.dedupe_cache import ToolDedupeCache
from opsbridge.agent.history_tracker import (
    NOTE_TOOL,
    SUMMARY_TOOL,
    HistoryTracker,
    is_error_result,
    normalize_meta,
)
from opsbridge.agent.aggregators import summarize_payload
from opsbridge.core.payload import text_envelope
from opsbridge.core.schema import HistoryEntry

TOOL = "openapi.execute"


def _tracker() -> HistoryTracker:
    return HistoryTracker(dedupe_cache=ToolDedupeCache(approximate_tools=[], tolerance_ms=0))


def test_latest_payload_skips_synthetic_entries() -> None:
    """Summaries and notes never count as the latest payload."""
    tracker = _tracker()
    payload = {"items": [{"s": "x"}, {"s": "x"}]}
    tracker.record_result(TOOL, {}, text_envelope(payload), False)
    tracker.record_summary(TOOL, summarize_payload(payload))
    assert tracker.entries[-1].tool_name == SUMMARY_TOOL
    assert tracker.latest_payload() == payload


def test_latest_payload_none_without_json() -> None:
    """Opaque text results yield no payload."""
    tracker = _tracker()
    tracker.record_result(TOOL, {}, {"content": [{"type": "text", "text": "plain words"}]}, False)
    assert tracker.latest_payload() is None


def test_errors_are_not_cached() -> None:
    """Failed calls stay out of the dedupe cache."""
    tracker = _tracker()
    tracker.record_error(TOOL, {"body": {}}, {"error": True, "message": "nope"})
    tracker.record_result(TOOL, {"body": {"a": 1}}, text_envelope({"x": 1}, is_error=True), True)
    assert tracker.get_cached_success(TOOL, {"body": {}}, True) is None
    assert tracker.get_cached_success(TOOL, {"body": {"a": 1}}, True) is None


def test_duplicate_note_embeds_copy() -> None:
    """A duplicate adds a note and a deep copy of the reused entry."""
    tracker = _tracker()
    original = tracker.record_result(TOOL, {"body": {"a": 1}}, text_envelope({"id": 1}), True)
    cached = tracker.get_cached_success(TOOL, {"body": {"a": 1}}, True)
    assert cached is original

    tracker.record_duplicate(TOOL, cached)
    note, copy = tracker.entries[-2:]
    assert note.tool_name == NOTE_TOOL
    assert copy == original
    copy.tool_result["content"].clear()
    assert original.tool_result["content"]


def test_snapshot_is_independent() -> None:
    """Mutating a snapshot leaves the tracker intact."""
    tracker = _tracker()
    tracker.record_result(TOOL, {"a": 1}, {"value": 1}, False)
    snap = tracker.snapshot()
    snap[0].tool_args["a"] = 2
    assert tracker.entries[0].tool_args == {"a": 1}


def test_reseed_cache_from_history() -> None:
    """Successful cacheable entries of a restored history are cached again."""
    history = [
        HistoryEntry(tool_name=TOOL, tool_args={"body": {"a": 1}}, tool_result={"ok": True}),
        HistoryEntry(tool_name=TOOL, tool_args={"body": {"b": 1}}, tool_result={"error": True}),
        HistoryEntry(tool_name=NOTE_TOOL, tool_args={"body": {}}, tool_result={}),
    ]
    tracker = HistoryTracker(history, ToolDedupeCache(approximate_tools=[], tolerance_ms=0))
    assert tracker.reseed_cache(lambda entry: "body" in entry.tool_args) == 1
    assert tracker.get_cached_success(TOOL, {"body": {"a": 1}}, True) is not None


def test_normalize_meta_truncates() -> None:
    """Timings become non-negative ints; all-missing gives None."""
    meta = normalize_meta(12.7, -5, 1000.9)
    assert meta is not None
    assert (meta.duration_ms, meta.started_at_ms, meta.finished_at_ms) == (12, 0, 1000)
    assert normalize_meta() is None
    assert is_error_result({"isError": True})
    assert not is_error_result({"error": "text"})
