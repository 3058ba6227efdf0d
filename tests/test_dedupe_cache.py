"""Duplicate-call cache: exact keys and timestamp-tolerant matching."""

from opsbridge.agent.dedupe_cache import (
    ToolDedupeCache,
    approx_equal,
    cache_key,
    parse_timestamp,
    stable_stringify,
)
from opsbridge.core.schema import HistoryEntry

TOOL = "openapi.execute"


def _entry(result: str = "ok") -> HistoryEntry:
    return HistoryEntry(tool_name=TOOL, tool_args={}, tool_result={"value": result})


def test_stable_stringify_ignores_key_order() -> None:
    """Key order does not change the canonical form."""
    assert stable_stringify({"b": 1, "a": [2, {"d": 1, "c": 2}]}) == stable_stringify(
        {"a": [2, {"c": 2, "d": 1}], "b": 1}
    )
    assert cache_key(TOOL, {"x": 1}) == 'openapi.execute:{"x":1}'


def test_exact_hit() -> None:
    """An identical call returns the stored entry."""
    cache = ToolDedupeCache(approximate_tools=[], tolerance_ms=0)
    entry = _entry()
    cache.set(TOOL, {"body": {"a": 1}}, entry, True)
    assert cache.get(TOOL, {"body": {"a": 1}}, True) is entry
    assert cache.get(TOOL, {"body": {"a": 2}}, True) is None


def test_not_cacheable_is_ignored() -> None:
    """Non-cacheable calls are neither stored nor looked up."""
    cache = ToolDedupeCache(approximate_tools=[], tolerance_ms=0)
    cache.set(TOOL, {"a": 1}, _entry(), False)
    assert len(cache) == 0
    cache.set(TOOL, {"a": 1}, _entry(), True)
    assert cache.get(TOOL, {"a": 1}, False) is None


def test_timestamp_tolerance_boundary() -> None:
    """created_at values 90s apart match; 91s apart do not."""
    cache = ToolDedupeCache(approximate_tools=[TOOL], tolerance_ms=90_000)
    entry = _entry()
    cache.set(TOOL, {"body": {"created_at": "2024-01-01T00:00:00Z"}}, entry, True)
    assert cache.get(TOOL, {"body": {"created_at": "2024-01-01T00:01:30Z"}}, True) is entry
    assert cache.get(TOOL, {"body": {"created_at": "2024-01-01T00:01:31Z"}}, True) is None


def test_approximate_only_for_listed_tools() -> None:
    """Tools outside the approximate list need exact matches."""
    cache = ToolDedupeCache(approximate_tools=[], tolerance_ms=90_000)
    cache.set(TOOL, {"created_at": "2024-01-01T00:00:00Z"}, _entry(), True)
    assert cache.get(TOOL, {"created_at": "2024-01-01T00:00:01Z"}, True) is None


def test_approx_equal_structure() -> None:
    """Lists need equal length, objects equal keys, other values strict equality."""
    assert not approx_equal([1, 2], [1, 2, 3], 1000)
    assert not approx_equal({"a": 1}, {"a": 1, "b": 2}, 1000)
    assert not approx_equal({"a": 1}, {"a": "1"}, 1000)
    assert approx_equal({"updatedAt": "2024-01-01 00:00:00"}, {"updatedAt": "2024-01-01T00:00:00.500Z"}, 1000)
    # Non-timestamp keys never get tolerance.
    assert not approx_equal({"note": "2024-01-01T00:00:00Z"}, {"note": "2024-01-01T00:00:01Z"}, 90_000)


def test_parse_timestamp_rejects_garbage() -> None:
    """Unparseable strings yield None."""
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("1970-01-01T00:00:01Z") == 1000.0


def test_set_overwrites_existing_key() -> None:
    """Re-storing the same call replaces the entry for exact and approximate lookups."""
    cache = ToolDedupeCache(approximate_tools=[TOOL], tolerance_ms=90_000)
    cache.set(TOOL, {"a": 1}, _entry("first"), True)
    newer = _entry("second")
    cache.set(TOOL, {"a": 1}, newer, True)
    assert len(cache) == 1
    assert cache.get(TOOL, {"a": 1}, True) is newer
    cache.clear()
    assert cache.get(TOOL, {"a": 1}, True) is None
