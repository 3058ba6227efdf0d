"""Frequency aggregates over tool payloads, used to ground numeric claims in answers."""

import math
from collections import Counter
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from opsbridge.core.payload import walk_json
from opsbridge.core.schema import (
    AssistantSummary,
    CountEntry,
    CountSummary,
)

TOP_N = 10


def normalize_scalar(value: Any) -> str:
    """Render a scalar the way it is counted: trimmed text, ``true``/``false``, ``(empty)``."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return "(nan)"
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    text = str(value).strip()
    return text or "(empty)"


def summarize_payload(payload: Any) -> Optional[AssistantSummary]:
    """
    Count repeated scalar values per field path of *payload*.

    Only paths where at least one value occurs more than once are kept.  Each kept path lists
    its ten most frequent values; paths are ordered by their top count, highest first.

    Returns ``None`` when *payload* is not an object or array, or when nothing repeats.
    """
    if not isinstance(payload, (dict, list)):
        return None

    # Insertion order of paths is the walk order, which keeps ties stable.
    per_path: Dict[str, Counter] = {}
    for path, scalar in walk_json(payload):
        per_path.setdefault(path, Counter())[normalize_scalar(scalar)] += 1

    aggregates: List[CountSummary] = []
    for path, counter in per_path.items():
        if max(counter.values()) <= 1:
            continue
        ranked = sorted(counter.items(), key=lambda item: -item[1])[:TOP_N]
        counts = [CountEntry(value=value, count=count) for value, count in ranked]
        aggregates.append(
            CountSummary(
                path=path,
                total=sum(counter.values()),
                unique=len(counter),
                counts=counts,
                top=counts[0],
            )
        )

    if not aggregates:
        return None

    aggregates.sort(key=lambda summary: -(summary.top.count if summary.top else 0))
    return AssistantSummary(aggregates=aggregates)


def summary_ground_truth(summary: Optional[AssistantSummary]) -> Dict[str, float]:
    """Flatten a summary into ``"<path>:<value>"`` and ``"<path>:__total__"`` numbers."""
    truth: Dict[str, float] = {}
    if summary is None:
        return truth
    for aggregate in summary.aggregates:
        truth[f"{aggregate.path}:__total__"] = aggregate.total
        for entry in aggregate.counts:
            truth[f"{aggregate.path}:{entry.value}"] = entry.count
    return truth
