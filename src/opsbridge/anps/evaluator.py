"""
Heuristic Agent NPS scoring.

Each operation executed through the execute tool during a turn gets a 0-10 score built from how
many attempts it took, how many of them failed and how long the agent spent compared to what the
kind of operation usually needs.
"""

import math
import re
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Iterable,
    List,
    Optional,
    Sequence,
)

from opsbridge.config import settings
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import (
    AgentNpsEvaluation,
    ExecutedOperation,
    HistoryEntry,
)

DEFAULT_EXPECTED_MS = 60_000
# (search terms, expected duration) checked in order; first hit wins.
EXPECTED_DURATIONS = (
    (("price list", "pricelist"), 240_000),
    (("promotion", "promo"), 150_000),
    (("order",), 90_000),
)

_ID_NOISE_RE = re.compile(r"[\s_-]+")
_SEARCH_NOISE_RE = re.compile(r"[_-]+")


# ---------------------------------------------------------------------------
# Operation identifiers
# ---------------------------------------------------------------------------
def normalize_operation_id(value: str) -> str:
    return _ID_NOISE_RE.sub("", value.strip().lower())


def extract_operation_id(args: Any) -> Optional[str]:
    if not isinstance(args, dict):
        return None
    for key in ("operationId", "operation_id"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def matching_entries(
    history: Iterable[HistoryEntry], operation_id: str, execute_tool: str | None = None
) -> List[HistoryEntry]:
    """Execute-tool entries whose operation id matches *operation_id* after normalization."""
    tool = execute_tool or settings.EXECUTE_TOOL_NAME
    target = normalize_operation_id(operation_id)
    matches = []
    for entry in history:
        if entry.tool_name != tool:
            continue
        entry_id = extract_operation_id(entry.tool_args)
        if entry_id and normalize_operation_id(entry_id) == target:
            matches.append(entry)
    return matches


def collect_executed_operations(
    history: Iterable[HistoryEntry], execute_tool: str | None = None
) -> List[ExecutedOperation]:
    """Distinct operations invoked through the execute tool, in first-seen order."""
    tool = execute_tool or settings.EXECUTE_TOOL_NAME
    seen = set()
    operations: List[ExecutedOperation] = []
    for entry in history:
        if entry.tool_name != tool:
            continue
        operation_id = extract_operation_id(entry.tool_args)
        if not operation_id:
            continue
        key = normalize_operation_id(operation_id)
        if key in seen:
            continue
        seen.add(key)
        summary = entry.tool_args.get("summary") if isinstance(entry.tool_args, dict) else None
        operations.append(
            ExecutedOperation(
                operation_id=operation_id,
                task_label=summary.strip() if isinstance(summary, str) and summary.strip() else operation_id,
            )
        )
    return operations


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------
def coerce_status(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return int(parsed) if math.isfinite(parsed) else None
    return None


@dataclass
class OperationAnalysis:
    attempts: int = 0
    errors: int = 0
    success: bool = False
    last_status_code: Optional[int] = None
    messages: List[str] = field(default_factory=list)


def analyze_operation(
    history: Sequence[HistoryEntry], operation_id: str, execute_tool: str | None = None
) -> OperationAnalysis:
    analysis = OperationAnalysis()
    for entry in matching_entries(history, operation_id, execute_tool):
        analysis.attempts += 1
        payload = extract_tool_json_payload(entry.tool_result)
        if isinstance(payload, dict):
            raw = payload.get("statusCode")
            status = coerce_status(raw if raw is not None else payload.get("status"))
            analysis.last_status_code = status
            if status is not None:
                if 200 <= status < 300:
                    analysis.success = True
                elif status >= 400:
                    analysis.errors += 1
            if isinstance(payload.get("message"), str):
                analysis.messages.append(payload["message"])
        elif isinstance(entry.tool_result, dict) and entry.tool_result.get("error"):
            analysis.errors += 1
            if isinstance(entry.tool_result.get("message"), str):
                analysis.messages.append(entry.tool_result["message"])
    return analysis


def expected_duration_ms(operation_id: str, task_label: Optional[str]) -> int:
    text = " ".join(
        _SEARCH_NOISE_RE.sub(" ", part.strip().lower())
        for part in (task_label, operation_id)
        if isinstance(part, str) and part.strip()
    )
    for terms, expected in EXPECTED_DURATIONS:
        if any(term in text for term in terms):
            return expected
    return DEFAULT_EXPECTED_MS


def duration_penalty(effective_ms: float, expected_ms: int) -> int:
    ratio = effective_ms / expected_ms if expected_ms else 0
    if ratio > 2.0:
        return 3
    if ratio > 1.25:
        return 2
    if ratio > 1.0:
        return 1
    return 0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------
def evaluate_operation(
    operation_id: str,
    history: Sequence[HistoryEntry],
    duration_ms: int,
    task_label: Optional[str] = None,
    agent_compute_ms: Optional[int] = None,
    execute_tool: str | None = None,
) -> Optional[AgentNpsEvaluation]:
    """
    Score one operation of a finished turn.

    Parameters
    ----------
    operation_id:
        The operation to score; matched case- and separator-insensitively.
    history:
        Full turn history.
    duration_ms:
        Wall-clock duration of the turn.
    task_label:
        Optional human label used to pick the expected duration.
    agent_compute_ms:
        Turn duration minus time spent waiting for the operator; preferred over *duration_ms*
        for the duration penalty when given.

    Returns
    -------
    AgentNpsEvaluation | None
        ``None`` when the operation never appears in *history*.
    """
    analysis = analyze_operation(history, operation_id, execute_tool)
    if analysis.attempts == 0:
        return None

    score: float = 10 if analysis.success else 4
    score -= clamp(analysis.attempts - 1, 0, 3)
    score -= clamp(analysis.errors * 2, 0, 6)

    has_compute = agent_compute_ms is not None and math.isfinite(agent_compute_ms)
    effective = max(0, agent_compute_ms) if has_compute else duration_ms
    score -= duration_penalty(effective, expected_duration_ms(operation_id, task_label))
    final_score = int(clamp(round(score), 0, 10))

    notes = ["Completed successfully" if analysis.success else "Did not reach a successful outcome"]
    if analysis.attempts > 1:
        notes.append(f"Attempts: {analysis.attempts}")
    if analysis.errors > 0:
        notes.append(f"Errors: {analysis.errors}")
    if duration_ms:
        notes.append(f"Duration: {duration_ms / 1000:.1f}s")
    if has_compute and agent_compute_ms >= 0 and (
        not duration_ms or abs(agent_compute_ms - duration_ms) > 1_000
    ):
        notes.append(f"Compute: {agent_compute_ms / 1000:.1f}s")
    if analysis.last_status_code is not None:
        notes.append(f"Last status: {analysis.last_status_code}")
    if analysis.messages:
        notes.append(f"Messages: {' | '.join(analysis.messages[-2:])[:200]}")

    return AgentNpsEvaluation(
        score=final_score,
        error_flag=not analysis.success or analysis.errors > 0,
        error_summary=None if analysis.success else (analysis.messages[-1] if analysis.messages else None),
        attempts=analysis.attempts,
        errors=analysis.errors,
        duration_ms=int(duration_ms),
        feedback_note="; ".join(notes),
    )
