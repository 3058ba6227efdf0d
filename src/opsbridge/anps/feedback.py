"""
LLM-authored qualitative feedback on scored operations.

Everything here is best-effort: a missing backend, an exception, an empty reply or a reply that
is not the expected JSON all produce ``None`` and a log line, never an error for the caller.
"""

import logging
import re
from dataclasses import dataclass
from typing import (
    Any,
    List,
    Optional,
    Sequence,
)

from opsbridge.agent.planner_interface import BasePlanner
from opsbridge.core.payload import safe_parse_json
from opsbridge.core.schema import (
    AgentNpsEvaluation,
    ExecutedOperation,
    QualitativeFeedback,
    StatusDigest,
)

logger = logging.getLogger(__name__)

MAX_POSITIVE_ITEMS = 5
MAX_SUGGESTION_ITEMS = 5
MAX_TEXT_CHARS = 4000
FEEDBACK_TEMPERATURE = 0.4
FEEDBACK_MAX_TOKENS = 512
FEEDBACK_SCHEMA = '{"feedback":"<short paragraph>","positives":["..."],"suggestions":["..."]}'

SYSTEM_PROMPT = (
    "You review the work of an operations assistant that calls HTTP APIs on behalf of an "
    "operator. Answer with a single JSON object and nothing else."
)

_BULLET_RE = re.compile(r"^\s*(?:[-*•●]+|\d+[.)])\s*")
_TEXT_KEYS = ("text", "value", "content", "message")
_LIST_KEYS = ("items", "values", "entries", "list", "suggestions", "improvements", "positives")


@dataclass
class ScoredOperation:
    """An operation together with its evaluation and status digest."""

    operation: ExecutedOperation
    evaluation: AgentNpsEvaluation
    statuses: List[StatusDigest]

    @property
    def label(self) -> str:
        return self.operation.task_label or self.operation.operation_id


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------
def truncate_text(value: Optional[str], max_chars: int = MAX_TEXT_CHARS) -> Optional[str]:
    if not value or not value.strip():
        return None
    trimmed = value.strip()
    return trimmed[:max_chars] + "…" if len(trimmed) > max_chars else trimmed


def format_duration(duration_ms: Optional[float]) -> str:
    if isinstance(duration_ms, (int, float)) and duration_ms > 0:
        return f"{duration_ms / 1000:.1f} seconds"
    return "not recorded"


def normalize_feedback_items(value: Any, limit: int) -> List[str]:
    """Flatten strings, lists and ``{text: ...}`` shapes into unique bullet-free items."""
    items: List[str] = []

    def add(raw: str) -> None:
        cleaned = _BULLET_RE.sub("", raw.strip()).strip()
        if cleaned and cleaned not in items:
            items.append(cleaned)

    def visit(node: Any) -> None:
        if len(items) >= limit or node is None:
            return
        if isinstance(node, str):
            for segment in re.split(r"\r?\n+", node):
                if len(items) >= limit:
                    break
                add(segment)
        elif isinstance(node, list):
            for child in node:
                if len(items) >= limit:
                    break
                visit(child)
        elif isinstance(node, dict):
            for key in _TEXT_KEYS:
                if isinstance(node.get(key), str):
                    visit(node[key])
            for key in _LIST_KEYS:
                if isinstance(node.get(key), list):
                    visit(node[key])

    if limit > 0:
        visit(value)
    return items[:limit]


def parse_feedback(raw: Optional[str]) -> Optional[QualitativeFeedback]:
    """Turn the LLM reply into :class:`QualitativeFeedback`; ``None`` if it is unusable."""
    if not raw or not raw.strip():
        return None
    payload = safe_parse_json(raw.strip())
    if not isinstance(payload, dict):
        return None
    summary = payload.get("feedback")
    if not isinstance(summary, str) or not summary.strip():
        return None
    suggestions = normalize_feedback_items(payload.get("suggestions"), MAX_SUGGESTION_ITEMS)
    if not suggestions:
        suggestions = normalize_feedback_items(payload.get("improvements"), MAX_SUGGESTION_ITEMS)
    return QualitativeFeedback(
        summary=summary.strip(),
        positives=normalize_feedback_items(payload.get("positives"), MAX_POSITIVE_ITEMS),
        suggestions=suggestions,
    )


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------
def _status_section(statuses: Sequence[StatusDigest]) -> str:
    if not statuses:
        return "No HTTP tool calls were captured for this operation."
    lines = []
    for idx, item in enumerate(statuses, start=1):
        code = f"status {item.status_code}" if item.status_code is not None else "unknown status"
        message = f" - {item.message}" if item.message else ""
        lines.append(f"{idx}. {item.operation_summary or 'Unnamed call'} ({code}){message}")
    return "\n".join(lines)


def _quantitative_section(evaluation: AgentNpsEvaluation) -> str:
    bullets = [
        f"Heuristic score: {evaluation.score}/10",
        f"Attempts: {evaluation.attempts}",
        f"Errors: {evaluation.errors}",
        f"Duration: {format_duration(evaluation.duration_ms)}",
        f"Error flag: {'true' if evaluation.error_flag else 'false'}",
    ]
    if evaluation.error_summary:
        bullets.append(f"Error summary: {evaluation.error_summary}")
    if evaluation.feedback_note:
        bullets.append(f"Heuristic notes: {evaluation.feedback_note}")
    return "\n".join(bullets)


def build_operation_feedback_prompt(
    operation: ExecutedOperation,
    evaluation: AgentNpsEvaluation,
    statuses: Sequence[StatusDigest],
    answer: Optional[str] = None,
    related: Sequence[ExecutedOperation] = (),
) -> str:
    others = [op for op in related if op.operation_id != operation.operation_id]
    other_section = None
    if others:
        lines = [
            f"{idx}. {op.task_label or op.operation_id} ({op.operation_id})"
            for idx, op in enumerate(others, start=1)
        ]
        other_section = "Other operations executed in this assistant turn:\n" + "\n".join(lines)
    snippet = truncate_text(answer, 1500)

    sections = [
        "You are reviewing an operations assistant task execution.",
        f"Operation ID: {operation.operation_id}",
        f"Task label: {operation.task_label}" if operation.task_label else None,
        "### Quantitative observations",
        _quantitative_section(evaluation),
        "### HTTP interaction summary",
        _status_section(statuses),
        other_section,
        f"### Assistant reply\n{snippet}" if snippet else None,
        "Write a concise qualitative review highlighting what worked well and what should "
        "improve. Be specific about API usage or payload clarity when possible.",
        "Focus your analysis on the target operation above. Other operations are listed only "
        "for context; do not assume their HTTP calls should appear in this summary.",
        f"Respond as valid JSON using this schema: {FEEDBACK_SCHEMA}.",
    ]
    return "\n\n".join(section for section in sections if section)


def build_turn_summary_prompt(
    operations: Sequence[ScoredOperation],
    duration_ms: int,
    agent_compute_ms: Optional[int] = None,
    answer: Optional[str] = None,
) -> str:
    scores = [op.evaluation.score for op in operations]
    aggregate = [
        f"Operations executed: {len(operations)}",
        f"Average score: {sum(scores) / len(scores):.1f}/10",
        f"Best score: {max(scores)}/10",
        f"Lowest score: {min(scores)}/10",
        f"Total attempts: {sum(op.evaluation.attempts for op in operations)}",
        f"Total errors: {sum(op.evaluation.errors for op in operations)}",
        f"Turn duration: {format_duration(duration_ms)}",
    ]
    if agent_compute_ms and agent_compute_ms > 0:
        aggregate.append(f"Agent compute time: {format_duration(agent_compute_ms)}")

    summaries = []
    breakdown = []
    for idx, op in enumerate(operations, start=1):
        evaln = op.evaluation
        last = op.statuses[-1] if op.statuses else None
        status_text = (
            f"last status {last.status_code if last.status_code is not None else 'unknown'}"
            if last
            else "status unknown"
        )
        duration = f"{evaln.duration_ms / 1000:.1f}s" if evaln.duration_ms > 0 else "n/a"
        summaries.append(
            f"{idx}. {op.label} - score {evaln.score}/10, attempts {evaln.attempts}, "
            f"errors {evaln.errors}, duration {duration}, {status_text}"
        )
        if not op.statuses:
            breakdown.append(f"- {op.label}: No HTTP interactions recorded for this operation.")
            continue
        notes = []
        for n, status in enumerate(op.statuses, start=1):
            code = status.status_code if status.status_code is not None else "unknown"
            line = f"{n}. status {code} - {status.operation_summary or op.operation.operation_id}"
            if status.message and status.message.strip():
                line += f" (message: {status.message.strip()})"
            notes.append(line)
        breakdown.append(f"- {op.label}:\n" + "\n".join(notes))

    snippet = truncate_text(answer, 2000)
    sections = [
        "You are reviewing the entire workflow from an operations assistant turn.",
        "Provide insights on the overall plan, tool usage, and risks across the full set of "
        "operations. Highlight sequencing issues, missing validations, or redundant calls.",
        "### Aggregate metrics",
        "\n".join(aggregate),
        "### Operation summaries",
        "\n".join(summaries),
        "### HTTP interaction details",
        "\n".join(breakdown),
        f"### Assistant final reply\n{snippet}" if snippet else None,
        f"Respond with JSON matching this schema: {FEEDBACK_SCHEMA}. Emphasize improvements "
        "that span multiple operations when applicable.",
    ]
    return "\n\n".join(section for section in sections if section)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------
class FeedbackGenerator:
    """Asks an LLM backend for qualitative feedback; reuses the planner's ``complete``."""

    def __init__(self, backend: Optional[BasePlanner]) -> None:
        self.backend = backend

    @property
    def model_name(self) -> Optional[str]:
        return self.backend.model_name if self.backend is not None else None

    async def _ask(self, prompt: str) -> Optional[QualitativeFeedback]:
        if self.backend is None or not self.backend.is_configured():
            logger.debug("Feedback backend not configured; skipping qualitative feedback")
            return None
        try:
            raw = await self.backend.complete(
                SYSTEM_PROMPT,
                prompt,
                json_mode=True,
                temperature=FEEDBACK_TEMPERATURE,
                max_tokens=FEEDBACK_MAX_TOKENS,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Feedback generation failed: %s", exc)
            return None
        feedback = parse_feedback(raw)
        if feedback is None:
            logger.warning("Feedback reply was empty or not valid feedback JSON")
        return feedback

    async def operation_feedback(
        self,
        scored: ScoredOperation,
        answer: Optional[str] = None,
        related: Sequence[ExecutedOperation] = (),
    ) -> Optional[QualitativeFeedback]:
        prompt = build_operation_feedback_prompt(
            scored.operation, scored.evaluation, scored.statuses, answer, related
        )
        return await self._ask(prompt)

    async def turn_summary_feedback(
        self,
        operations: Sequence[ScoredOperation],
        duration_ms: int,
        agent_compute_ms: Optional[int] = None,
        answer: Optional[str] = None,
    ) -> Optional[QualitativeFeedback]:
        if not operations:
            return None
        prompt = build_turn_summary_prompt(operations, duration_ms, agent_compute_ms, answer)
        return await self._ask(prompt)
