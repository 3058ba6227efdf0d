"""
Scheduling and submission of Agent NPS records.

After a turn is fully resolved the assistant service calls :meth:`AnpsService.schedule_submission`.
That call returns immediately; scoring, feedback generation and submission run as a detached
asyncio task whose failures are logged and never reach the caller.  Per session the service
tracks which operations were already scored and which are in flight, so re-entrant scheduling
never submits the same operation twice.
"""

import asyncio
import logging
import threading
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
)

from opsbridge.anps.evaluator import (
    collect_executed_operations,
    evaluate_operation,
)
from opsbridge.anps.feedback import (
    FeedbackGenerator,
    ScoredOperation,
)
from opsbridge.anps.status_digest import summarize_status_messages
from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import (
    ExecutedOperation,
    HistoryEntry,
    QualitativeFeedback,
)
from opsbridge.tools import ToolGateway

logger = logging.getLogger(__name__)

TURN_SUMMARY_LABEL = "turn-summary"
MIN_OPERATIONS_FOR_TURN_SUMMARY = 2
_EXCLUDED_TOOL_NAMES = {"conversation"}


def collect_tool_usage(history: Sequence[HistoryEntry]) -> List[Dict[str, str]]:
    """Distinct real tool names in first-use order."""
    seen: Set[str] = set()
    usage: List[Dict[str, str]] = []
    for entry in history:
        name = (entry.tool_name or "").strip()
        if not name or name.startswith("assistant.") or name in _EXCLUDED_TOOL_NAMES:
            continue
        if name in seen:
            continue
        seen.add(name)
        usage.append({"name": name})
    return usage


def _feedback_dict(feedback: Optional[QualitativeFeedback]) -> Optional[Dict[str, Any]]:
    return feedback.model_dump() if feedback is not None else None


class AnpsService:
    """Scores finished turns and submits the results through the gateway's submit tool."""

    def __init__(
        self,
        gateway: ToolGateway,
        feedback: Optional[FeedbackGenerator] = None,
        config: Settings | None = None,
        planner_mode: Optional[str] = None,
    ) -> None:
        self.gateway = gateway
        self.feedback = feedback or FeedbackGenerator(None)
        self.config = config or settings
        self.planner_mode = planner_mode or self.config.PLANNER
        self._scored: Dict[str, Set[str]] = {}
        self._pending: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Dedupe bookkeeping
    # ------------------------------------------------------------------
    def has_been_scored(self, session_id: str, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._scored.get(session_id, set())

    def is_pending(self, session_id: str, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._pending.get(session_id, set())

    def _mark_scored(self, session_id: str, operation_id: str) -> None:
        with self._lock:
            self._scored.setdefault(session_id, set()).add(operation_id)

    def _clear_pending(self, session_id: str, operation_id: str) -> None:
        with self._lock:
            pending = self._pending.get(session_id)
            if pending is None:
                return
            pending.discard(operation_id)
            if not pending:
                del self._pending[session_id]

    def _claim(self, session_id: str, operations: Sequence[ExecutedOperation]) -> List[ExecutedOperation]:
        """Atomically filter out scored/pending operations and mark the rest pending."""
        with self._lock:
            scored = self._scored.get(session_id, set())
            pending = self._pending.setdefault(session_id, set())
            claimed = [
                op for op in operations if op.operation_id not in scored and op.operation_id not in pending
            ]
            pending.update(op.operation_id for op in claimed)
            if not pending:
                del self._pending[session_id]
        return claimed

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def schedule_submission(
        self,
        actor_id: str,
        session_id: str,
        history: Sequence[HistoryEntry],
        duration_ms: int,
        agent_compute_ms: Optional[int] = None,
        answer: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Start background scoring for the operations of a resolved turn.

        Must be called from a running event loop.  Returns the task (useful in tests), or
        ``None`` when scoring is disabled or nothing new needs scoring.
        """
        if not self.config.ANPS_ENABLED:
            return None
        operations = self._claim(
            session_id, collect_executed_operations(history, self.config.EXECUTE_TOOL_NAME)
        )
        if not operations:
            return None

        task = asyncio.get_running_loop().create_task(
            self._run_guarded(
                actor_id,
                session_id,
                list(history),
                operations,
                duration_ms,
                agent_compute_ms,
                answer,
                prompt,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled submission task; used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_guarded(self, *args: Any) -> None:
        try:
            await self.submit_operations(*args)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Asynchronous ANPS submission failed")

    # ------------------------------------------------------------------
    # Scoring and submission
    # ------------------------------------------------------------------
    def _base_metadata(self) -> Dict[str, Any]:
        return {"plannerMode": self.planner_mode, "model": self.feedback.model_name}

    async def submit_operations(
        self,
        actor_id: str,
        session_id: str,
        history: List[HistoryEntry],
        operations: List[ExecutedOperation],
        duration_ms: int,
        agent_compute_ms: Optional[int] = None,
        answer: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> int:
        """Score and submit each claimed operation; returns the number stored successfully."""
        tool_usage = collect_tool_usage(history)
        scored_ops: List[ScoredOperation] = []

        for operation in operations:
            try:
                if self.has_been_scored(session_id, operation.operation_id):
                    continue
                evaluation = evaluate_operation(
                    operation.operation_id,
                    history,
                    duration_ms,
                    task_label=operation.task_label,
                    agent_compute_ms=agent_compute_ms,
                    execute_tool=self.config.EXECUTE_TOOL_NAME,
                )
                if evaluation is None:
                    continue

                scored = ScoredOperation(
                    operation=operation,
                    evaluation=evaluation,
                    statuses=summarize_status_messages(
                        history, operation.operation_id, self.config.EXECUTE_TOOL_NAME
                    ),
                )
                llm_feedback = await self.feedback.operation_feedback(scored, answer, operations)

                metadata = self._base_metadata()
                metadata.update(
                    {
                        "attempts": evaluation.attempts,
                        "errors": evaluation.errors,
                        "durationMs": evaluation.duration_ms,
                        "feedback": evaluation.feedback_note,
                        "llmFeedback": _feedback_dict(llm_feedback),
                    }
                )
                ok = await self.submit_record(
                    score=evaluation.score,
                    session_id=session_id,
                    user_id=actor_id,
                    task_label=operation.task_label,
                    operation_id=operation.operation_id,
                    tools_used=tool_usage,
                    duration_ms=evaluation.duration_ms,
                    error_flag=evaluation.error_flag,
                    error_summary=evaluation.error_summary,
                    client_metadata=metadata,
                )
                if ok:
                    self._mark_scored(session_id, operation.operation_id)
                    scored_ops.append(scored)
            finally:
                self._clear_pending(session_id, operation.operation_id)

        if len(scored_ops) >= MIN_OPERATIONS_FOR_TURN_SUMMARY:
            await self.submit_turn_summary(
                actor_id, session_id, scored_ops, tool_usage, duration_ms, agent_compute_ms, answer, prompt
            )
        return len(scored_ops)

    async def submit_turn_summary(
        self,
        actor_id: str,
        session_id: str,
        scored_ops: Sequence[ScoredOperation],
        tool_usage: List[Dict[str, str]],
        duration_ms: int,
        agent_compute_ms: Optional[int] = None,
        answer: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> bool:
        """Submit one aggregate record for a turn that scored several operations."""
        scores = [op.evaluation.score for op in scored_ops]
        average = round(sum(scores) / len(scores))
        error_summaries = [op.evaluation.error_summary for op in scored_ops if op.evaluation.error_summary]

        turn_feedback = await self.feedback.turn_summary_feedback(
            scored_ops, duration_ms, agent_compute_ms, answer
        )

        operations_meta = []
        for op in scored_ops:
            last = op.statuses[-1] if op.statuses else None
            operations_meta.append(
                {
                    "operationId": op.operation.operation_id,
                    "taskLabel": op.operation.task_label,
                    "score": op.evaluation.score,
                    "attempts": op.evaluation.attempts,
                    "errors": op.evaluation.errors,
                    "durationMs": op.evaluation.duration_ms,
                    "errorFlag": op.evaluation.error_flag,
                    "errorSummary": op.evaluation.error_summary,
                    "lastStatusCode": last.status_code if last else None,
                    "lastStatusMessage": last.message if last else None,
                }
            )

        metadata = self._base_metadata()
        metadata.update(
            {
                "operations": operations_meta,
                "aggregateStats": {
                    "totalOperations": len(scored_ops),
                    "averageScore": average,
                    "bestScore": max(scores),
                    "lowestScore": min(scores),
                    "totalAttempts": sum(op.evaluation.attempts for op in scored_ops),
                    "totalErrors": sum(op.evaluation.errors for op in scored_ops),
                    "durationMs": duration_ms,
                    "agentComputeMs": agent_compute_ms,
                },
                "feedback": " | ".join(op.evaluation.feedback_note for op in scored_ops) or None,
                "llmFeedback": _feedback_dict(turn_feedback),
                "prompt": prompt,
            }
        )
        return await self.submit_record(
            score=average,
            session_id=session_id,
            user_id=actor_id,
            task_label=TURN_SUMMARY_LABEL,
            operation_id=None,
            tools_used=tool_usage,
            duration_ms=duration_ms,
            error_flag=any(op.evaluation.error_flag for op in scored_ops),
            error_summary=error_summaries[-1] if error_summaries else None,
            client_metadata=metadata,
        )

    async def submit_record(
        self,
        score: int,
        session_id: str,
        user_id: Optional[str],
        task_label: Optional[str],
        operation_id: Optional[str],
        tools_used: List[Dict[str, str]],
        duration_ms: Optional[int],
        error_flag: bool,
        error_summary: Optional[str],
        client_metadata: Optional[Dict[str, Any]],
    ) -> bool:
        """Send one record to the submit tool; ``True`` only for ``{"ok": true, "id": str}``."""
        args: Dict[str, Any] = {
            "score": score,
            "sessionId": session_id,
            "agentId": self.config.AGENT_ID,
            "toolsUsed": tools_used,
            "errorFlag": error_flag,
            "userPermission": True,
        }
        optional = {
            "agentVersion": self.config.AGENT_VERSION,
            "userId": user_id,
            "taskLabel": task_label,
            "operationId": operation_id,
            "durationMs": duration_ms,
            "errorSummary": error_summary[:240] if error_summary else None,
            "clientMetadata": {k: v for k, v in (client_metadata or {}).items() if v is not None} or None,
        }
        args.update({key: value for key, value in optional.items() if value is not None})

        try:
            result = await self.gateway.call_tool(self.config.SUBMIT_TOOL_NAME, args)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("ANPS submission error for %s: %s", operation_id or task_label, exc)
            return False

        parsed = extract_tool_json_payload(result)
        if isinstance(parsed, dict) and parsed.get("ok") is True and isinstance(parsed.get("id"), str):
            logger.info(
                "ANPS submitted id=%s score=%d task=%s", parsed["id"], score, task_label
            )
            return True
        message = parsed.get("message") if isinstance(parsed, dict) else None
        logger.warning("ANPS submission rejected for %s: %s", operation_id or task_label, message)
        return False
