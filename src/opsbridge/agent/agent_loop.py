"""
Main orchestration loop for opsbridge.

:class:`AskLoop` turns an operator prompt into a bounded sequence of tool calls.  Each iteration
asks the planner for one step, then either finishes, skips a duplicate call, runs the call, or
suspends because the call needs human approval.  A suspended run hands back a
:class:`~opsbridge.core.schema.ResumeToken`; :meth:`AskLoop.resume` picks the turn up again from
that token alone, so nothing but plain data has to survive between the two requests.

States: ``RUNNING`` while iterating, then exactly one of ``SUSPENDED``, ``FINISHED`` or
``FAILED`` in the returned :class:`~opsbridge.core.schema.LoopResult`.
"""

import copy
import functools
import logging
import threading
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
)

from opsbridge.agent.aggregators import summary_ground_truth
from opsbridge.agent.dedupe_cache import ToolDedupeCache
from opsbridge.agent.history_tracker import (
    HistoryTracker,
    is_mutating_execute_call,
)
from opsbridge.agent.plan_normalizer import (
    FALLBACK_MESSAGE,
    normalize_plan,
)
from opsbridge.agent.planner_interface import BasePlanner
from opsbridge.agent.preload import preload_operations
from opsbridge.agent.tool_executor import (
    ExecuteOutcome,
    ToolExecutor,
)
from opsbridge.agent.validation import ValidationManager
from opsbridge.agent.validation_summary import build_validation_summary
from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.payload import (
    ensure_markdown_minimum,
    find_ungrounded_numbers,
    normalize_tool_args,
)
from opsbridge.core.schema import (
    FinalAnswer,
    HistoryEntry,
    InitialOperation,
    LoopResult,
    LoopState,
    ResumeToken,
    ToolDescriptor,
    ValidationRequest,
)
from opsbridge.tools import ToolGateway

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Request was cancelled by the client."
MAX_STEPS_ERROR = "The agent could not complete the request within the maximum number of steps."


class CancellationToken:
    """Cooperative cancel flag; the loop checks it only between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def merge_edited_data(original: Dict[str, Any], edits: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep-merge operator edits into the original arguments; nested dicts merge, the rest replaces."""
    merged = copy.deepcopy(original)
    if not isinstance(edits, dict):
        return merged
    for key, value in edits.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_edited_data(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class _Turn:
    """Mutable state of one run; never shared between runs."""

    prompt: str
    tools: List[ToolDescriptor]
    tracker: HistoryTracker
    initial_operations: List[InitialOperation] = field(default_factory=list)
    ground_truth: Dict[str, float] = field(default_factory=dict)


class AskLoop:
    """
    Step-bounded plan/execute loop.

    Parameters
    ----------
    planner:
        Backend that proposes the next step.
    gateway:
        Tool gateway used for every call (including schema lookups and previews).
    validation_manager:
        Shared registry where approval requests are created.
    config:
        Settings; defaults to the module-level ``settings``.
    max_steps:
        Overrides ``config.MAX_STEPS``.
    """

    def __init__(
        self,
        planner: BasePlanner,
        gateway: ToolGateway,
        validation_manager: ValidationManager,
        config: Settings | None = None,
        max_steps: int | None = None,
        executor: ToolExecutor | None = None,
    ) -> None:
        self.planner = planner
        self.gateway = gateway
        self.validation_manager = validation_manager
        self.config = config or settings
        self.max_steps = max_steps if max_steps is not None else self.config.MAX_STEPS
        self.executor = executor or ToolExecutor(gateway, validation_manager, config=self.config)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _new_tracker(self, history: Optional[Sequence[HistoryEntry]] = None) -> HistoryTracker:
        cache = ToolDedupeCache(config=self.config)
        return HistoryTracker([entry.model_copy(deep=True) for entry in history or []], cache)

    def is_cacheable(self, tool_name: str, args: Any) -> bool:
        """Mutating calls of a dedupe-enabled tool."""
        return tool_name in self.config.DEDUPE_TOOLS and is_mutating_execute_call(args)

    def _failed(self, turn: _Turn, error: str, step: Optional[int] = None) -> LoopResult:
        return LoopResult(
            state=LoopState.FAILED,
            error=error,
            history=turn.tracker.snapshot(),
            next_step=step,
            ground_truth=dict(turn.ground_truth),
        )

    def _record_success(
        self, turn: _Turn, tool_name: str, args: Dict[str, Any], outcome: ExecuteOutcome, cacheable: bool
    ) -> None:
        if outcome.truth:
            turn.ground_truth.update(outcome.truth)
        turn.ground_truth.update(summary_ground_truth(outcome.summary))
        turn.tracker.record_result(tool_name, args, outcome.result, cacheable, outcome.meta)
        if outcome.summary is not None:
            turn.tracker.record_summary(tool_name, outcome.summary)

    def _finish(self, turn: _Turn, plan: FinalAnswer) -> LoopResult:
        answer = plan.answer if plan.answer and plan.answer.strip() else FALLBACK_MESSAGE
        ungrounded = find_ungrounded_numbers(answer, turn.ground_truth)
        if ungrounded and turn.ground_truth:
            logger.warning("Answer asserts numbers not seen in tool results: %s", ungrounded)
        return LoopResult(
            state=LoopState.FINISHED,
            answer=ensure_markdown_minimum(answer),
            data=turn.tracker.latest_payload(),
            history=turn.tracker.snapshot(),
            ground_truth=dict(turn.ground_truth),
        )

    def _suspend(
        self,
        turn: _Turn,
        step: int,
        tool_name: str,
        args: Dict[str, Any],
        cacheable: bool,
        request: ValidationRequest,
    ) -> LoopResult:
        message = build_validation_summary(
            request, turn.tracker.entries, execute_tool_name=self.config.EXECUTE_TOOL_NAME
        )
        token = ResumeToken(
            validation_id=request.id,
            prompt=turn.prompt,
            tool_name=tool_name,
            tool_args=args,
            cacheable=cacheable,
            next_step=step + 1,
            history=turn.tracker.snapshot(),
            initial_operations=list(turn.initial_operations),
            pending_answer=message,
            ground_truth=dict(turn.ground_truth),
        )
        logger.info("Suspending turn at step %d for validation %s", step + 1, request.id)
        result = LoopResult(
            state=LoopState.SUSPENDED,
            answer=message,
            data=request.model_dump(mode="json"),
            history=token.history,
            validation_request=request,
            resume_token=token,
            next_step=step + 1,
            ground_truth=dict(turn.ground_truth),
        )
        return result.bind_continuation(functools.partial(self.resume, token))

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------
    async def _iterate(
        self, turn: _Turn, start_step: int, cancel_token: Optional[CancellationToken]
    ) -> LoopResult:
        step = start_step
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Turn cancelled before step %d", step + 1)
                return self._failed(turn, CANCELLED_ERROR, step)
            if step >= self.max_steps:
                logger.warning("Max steps (%d) exceeded", self.max_steps)
                return self._failed(turn, MAX_STEPS_ERROR, step)

            logger.info("Agent loop step %d/%d", step + 1, self.max_steps)
            try:
                raw_plan = await self.planner.plan(
                    turn.prompt, turn.tools, turn.tracker.entries, turn.initial_operations
                )
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Planner failed at step %d", step + 1)
                return self._failed(turn, f"Planner failure: {exc}", step)

            plan = normalize_plan(raw_plan)
            if isinstance(plan, FinalAnswer):
                return self._finish(turn, plan)

            tool_name = plan.tool_name
            args = normalize_tool_args(plan.tool_args)
            logger.debug("Planner wants tool '%s' with args=%s", tool_name, args)
            cacheable = self.is_cacheable(tool_name, args)

            cached = turn.tracker.get_cached_success(tool_name, args, cacheable)
            if cached is not None:
                logger.info("Skipping duplicate call of '%s'", tool_name)
                turn.tracker.record_duplicate(tool_name, cached)
                step += 1
                continue

            outcome = await self.executor.execute(tool_name, args)
            if outcome.validation_request is not None:
                return self._suspend(turn, step, tool_name, args, cacheable, outcome.validation_request)
            if outcome.error is not None:
                turn.tracker.record_error(tool_name, args, outcome.error, outcome.meta)
            else:
                self._record_success(turn, tool_name, args, outcome, cacheable)
            step += 1

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run(
        self,
        prompt: str,
        history: Optional[Sequence[HistoryEntry]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LoopResult:
        """
        Run a new turn for *prompt*.

        Raises
        ------
        ValueError
            If *prompt* is blank.
        """
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("Missing prompt")

        turn = _Turn(prompt=prompt, tools=[], tracker=self._new_tracker(history))
        try:
            turn.tools = await self.gateway.list_tools()
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Could not list tools")
            return self._failed(turn, f"Tool catalog unavailable: {exc}", 0)
        turn.initial_operations = await preload_operations(
            prompt, self.gateway, turn.tools, config=self.config
        )
        return await self._iterate(turn, 0, cancel_token)

    async def resume(
        self,
        token: ResumeToken,
        approved: bool,
        edited_data: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LoopResult:
        """
        Continue a suspended turn after the operator decided.

        A rejection ends the chain and returns the pending-approval message unchanged.  An
        approval runs the held call exactly once (with *edited_data* merged in), bypassing the
        validation gate, then keeps iterating from ``token.next_step``.
        """
        tracker = self._new_tracker(token.history)
        tracker.reseed_cache(lambda entry: self.is_cacheable(entry.tool_name, entry.tool_args))
        turn = _Turn(
            prompt=token.prompt,
            tools=[],
            tracker=tracker,
            initial_operations=list(token.initial_operations),
            ground_truth=dict(token.ground_truth),
        )

        if not approved:
            return LoopResult(
                state=LoopState.FINISHED,
                answer=token.pending_answer,
                data={"tool_name": token.tool_name, "tool_args": token.tool_args},
                history=tracker.snapshot(),
                ground_truth=dict(turn.ground_truth),
            )

        args = merge_edited_data(token.tool_args, edited_data)
        outcome = await self.executor.execute(token.tool_name, args, skip_validation=True)
        if outcome.error is not None:
            tracker.record_error(token.tool_name, args, outcome.error, outcome.meta)
        else:
            self._record_success(turn, token.tool_name, args, outcome, token.cacheable)

        try:
            turn.tools = await self.gateway.list_tools()
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Could not list tools")
            return self._failed(turn, f"Tool catalog unavailable: {exc}", token.next_step)
        return await self._iterate(turn, token.next_step, cancel_token)
