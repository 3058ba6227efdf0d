"""Plan normalization must accept anything and never raise."""

from typing import Any

import pytest

from opsbridge.agent.plan_normalizer import (
    FALLBACK_MESSAGE,
    normalize_action,
    normalize_plan,
)
from opsbridge.core.schema import (
    CallTool,
    FinalAnswer,
)


@pytest.mark.parametrize(
    "raw",
    [None, [], [1, 2], "final_answer", 42, {}, {"answer": "no action"}, {"action": "dance"}],
)
def test_garbage_becomes_fallback(raw: Any) -> None:
    """Inputs without a usable action produce the fallback final answer."""
    plan = normalize_plan(raw)
    assert isinstance(plan, FinalAnswer)
    assert plan.answer == FALLBACK_MESSAGE


@pytest.mark.parametrize("action", ["final_answer", "finalAnswer", "Final-Answer", "respond", "answer"])
def test_final_answer_synonyms(action: str) -> None:
    """Every spelling of the final action is understood."""
    assert normalize_action(action) == "final_answer"


@pytest.mark.parametrize("action", ["call_tool", "callTool", "tool_call", "use_tool", "openapi.execute"])
def test_call_tool_synonyms(action: str) -> None:
    """Every spelling of the tool action is understood; dotted actions name the tool."""
    assert normalize_action(action) == "call_tool"


def test_answer_field_synonyms() -> None:
    """The answer may arrive under a different key."""
    plan = normalize_plan({"action": "final_answer", "response": "All good"})
    assert isinstance(plan, FinalAnswer)
    assert plan.answer == "All good"


def test_dotted_action_is_tool_name() -> None:
    """``{"action": "openapi.execute"}`` calls that tool with the given args."""
    plan = normalize_plan({"action": "openapi.execute", "args": {"operationId": "AdminGetOrders"}})
    assert isinstance(plan, CallTool)
    assert plan.tool_name == "openapi.execute"
    assert plan.tool_args == {"operationId": "AdminGetOrders"}


def test_top_level_operation_id_moves_into_args() -> None:
    """An operation id next to the action is copied into the arguments."""
    plan = normalize_plan(
        {"action": "call_tool", "toolName": "openapi.execute", "operation_id": "AdminGetProducts"}
    )
    assert isinstance(plan, CallTool)
    assert plan.tool_args["operationId"] == "AdminGetProducts"


def test_operation_id_used_as_tool_name_when_missing() -> None:
    """Without a tool name the operation id stands in for it."""
    plan = normalize_plan({"action": "call_tool", "operationId": "AdminGetProducts"})
    assert isinstance(plan, CallTool)
    assert plan.tool_name == "AdminGetProducts"


def test_call_without_any_tool_falls_back() -> None:
    """A tool action naming nothing callable is not executable."""
    plan = normalize_plan({"action": "call_tool", "tool_args": {}})
    assert isinstance(plan, FinalAnswer)
    assert plan.answer == FALLBACK_MESSAGE
