"""Planner registry and response parsing."""

import json
from typing import Any

import pytest

from opsbridge.agent.planner_interface import (
    CI_ANSWER,
    BasePlanner,
    CIPlanner,
    PlannerError,
    load_planner,
)
from opsbridge.core.schema import (
    HistoryEntry,
    InitialOperation,
    ToolDescriptor,
)


class CannedPlanner(BasePlanner):
    name = "canned"

    def __init__(self, reply: Any, config: Any = None) -> None:
        super().__init__(config=config, model="canned")
        self.reply = reply
        self.messages: list = []

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        self.messages.append((system_prompt, user_message))
        return self.reply


def test_load_planner(config: Any) -> None:
    """Registered names resolve; unknown names are an error."""
    assert isinstance(load_planner(config=config), CIPlanner)
    with pytest.raises(ValueError, match="not registered"):
        load_planner("nope", config=config)


@pytest.mark.asyncio
async def test_ci_planner_answers_directly(config: Any) -> None:
    """The CI planner never calls tools."""
    plan = await CIPlanner(config=config).plan("anything", [], [])
    assert plan == {"action": "final_answer", "answer": CI_ANSWER}


@pytest.mark.asyncio
async def test_prompt_lists_tools_history_and_hints(config: Any) -> None:
    """Tools, prior actions and operation hints all reach the backend."""
    planner = CannedPlanner(json.dumps({"action": "final_answer", "answer": "ok"}), config=config)
    tools = [
        ToolDescriptor(
            name="openapi.execute",
            description="Run an API operation",
            input_schema={"properties": {"operationId": {}, "body": {}}},
        )
    ]
    history = [HistoryEntry(tool_name="openapi.schema", tool_args={"operationId": "X"}, tool_result={})]
    hints = [InitialOperation(operation_id="AdminGetOrders", method="get", path="/admin/orders", tags=["Orders"])]
    await planner.plan("list orders", tools, history, hints)

    system_prompt, user_message = planner.messages[0]
    assert "- openapi.execute(operationId, body): Run an API operation" in system_prompt
    assert "User's goal: list orders" in user_message
    assert '"tool_name": "openapi.schema"' in user_message
    assert "- AdminGetOrders (GET /admin/orders) [tags: Orders]" in user_message


@pytest.mark.asyncio
async def test_fenced_and_embedded_json_parsed(config: Any) -> None:
    """Plans wrapped in fences or prose are still recovered."""
    raw = 'Sure:\n```json\n{"action": "call_tool", "tool_name": "t", "tool_args": {}}\n```'
    plan = await CannedPlanner(raw, config=config).plan("x", [], [])
    assert plan == {"action": "call_tool", "tool_name": "t", "tool_args": {}}


@pytest.mark.asyncio
async def test_prose_becomes_final_answer(config: Any) -> None:
    """Plain text replies are treated as the answer."""
    plan = await CannedPlanner("There are no open orders.", config=config).plan("x", [], [])
    assert plan == {"action": "final_answer", "answer": "There are no open orders."}


@pytest.mark.asyncio
async def test_empty_and_blank_replies(config: Any) -> None:
    """An empty reply is a backend failure; whitespace means no plan."""
    with pytest.raises(PlannerError):
        await CannedPlanner("", config=config).plan("x", [], [])
    assert await CannedPlanner("   ", config=config).plan("x", [], []) is None
