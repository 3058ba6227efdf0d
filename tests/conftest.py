"""Shared fakes: a scripted planner and a recording gateway over a private tool registry."""

import copy
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

import pytest

from opsbridge.agent.agent_loop import AskLoop
from opsbridge.agent.planner_interface import BasePlanner
from opsbridge.agent.validation import ValidationManager
from opsbridge.config import Settings
from opsbridge.core.schema import (
    HistoryEntry,
    InitialOperation,
    ToolDescriptor,
)
from opsbridge.tools import (
    LocalToolGateway,
    ToolRegistry,
)


class ScriptedPlanner(BasePlanner):
    """Returns pre-baked raw plans in order; the last one repeats once the script runs out."""

    name = "scripted"

    def __init__(self, steps: Sequence[Any], config: Optional[Settings] = None) -> None:
        super().__init__(config=config, model="scripted")
        self.steps = list(steps)
        self.calls = 0
        self.histories: List[List[HistoryEntry]] = []

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> str:
        raise NotImplementedError

    async def plan(
        self,
        prompt: str,
        tools: Sequence[ToolDescriptor],
        history: Sequence[HistoryEntry],
        initial_operations: Sequence[InitialOperation] = (),
    ) -> Optional[Dict[str, Any]]:
        self.calls += 1
        self.histories.append([entry.model_copy(deep=True) for entry in history])
        if not self.steps:
            return None
        step = self.steps[min(self.calls - 1, len(self.steps) - 1)]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(history)
        return copy.deepcopy(step)


class RecordingGateway(LocalToolGateway):
    """Local gateway that remembers every call it receives."""

    def __init__(self) -> None:
        super().__init__(ToolRegistry())
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.responses: Dict[str, Any] = {}
        self.submissions: List[Dict[str, Any]] = []

    async def call_tool(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((name, copy.deepcopy(args)))
        return await super().call_tool(name, args)

    def calls_for(self, operation_id: str) -> List[Dict[str, Any]]:
        return [
            args
            for name, args in self.calls
            if name == "openapi.execute" and args.get("operationId") == operation_id
        ]


def call_execute(operation_id: str, **extra: Any) -> Dict[str, Any]:
    """Raw plan calling the execute tool."""
    args = {"operationId": operation_id}
    args.update(extra)
    return {"action": "call_tool", "tool_name": "openapi.execute", "tool_args": args}


def final(answer: str) -> Dict[str, Any]:
    return {"action": "final_answer", "answer": answer}


@pytest.fixture
def config(tmp_path: Any) -> Settings:
    return Settings(
        DATA_DIR=str(tmp_path),
        PLANNER="ci",
        MAX_STEPS=6,
        ANPS_ENABLED=True,
        AGENT_ID="test-agent",
        AGENT_VERSION="1.0.0",
    )


@pytest.fixture
def gateway() -> RecordingGateway:
    gw = RecordingGateway()

    @gw.registry.register("openapi.execute")
    def execute(operationId: str, **kwargs: Any) -> Any:
        """Run an API operation."""
        response = gw.responses.get(operationId, {"statusCode": 200, "ok": True})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(operationId=operationId, **kwargs)
        return copy.deepcopy(response)

    @gw.registry.register("openapi.schema")
    def schema(operationId: str) -> Dict[str, Any]:
        """Describe an API operation."""
        return {
            "operationId": operationId,
            "method": "post",
            "path": "/admin/products/{id}",
            "bodyFieldReadOnly": ["id"],
        }

    @gw.registry.register("agent_nps.submit")
    def submit(**kwargs: Any) -> Dict[str, Any]:
        """Store an ANPS record."""
        gw.submissions.append(kwargs)
        return {"ok": True, "id": f"anps_{len(gw.submissions)}"}

    return gw


@pytest.fixture
def validation_manager(config: Settings) -> ValidationManager:
    return ValidationManager(config=config)


@pytest.fixture
def make_loop(
    gateway: RecordingGateway, validation_manager: ValidationManager, config: Settings
) -> Callable[..., Tuple[AskLoop, ScriptedPlanner]]:
    def factory(steps: Sequence[Any], **kwargs: Any) -> Tuple[AskLoop, ScriptedPlanner]:
        planner = ScriptedPlanner(steps, config=config)
        loop = AskLoop(planner, gateway, validation_manager, config=config, **kwargs)
        return loop, planner

    return factory
