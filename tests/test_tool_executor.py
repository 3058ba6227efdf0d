"""
Sanity tests for the local tool gateway and the tool executor.

Run with:
$ pytest -q
"""

from typing import Any

import pytest

from conftest import (
    call_execute,
    final,
)
from opsbridge.agent.tool_executor import (
    ToolExecutor,
    clean_field_enums,
    clean_read_only_fields,
    compact_preview,
    derive_read_operation_id,
    error_object,
    method_from_operation_id,
)
from opsbridge.agent.validation import ValidationManager
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import LoopState
from opsbridge.tools import (
    LocalToolGateway,
    ToolExecutionError,
    ToolGatewayError,
    ToolRegistry,
)


@pytest.fixture
def local_gateway() -> LocalToolGateway:
    registry = ToolRegistry()

    # This is a stub tool for testing purposes.
    @registry.register("add")
    def _add(a: int, b: int) -> int:
        """Return the sum of two integers (used only for tests)."""

        return a + b

    @registry.register("async_echo")
    async def _echo(text: str = "hi") -> dict:
        return {"content": [{"type": "text", "text": text}]}

    return LocalToolGateway(registry)


@pytest.mark.asyncio
async def test_call_tool_success(local_gateway: LocalToolGateway) -> None:
    """Gateway should wrap the tool's value in a text envelope."""

    result = await local_gateway.call_tool("add", {"a": 2, "b": 3})
    assert extract_tool_json_payload(result) == 5


@pytest.mark.asyncio
async def test_async_tool_envelope_passthrough(local_gateway: LocalToolGateway) -> None:
    """Async tools are awaited and ready-made envelopes are returned unchanged."""

    result = await local_gateway.call_tool("async_echo", {"text": "hello"})
    assert result == {"content": [{"type": "text", "text": "hello"}]}


@pytest.mark.asyncio
async def test_call_tool_missing(local_gateway: LocalToolGateway) -> None:
    """Gateway should raise *ToolExecutionError* for an unknown tool."""

    with pytest.raises(ToolExecutionError) as exc_info:
        await local_gateway.call_tool("not_a_tool", {})
    assert "not_a_tool" in str(exc_info.value)
    assert exc_info.value.code == "tool_not_found"


@pytest.mark.asyncio
async def test_call_tool_bad_args(local_gateway: LocalToolGateway) -> None:
    """Gateway should raise *ToolExecutionError* for wrong arguments."""

    with pytest.raises(ToolExecutionError) as exc_info:
        await local_gateway.call_tool("add", {"a": 2})  # missing 'b'
    assert "Invalid arguments" in str(exc_info.value)


@pytest.mark.asyncio
async def test_list_tools_describes_parameters(local_gateway: LocalToolGateway) -> None:
    """Catalog entries expose parameter names and required flags."""

    tools = {tool.name: tool for tool in await local_gateway.list_tools()}
    assert tools["add"].description == "Return the sum of two integers (used only for tests)."
    assert tools["add"].input_schema["required"] == ["a", "b"]
    assert tools["async_echo"].input_schema["required"] == []


def test_duplicate_registration_rejected() -> None:
    """Registering the same name twice is a programming error."""

    registry = ToolRegistry()
    registry.register("x")(lambda: 1)
    with pytest.raises(ValueError):
        registry.register("x")(lambda: 2)


@pytest.mark.asyncio
async def test_executor_returns_error_object(gateway: Any, config: Any) -> None:
    """Gateway failures come back as structured errors, not exceptions."""

    gateway.responses["AdminGetOrders"] = ToolGatewayError("bad request", code=400, data={"field": "x"})
    executor = ToolExecutor(gateway, ValidationManager(config=config), config=config)
    outcome = await executor.execute("openapi.execute", {"operationId": "AdminGetOrders"})
    assert outcome.result is None
    assert outcome.error == {"error": True, "message": "bad request", "code": 400, "data": {"field": "x"}}
    assert outcome.meta is not None and outcome.meta.duration_ms is not None


@pytest.mark.asyncio
async def test_executor_gates_destructive_calls(gateway: Any, config: Any) -> None:
    """Destructive operations produce a validation request with schema data and a preview."""

    gateway.responses["AdminGetProductsId"] = {"product": {"id": "p1", "title": "Hat", "tags": []}}
    manager = ValidationManager(config=config)
    executor = ToolExecutor(gateway, manager, config=config)
    args = {"operationId": "AdminPostProductsId", "pathParams": {"id": "p1"}, "body": {"title": "Cap"}}

    outcome = await executor.execute("openapi.execute", args)
    request = outcome.validation_request
    assert request is not None
    assert manager.has_pending_validation(request.id)
    assert request.body_field_read_only == ["id"]
    assert request.resource_preview == {"id": "p1", "title": "Hat"}
    assert gateway.calls_for("AdminPostProductsId") == []

    skipped = await executor.execute("openapi.execute", args, skip_validation=True)
    assert skipped.validation_request is None
    assert len(gateway.calls_for("AdminPostProductsId")) == 1


@pytest.mark.asyncio
async def test_executor_ignores_non_execute_tools(gateway: Any, config: Any) -> None:
    """Only the execute tool is subject to approval."""

    executor = ToolExecutor(gateway, ValidationManager(config=config), config=config)
    assert not executor.requires_validation("openapi.schema", {"operationId": "AdminPostProducts"})
    assert executor.requires_validation("openapi.execute", {"operationId": "storePostCart"})
    assert not executor.requires_validation("openapi.execute", {"operationId": "AdminGetProducts"})


def test_operation_id_helpers() -> None:
    """Write operation ids map to their read counterpart and HTTP method."""

    assert derive_read_operation_id("AdminPostProductsId") == "AdminGetProductsId"
    assert derive_read_operation_id("AdminGetProducts") is None
    assert method_from_operation_id("AdminDeleteProductsId") == "DELETE"
    assert method_from_operation_id("something") == "POST"
    assert compact_preview({"product": {"id": "p1", "note": None}}) == {"id": "p1"}
    assert error_object(ValueError("x")) == {"error": True, "message": "x"}


def _replace_schema_tool(gateway: Any, fn: Any) -> None:
    gateway.registry.unregister("openapi.schema")
    gateway.registry.register("openapi.schema")(fn)


@pytest.mark.asyncio
async def test_numeric_and_boolean_enums_reach_the_request(make_loop: Any, gateway: Any) -> None:
    """Schema enums of any JSON scalar type are kept; non-string read-only entries are dropped."""

    def schema(operationId: str) -> dict:
        return {
            "method": "post",
            "path": "/admin/things",
            "bodyFieldEnums": {"rank": [1, 2, 3], "flag": [True, False], "mode": "not-a-list"},
            "bodyFieldReadOnly": ["id", 5],
        }

    _replace_schema_tool(gateway, schema)
    loop, _ = make_loop([call_execute("AdminPostThings", body={"rank": 1}), final("Done.")])
    result = await loop.run("rank the thing")

    assert result.state == LoopState.SUSPENDED
    request = result.validation_request
    assert request.body_field_enums == {"rank": [1, 2, 3], "flag": [True, False]}
    assert request.body_field_read_only == ["id"]
    assert request.path == "/admin/things"
    assert gateway.calls_for("AdminPostThings") == []


@pytest.mark.asyncio
async def test_schema_failure_still_yields_request(gateway: Any, config: Any) -> None:
    """A failing schema lookup leaves the schema fields empty and derives the method."""

    def schema(operationId: str) -> dict:
        raise ToolGatewayError("schema unavailable")

    _replace_schema_tool(gateway, schema)
    executor = ToolExecutor(gateway, ValidationManager(config=config), config=config)
    outcome = await executor.execute("openapi.execute", {"operationId": "AdminDeleteOrdersId"})

    request = outcome.validation_request
    assert request is not None
    assert request.method == "DELETE"
    assert request.path == ""
    assert request.body_field_enums is None
    assert request.body_field_read_only is None
    assert request.resource_preview is None


@pytest.mark.asyncio
async def test_non_dict_schema_is_ignored(gateway: Any, config: Any) -> None:
    """Plain-text schema output is treated as no schema at all."""

    _replace_schema_tool(gateway, lambda operationId: "no schema for this operation")
    executor = ToolExecutor(gateway, ValidationManager(config=config), config=config)
    outcome = await executor.execute("openapi.execute", {"operationId": "AdminPutOrders"})

    request = outcome.validation_request
    assert request is not None
    assert request.method == "PUT"
    assert request.body_field_enums is None
    assert request.body_field_read_only is None


@pytest.mark.asyncio
async def test_preview_failure_leaves_preview_empty(gateway: Any, config: Any) -> None:
    """A raising read call does not stop the approval request."""

    gateway.responses["AdminGetProductsId"] = ToolGatewayError("not found", code=404)
    executor = ToolExecutor(gateway, ValidationManager(config=config), config=config)
    args = {"operationId": "AdminDeleteProductsId", "pathParams": {"id": "p1"}}
    outcome = await executor.execute("openapi.execute", args)

    request = outcome.validation_request
    assert request is not None
    assert request.resource_preview is None
    assert len(gateway.calls_for("AdminGetProductsId")) == 1
    assert gateway.calls_for("AdminDeleteProductsId") == []


@pytest.mark.asyncio
async def test_error_envelope_preview_is_ignored(gateway: Any, config: Any) -> None:
    """Read results flagged ``isError`` are not shown as a preview."""

    gateway.responses["AdminGetProductsId"] = {
        "isError": True,
        "content": [{"type": "text", "text": '{"id": "p1", "title": "Hat"}'}],
    }
    executor = ToolExecutor(gateway, ValidationManager(config=config), config=config)
    args = {"operationId": "AdminPostProductsId", "pathParams": {"id": "p1"}, "body": {"title": "Cap"}}
    outcome = await executor.execute("openapi.execute", args)

    assert outcome.validation_request is not None
    assert outcome.validation_request.resource_preview is None


def test_schema_field_cleaners() -> None:
    """Malformed enum and read-only metadata collapses to ``None``."""

    assert clean_field_enums({"size": ["s", 1, 2.5, None, {"x": 1}]}) == {"size": ["s", 1, 2.5, None]}
    assert clean_field_enums({"size": [{"x": 1}]}) is None
    assert clean_field_enums(["size"]) is None
    assert clean_read_only_fields(["id", "", 3]) == ["id"]
    assert clean_read_only_fields("id") is None
