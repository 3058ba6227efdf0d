"""
Tool gateway contract and the in-process tool registry.

The ask loop only ever talks to a :class:`ToolGateway`: something that lists tools and invokes
one by name, returning an envelope ``{"content": [{"type": "text", "text": ...}], "isError"?}``.
Two implementations ship with the package:

* :class:`LocalToolGateway` - dispatches to Python functions registered in a :class:`ToolRegistry`.
* :class:`opsbridge.tools.http_gateway.HttpToolGateway` - forwards calls to a remote gateway.

Tools are registered with a decorator, like this::

    @register_tool("inventory.lookup")
    def lookup(sku: str) -> dict:
        ...
"""

import inspect
import logging
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    TypedDict,
    get_type_hints,
    runtime_checkable,
)

from opsbridge.core.payload import text_envelope
from opsbridge.core.schema import ToolDescriptor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class ToolGatewayError(RuntimeError):
    """A gateway call failed; carries the structured details the gateway reported."""

    def __init__(
        self,
        message: str,
        code: int | str | None = None,
        data: Any = None,
        result: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.result = result


class ToolExecutionError(ToolGatewayError):
    """Raised when a locally registered tool is missing or fails."""


# ---------------------------------------------------------------------------
# Gateway protocol
# ---------------------------------------------------------------------------
@runtime_checkable
class ToolGateway(Protocol):
    """Anything that can list and invoke named tools."""

    async def list_tools(self) -> List[ToolDescriptor]:
        """Return the tool catalog."""

    async def call_tool(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """Invoke *name* with *args* and return its envelope."""


# ---------------------------------------------------------------------------
# Local registry
# ---------------------------------------------------------------------------
class ParameterInfo(TypedDict):
    """Information about a tool parameter."""

    type: str
    required: bool


class ToolSchema(TypedDict):
    """Schema for a tool function."""

    description: str
    parameters: Mapping[str, ParameterInfo]


class ToolRegistry:
    """Name -> function mapping for tools implemented in Python."""

    def __init__(self) -> None:
        self._tools: Dict[str, Callable[..., Any]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[Callable[..., Any]]:
        return self._tools.get(name)

    def register(self, name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Register a tool function under *name*.

        Parameters
        ----------
        name: str
            Unique tool name, dotted names such as ``openapi.execute`` are fine.

        Returns
        -------
        Callable
            A decorator that registers the function and returns it unchanged.

        Raises
        ------
        ValueError
            If a function with the same name is already registered.
        """
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered.")
        logger.debug("Registering tool '%s'", name)

        def wrapper(fn: Callable[..., Any]) -> Callable[..., Any]:
            self._tools[name] = fn
            return fn

        return wrapper

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def schemas(self) -> Mapping[str, ToolSchema]:
        """Extract parameter information from registered tools."""
        tool_schemas: Dict[str, ToolSchema] = {}
        for name, func in self._tools.items():
            sig = inspect.signature(func)
            type_hints = get_type_hints(func)
            params = {}
            for param_name, param in sig.parameters.items():
                if param.kind in (inspect.Parameter.VAR_KEYWORD, inspect.Parameter.VAR_POSITIONAL):
                    continue
                param_type = type_hints.get(param_name, "any")
                param_type_name = getattr(param_type, "__name__", str(param_type))
                params[param_name] = ParameterInfo(
                    type=param_type_name, required=param.default == inspect.Parameter.empty
                )
            tool_schemas[name] = {"description": inspect.getdoc(func) or "", "parameters": params}
        return tool_schemas

    def descriptors(self) -> List[ToolDescriptor]:
        """Catalog entries with a JSON-schema-ish ``input_schema``."""
        out: List[ToolDescriptor] = []
        for name, schema in self.schemas().items():
            properties = {p: {"type": info["type"]} for p, info in schema["parameters"].items()}
            required = [p for p, info in schema["parameters"].items() if info["required"]]
            out.append(
                ToolDescriptor(
                    name=name,
                    description=schema["description"] or None,
                    input_schema={"type": "object", "properties": properties, "required": required},
                )
            )
        return out


TOOL_REGISTRY = ToolRegistry()
"""Process-wide default registry."""

register_tool = TOOL_REGISTRY.register


def _is_envelope(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("content"), list)


class LocalToolGateway:
    """
    :class:`ToolGateway` backed by a :class:`ToolRegistry`.

    Sync and async tool functions are both supported.  Return values that are not already
    envelopes are JSON-encoded into a single text entry.
    """

    def __init__(self, registry: ToolRegistry | None = None) -> None:
        self.registry = registry if registry is not None else TOOL_REGISTRY

    async def list_tools(self) -> List[ToolDescriptor]:
        return self.registry.descriptors()

    async def call_tool(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """
        Look up *name* in the registry and invoke it with *args* as keyword arguments.

        Raises
        ------
        ToolExecutionError
            If the tool is missing or its invocation raises an exception.
        """
        tool_fn = self.registry.get(name)
        if tool_fn is None:
            raise ToolExecutionError(f"Tool '{name}' is not registered.", code="tool_not_found")

        try:
            logger.debug("Executing tool '%s' with args=%s", name, args)
            result = tool_fn(**(args or {}))
            if inspect.isawaitable(result):
                result = await result
        except ToolGatewayError:
            raise
        except TypeError as exc:
            # Argument mismatch: give the caller a clean exception.
            logger.exception("Argument error while executing tool '%s'", name)
            raise ToolExecutionError(
                f"Invalid arguments for tool '{name}': {exc}", code="invalid_arguments"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in tool '%s'", name)
            raise ToolExecutionError(f"Tool '{name}' raised an error: {exc}") from exc

        return result if _is_envelope(result) else text_envelope(result)
