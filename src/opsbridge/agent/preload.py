"""Fetch operation suggestions for a prompt before the first planning step."""

import logging
from typing import (
    Any,
    List,
    Optional,
    Sequence,
)

from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.payload import extract_tool_json_payload
from opsbridge.core.schema import (
    InitialOperation,
    ToolDescriptor,
)
from opsbridge.tools import ToolGateway

logger = logging.getLogger(__name__)


def _first_string(item: dict, *keys: str) -> Optional[str]:
    for key in keys:
        if isinstance(item.get(key), str):
            return item[key]
    return None


def parse_operations(payload: Any) -> List[InitialOperation]:
    """Keep search hits that carry an operation id, a method and a path."""
    if not isinstance(payload, list):
        return []
    operations: List[InitialOperation] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        operation_id = _first_string(item, "operationId", "operation_id", "id")
        method = _first_string(item, "method", "httpMethod", "verb")
        path = _first_string(item, "path", "url", "endpoint")
        if operation_id is None or method is None or path is None:
            continue
        tags = item.get("tags")
        operations.append(
            InitialOperation(
                operation_id=operation_id,
                method=method,
                path=path,
                summary=item["summary"] if isinstance(item.get("summary"), str) else None,
                tags=[tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else None,
            )
        )
    return operations


async def preload_operations(
    prompt: str,
    gateway: ToolGateway,
    tools: Sequence[ToolDescriptor],
    config: Settings | None = None,
) -> List[InitialOperation]:
    """Call the search tool once, if the catalog has it; any failure yields ``[]``."""
    cfg = config or settings
    if not any(tool.name == cfg.SEARCH_TOOL_NAME for tool in tools):
        return []
    try:
        result = await gateway.call_tool(
            cfg.SEARCH_TOOL_NAME, {"query": prompt, "limit": cfg.OPERATION_HINT_LIMIT}
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Failed to preload operation suggestions: %s", exc)
        return []
    operations = parse_operations(extract_tool_json_payload(result))
    logger.debug("Preloaded %d operation suggestions", len(operations))
    return operations
