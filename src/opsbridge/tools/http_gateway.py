"""Tool gateway client that forwards calls to a remote HTTP gateway."""

import logging
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

import httpx

from opsbridge.config import (
    Settings,
    settings,
)
from opsbridge.core.schema import ToolDescriptor
from opsbridge.tools import ToolGatewayError

logger = logging.getLogger(__name__)


class HttpToolGateway:
    """
    :class:`~opsbridge.tools.ToolGateway` speaking a small REST dialect.

    * ``GET  {base}/tools`` returns ``{"tools": [{name, description?, inputSchema?}]}``
    * ``POST {base}/tools/call`` with ``{"name": ..., "arguments": {...}}`` returns an envelope.

    Transport failures and non-2xx responses raise :class:`ToolGatewayError`.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or settings
        url = base_url or cfg.GATEWAY_URL
        if not url:
            raise ValueError("HttpToolGateway requires a base URL (set GATEWAY_URL).")
        self.base_url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else cfg.GATEWAY_TIMEOUT
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.request(method, url, json=json_body)
        except httpx.HTTPError as exc:
            logger.error("Gateway request error: %s", str(exc))
            raise ToolGatewayError(f"Error calling tool gateway: {exc}") from exc

        data: Any = None
        try:
            data = resp.json()
        except ValueError:
            data = resp.text

        if resp.is_error:
            message = f"Tool gateway returned HTTP {resp.status_code}"
            if isinstance(data, dict) and isinstance(data.get("message"), str):
                message = data["message"]
            raise ToolGatewayError(message, code=resp.status_code, data=data)
        return data

    async def list_tools(self) -> List[ToolDescriptor]:
        data = await self._request("GET", "/tools")
        items = data.get("tools", []) if isinstance(data, dict) else data
        tools: List[ToolDescriptor] = []
        for item in items or []:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                continue
            tools.append(
                ToolDescriptor(
                    name=item["name"],
                    description=item.get("description"),
                    input_schema=item.get("inputSchema") or item.get("input_schema"),
                )
            )
        return tools

    async def call_tool(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug("Forwarding tool '%s' to %s", name, self.base_url)
        data = await self._request("POST", "/tools/call", {"name": name, "arguments": args})
        if not isinstance(data, dict):
            raise ToolGatewayError(f"Malformed envelope from tool '{name}'", result=data)
        if data.get("isError") is True:
            logger.warning("Tool '%s' reported an error envelope", name)
        return data
