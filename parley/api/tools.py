"""Tool gateway protocol and an in-process gateway.

Provides:
- ToolGateway: what the engine needs from a tool backend
- ToolOutput: normalized result of one invocation
- LocalToolGateway: registers async handlers and dispatches calls to them

Handlers return MCP-format responses ({"content": [{"type": "text",
"text": "..."}]}) or a plain string. The MCP-backed gateway lives in
parley.api.mcp.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from parley.api.errors import ToolGatewayError
from parley.conversation.schemas import ToolCatalogEntry

logger = logging.getLogger(__name__)

CatalogListener = Callable[[list[ToolCatalogEntry]], Any]


@dataclass
class ToolOutput:
    """Items returned by a tool: dicts with a "text" or a "data" key."""

    items: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    def joined(self, separator: str = "\n\n") -> str:
        parts = []
        for item in self.items:
            value = item.get("text")
            if value is None:
                value = item.get("data")
            if value is not None:
                parts.append(str(value))
        return separator.join(parts)


class ToolGateway(Protocol):
    async def invoke(self, name: str, arguments: dict[str, Any], timeout: float) -> ToolOutput: ...

    async def list_tools(self) -> list[ToolCatalogEntry]: ...

    def notify_on_catalog_change(self, callback: CatalogListener) -> None: ...


async def notify_listeners(listeners: list[CatalogListener], entries: list[ToolCatalogEntry]) -> None:
    """Call catalog listeners in registration order; sync or async both work."""
    for listener in listeners:
        result = listener(list(entries))
        if asyncio.iscoroutine(result):
            await result


# ---------------------------------------------------------------------------
# LocalToolGateway
# ---------------------------------------------------------------------------


class LocalToolGateway:
    """Registers tool handlers and dispatches calls in-process.

    Each handler is an async callable that accepts **kwargs. Registering
    or removing a tool notifies catalog listeners with the full new
    catalog.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Awaitable[Any]]] = {}
        self._entries: dict[str, ToolCatalogEntry] = {}
        self._listeners: list[CatalogListener] = []

    async def register(
        self,
        name: str,
        handler: Callable[..., Awaitable[Any]],
        schema: dict[str, Any],
        description: str | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._entries[name] = ToolCatalogEntry(
            name=name,
            description=description if description is not None else schema.get("description", ""),
            input_schema=schema,
        )
        await notify_listeners(self._listeners, list(self._entries.values()))

    async def unregister(self, name: str) -> None:
        if self._handlers.pop(name, None) is None:
            return
        self._entries.pop(name, None)
        await notify_listeners(self._listeners, list(self._entries.values()))

    async def list_tools(self) -> list[ToolCatalogEntry]:
        return list(self._entries.values())

    def notify_on_catalog_change(self, callback: CatalogListener) -> None:
        self._listeners.append(callback)

    async def invoke(self, name: str, arguments: dict[str, Any], timeout: float) -> ToolOutput:
        """Run a handler under ``timeout`` seconds.

        Raises ToolGatewayError for unknown tools, timeouts and handler
        exceptions.
        """
        handler = self._handlers.get(name)
        if not handler:
            raise ToolGatewayError(f"Unknown tool: {name}")
        try:
            result = await asyncio.wait_for(handler(**arguments), timeout=timeout)
        except TimeoutError as e:
            raise ToolGatewayError(f"Tool {name} timed out after {timeout}s") from e
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            raise ToolGatewayError(f"Tool error: {e}") from e
        return _to_output(result)


def _to_output(result: Any) -> ToolOutput:
    if isinstance(result, ToolOutput):
        return result
    if isinstance(result, str):
        return ToolOutput(items=[{"type": "text", "text": result}])
    if isinstance(result, dict):
        content = result.get("content", [])
        return ToolOutput(
            items=[dict(item) for item in content],
            is_error=bool(result.get("isError", result.get("is_error", False))),
        )
    raise ToolGatewayError(f"Unsupported tool result type: {type(result).__name__}")
