"""MCP tool gateway: exposes an MCP server's tools to the engine.

Wraps an already-connected ``mcp.ClientSession``; establishing the
transport (stdio, SSE, streamable HTTP) is up to the host. Pass
``gateway.handle_message`` as the session's ``message_handler`` so that
``notifications/tools/list_changed`` refreshes the catalog and server log
messages reach notification listeners.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from mcp import ClientSession
from mcp.types import (
    CallToolResult,
    LoggingMessageNotification,
    ServerNotification,
    TextContent,
    Tool,
    ToolListChangedNotification,
)

from parley.api.errors import ToolGatewayError
from parley.api.tools import CatalogListener, ToolOutput, notify_listeners
from parley.conversation.schemas import ToolCatalogEntry

logger = logging.getLogger(__name__)

NotificationListener = Callable[[Any], Any]


def tool_to_entry(tool: Tool) -> ToolCatalogEntry:
    return ToolCatalogEntry(
        name=tool.name,
        description=tool.description or "",
        input_schema=dict(tool.inputSchema),
    )


def result_to_output(result: CallToolResult) -> ToolOutput:
    """Convert MCP content items to text/data items.

    Text content keeps its text; images and audio keep their base64
    ``data``; anything else is serialized so the model still sees it.
    """
    items: list[dict[str, Any]] = []
    for content in result.content:
        if isinstance(content, TextContent):
            items.append({"type": "text", "text": content.text})
        elif getattr(content, "data", None) is not None:
            items.append({"type": content.type, "data": content.data})
        else:
            items.append({"type": content.type, "text": content.model_dump_json(exclude_none=True)})
    return ToolOutput(items=items, is_error=bool(result.isError))


class McpToolGateway:
    """ToolGateway backed by an MCP client session."""

    def __init__(self, session: ClientSession | None = None) -> None:
        self._session = session
        self._catalog_listeners: list[CatalogListener] = []
        self._notification_listeners: list[NotificationListener] = []

    def attach(self, session: ClientSession) -> None:
        """Bind a session created with ``message_handler=self.handle_message``."""
        self._session = session

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolGatewayError("MCP session not attached -- call attach() first")
        return self._session

    async def invoke(self, name: str, arguments: dict[str, Any], timeout: float) -> ToolOutput:
        session = self._require_session()
        result = await session.call_tool(
            name,
            arguments,
            read_timeout_seconds=timedelta(seconds=timeout),
        )
        return result_to_output(result)

    async def list_tools(self) -> list[ToolCatalogEntry]:
        session = self._require_session()
        response = await session.list_tools()
        return [tool_to_entry(tool) for tool in response.tools]

    def notify_on_catalog_change(self, callback: CatalogListener) -> None:
        self._catalog_listeners.append(callback)

    def on_notification(self, callback: NotificationListener) -> None:
        self._notification_listeners.append(callback)

    async def handle_message(self, message: Any) -> None:
        """``message_handler`` for ClientSession.

        Requests and transport exceptions are only logged; the session
        handles its own request/response flow.
        """
        if isinstance(message, Exception):
            logger.warning("MCP session error: %s", message)
            return
        if not isinstance(message, ServerNotification):
            return

        notification = message.root
        if isinstance(notification, ToolListChangedNotification):
            logger.debug("Received notification that tools list changed, refreshing...")
            entries = await self.list_tools()
            await notify_listeners(self._catalog_listeners, entries)
        elif isinstance(notification, LoggingMessageNotification):
            params = notification.params
            logger.debug("Notification received: %s - %s", params.level, params.data)
            for listener in self._notification_listeners:
                listener(notification)
