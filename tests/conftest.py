"""Shared fixtures: settings, a scripted completion service, a local tool gateway."""

from __future__ import annotations

import pytest
import pytest_asyncio

from parley.api.tools import LocalToolGateway
from parley.config import Settings
from parley.conversation.schemas import (
    CompletionResponse,
    TextBlock,
    ToolCatalogEntry,
    ToolUseBlock,
    Turn,
    Usage,
    turns_to_api,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_response(
    text: str = "",
    tool_uses: list[dict] | None = None,
    usage: Usage | None = None,
) -> CompletionResponse:
    """Build a CompletionResponse with text and/or tool_use blocks."""
    content = []
    if text:
        content.append(TextBlock(text=text))
    for i, tu in enumerate(tool_uses or []):
        content.append(ToolUseBlock(
            id=tu.get("id", f"toolu_{i:03d}"),
            name=tu["name"],
            input=tu.get("input", {}),
        ))
    return CompletionResponse(
        content=content,
        stop_reason="tool_use" if tool_uses else "end_turn",
        usage=usage,
    )


def char_count_tokens(turns: list[Turn]) -> int:
    """Deterministic estimator: characters of the serialized turns / 4."""
    return len(str(turns_to_api(turns))) // 4


class ScriptedCompletion:
    """CompletionService fake that replays responses or raises errors in order.

    Records the transcript it was given on every call.
    """

    def __init__(self, script: list | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[list[Turn]] = []
        self.count_calls = 0

    async def complete(self, system_prompt, turns, tools, *, model, max_tokens):
        self.calls.append(list(turns))
        if not self.script:
            raise AssertionError("ScriptedCompletion ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def count_tokens(self, system_prompt, turns, tools, *, model):
        self.count_calls += 1
        return char_count_tokens(turns)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retries and a small tool-call cap."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        max_tool_calls_per_query=3,
        retry_base_delay_ms=0,
        tool_call_timeout_sec=5,
        conversation_store_path="",
    )


@pytest_asyncio.fixture
async def echo_gateway() -> LocalToolGateway:
    """LocalToolGateway with echo, add, empty and failing tools."""
    gateway = LocalToolGateway()

    async def echo_tool(message: str = "default") -> dict:
        return {"content": [{"type": "text", "text": f"Echo: {message}"}]}

    async def add_tool(a: float = 0, b: float = 0) -> dict:
        return {"content": [{"type": "text", "text": str(a + b)}]}

    async def empty_tool() -> dict:
        return {"content": []}

    async def broken_tool() -> dict:
        raise ValueError("disk on fire")

    await gateway.register("echo", echo_tool, {
        "type": "object",
        "description": "Echo tool",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    })
    await gateway.register("add", add_tool, {
        "type": "object",
        "description": "Add tool",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    })
    await gateway.register("empty", empty_tool, {"type": "object", "properties": {}})
    await gateway.register("broken", broken_tool, {"type": "object", "properties": {}})
    return gateway


@pytest.fixture
def catalog() -> list[ToolCatalogEntry]:
    return [ToolCatalogEntry(name="echo", description="Echo tool")]
