"""Parley console entry point.

Wires Settings -> AnthropicClient -> ConversationEngine -> LocalToolGateway
and runs a line-based chat on stdin/stdout. Slash commands:
  /reset    clear the conversation
  /history  print the flattened transcript
  /quit     exit
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from parley.api.completion import AnthropicClient
from parley.api.runner import ConversationEngine
from parley.api.tools import LocalToolGateway
from parley.config import Settings
from parley.conversation.schemas import Turn
from parley.storage.store import JsonFileStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def current_time(timezone: str = "UTC") -> dict:
    """Builtin tool: the current UTC time in ISO-8601."""
    now = datetime.now(UTC).isoformat(timespec="seconds")
    return {"content": [{"type": "text", "text": f"Current time ({timezone}): {now}"}]}


CURRENT_TIME_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Get the current date and time (UTC).",
    "properties": {
        "timezone": {"type": "string", "description": "Label echoed back; time is always UTC"},
    },
}


def print_event(role: str, content: str | list[dict[str, Any]]) -> None:
    if isinstance(content, str):
        print(f"[{role}] {content}", flush=True)
        return
    for block in content:
        if block.get("type") == "tool_use":
            print(f"[{role}] -> {block['name']}({json.dumps(block.get('input', {}))})", flush=True)
        elif block.get("type") == "tool_result":
            marker = "!" if block.get("is_error") else "<-"
            print(f"[{role}] {marker} {str(block.get('content', ''))[:200]}", flush=True)


def format_turn(turn: Turn) -> str:
    if isinstance(turn.content, str):
        return f"{turn.role}: {turn.content}"
    return f"{turn.role}: {json.dumps([b.model_dump(exclude_none=True) for b in turn.content])[:200]}"


async def run(settings: Settings) -> None:
    client = AnthropicClient(settings)
    await client.start()

    store = JsonFileStore(settings.conversation_store_path) if settings.conversation_store_path else None
    engine = ConversationEngine(settings, client, store=store)
    await engine.load()

    gateway = LocalToolGateway()
    await engine.connect_gateway(gateway)
    await gateway.register("current_time", current_time, CURRENT_TIME_SCHEMA)

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            query = line.strip()
            if not query:
                continue
            if query == "/quit":
                break
            if query == "/reset":
                engine.reset_conversation()
                print("[system] conversation reset", flush=True)
                continue
            if query == "/history":
                for turn in engine.get_conversation():
                    print(format_turn(turn), flush=True)
                continue
            try:
                await engine.process_query(gateway, query, print_event)
            except Exception as e:
                logger.error("Error in processing user query: %s", e)
    finally:
        await client.close()


def main() -> None:
    """Entry point: load settings, configure logging and run the chat loop."""
    settings = Settings()
    configure_logging(settings)
    logger.info("Starting Parley (model: %s)", settings.model)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
