"""Conversation engine -- runs user queries through the tool-call loop.

Owns one transcript and drives it through
AwaitingCompletion -> EmittingResponse -> (Done | InvokingTools -> AwaitingCompletion).

Every completion call is preceded by repair() and ensure_budget(), and
wrapped in the RetryPolicy. Tools run sequentially, one at a time, so the
transcript order is deterministic and each failure is attributed to one
call. The engine assumes exclusive access to its transcript: a second
process_query() while one is in flight raises ConversationBusyError.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from parley.api.completion import CompletionService
from parley.api.context_window import ContextWindowManager, TokenCounter, TokenEstimator
from parley.api.errors import ConversationBusyError
from parley.api.retry import RetryPolicy
from parley.api.tools import ToolGateway
from parley.config import Settings
from parley.conversation.repair import log_conversation, repair
from parley.conversation.schemas import (
    Block,
    CompletionResponse,
    Role,
    TextBlock,
    ToolCatalogEntry,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    block_to_api,
    flatten,
)
from parley.storage.store import ConversationStore

logger = logging.getLogger(__name__)

# emit(role, content): content is text, or a one-element list holding a
# tool_use / tool_result block in wire form. May be sync or async.
Emit = Callable[[str, str | list[dict[str, Any]]], Any]

# update_settings() keyword -> Settings field
_SETTINGS_FIELDS = {
    "system_prompt": "system_prompt",
    "model_name": "model",
    "max_output_tokens": "max_tokens",
    "max_tool_calls_per_query": "max_tool_calls_per_query",
    "tool_call_timeout_sec": "tool_call_timeout_sec",
}


def tool_limit_message(limit: int) -> str:
    return (
        "Too many tool calls in a single turn! This has been implemented to prevent infinite loops.\n"
        f"Limit is {limit}.\n"
        'You can increase the limit by setting the "max_tool_calls_per_query" parameter.'
    )


async def _emit(emit: Emit, role: Role, content: str | list[dict[str, Any]]) -> None:
    result = emit(role.value, content)
    if inspect.isawaitable(result):
        await result


class ConversationEngine:
    """Runs tool-augmented queries against one conversation."""

    def __init__(
        self,
        settings: Settings,
        completion: CompletionService,
        *,
        store: ConversationStore | None = None,
        turns: list[Turn] | None = None,
        counter: TokenCounter | None = None,
    ) -> None:
        self._settings = settings
        self._completion = completion
        self._store = store
        self._turns: list[Turn] = list(turns or [])
        self._tools: list[ToolCatalogEntry] = []
        self._counter = counter
        self._busy = False
        self.estimator = TokenEstimator()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def conversation(self) -> list[Turn]:
        """Raw transcript (copy)."""
        return list(self._turns)

    @property
    def tools(self) -> list[ToolCatalogEntry]:
        return list(self._tools)

    @property
    def busy(self) -> bool:
        return self._busy

    def get_conversation(self) -> list[Turn]:
        """Flattened transcript: one turn per block, for display."""
        return flatten(self._turns)

    # ------------------------------------------------------------------
    # State changes from the host
    # ------------------------------------------------------------------

    def reset_conversation(self) -> None:
        self._turns = []

    def update_settings(
        self,
        *,
        system_prompt: str | None = None,
        model_name: str | None = None,
        max_output_tokens: int | None = None,
        max_tool_calls_per_query: int | None = None,
        tool_call_timeout_sec: float | None = None,
    ) -> Settings:
        """Replace the settings the engine runs with; None means unchanged."""
        given = {
            "system_prompt": system_prompt,
            "model_name": model_name,
            "max_output_tokens": max_output_tokens,
            "max_tool_calls_per_query": max_tool_calls_per_query,
            "tool_call_timeout_sec": tool_call_timeout_sec,
        }
        update = {_SETTINGS_FIELDS[k]: v for k, v in given.items() if v is not None}
        if update.get("max_tool_calls_per_query", 0) < 0:
            raise ValueError("max_tool_calls_per_query must be >= 0")
        if update.get("max_tokens", 1) <= 0:
            raise ValueError("max_output_tokens must be > 0")
        if update.get("tool_call_timeout_sec", 1) <= 0:
            raise ValueError("tool_call_timeout_sec must be > 0")
        if update:
            self._settings = self._settings.model_copy(update=update)
            logger.info("Settings updated: %s", sorted(update))
        return self._settings

    def on_tool_catalog_changed(self, entries: list[ToolCatalogEntry]) -> None:
        """Replace the tool catalog wholesale."""
        self._tools = list(entries)
        logger.debug("Tool catalog updated: %s", [t.name for t in self._tools])

    async def refresh_tools(self, gateway: ToolGateway) -> list[ToolCatalogEntry]:
        entries = await gateway.list_tools()
        self.on_tool_catalog_changed(entries)
        return self.tools

    async def connect_gateway(self, gateway: ToolGateway) -> list[ToolCatalogEntry]:
        """Follow a gateway's catalog changes and load its current tools."""
        gateway.notify_on_catalog_change(self.on_tool_catalog_changed)
        return await self.refresh_tools(gateway)

    def on_notification(self, raw: Any) -> None:
        logger.info("Handling notification: %s", raw)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> list[Turn]:
        """Restore the transcript from the store (repaired on the way in)."""
        if self._store is None:
            return self.conversation
        self._turns = repair(await self._store.load())
        logger.info("Restored conversation with %d turns", len(self._turns))
        return self.conversation

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(self._turns)
        except Exception:
            logger.warning("Failed to persist conversation (non-fatal)", exc_info=True)

    # ------------------------------------------------------------------
    # Query processing
    # ------------------------------------------------------------------

    async def process_query(self, gateway: ToolGateway, text: str, emit: Emit) -> None:
        """Run one user query to completion.

        Completion failures (after retries) are recorded as an assistant
        turn, emitted, and re-raised.
        """
        if self._busy:
            raise ConversationBusyError("A query is already being processed for this conversation")
        self._busy = True
        try:
            logger.debug("User query: %r", text)
            self._commit(Turn(role=Role.USER, content=text))
            try:
                response = await self._complete()
                await self.handle_response(gateway, response, emit)
            except Exception as e:
                error_msg = str(e) or type(e).__name__
                logger.error("Error processing user query: %s", error_msg)
                self._commit(Turn(role=Role.ASSISTANT, content=error_msg))
                await _emit(emit, Role.ASSISTANT, error_msg)
                raise
        finally:
            self._busy = False
            await self._persist()

    async def handle_response(
        self,
        gateway: ToolGateway,
        response: CompletionResponse,
        emit: Emit,
        tool_call_count: int = 0,
    ) -> None:
        """Emit a response, run its tool calls, and follow up until done.

        ``tool_call_count`` is the number of tool calls already issued for
        the current query; no more than ``max_tool_calls_per_query`` are
        ever dispatched.
        """
        while True:
            limit = self._settings.max_tool_calls_per_query
            assistant_blocks: list[Block] = []
            tool_uses: list[ToolUseBlock] = []
            limit_hit = False

            for block in response.content:
                if isinstance(block, TextBlock):
                    assistant_blocks.append(block)
                    await _emit(emit, Role.ASSISTANT, block.text)
                elif isinstance(block, ToolUseBlock):
                    if tool_call_count + len(tool_uses) >= limit:
                        msg = tool_limit_message(limit)
                        assistant_blocks.append(TextBlock(text=msg))
                        await _emit(emit, Role.ASSISTANT, msg)
                        limit_hit = True
                        break
                    assistant_blocks.append(block)
                    await _emit(emit, Role.ASSISTANT, [block_to_api(block)])
                    tool_uses.append(block)

            if assistant_blocks:
                self._commit(Turn(role=Role.ASSISTANT, content=assistant_blocks))
            else:
                logger.debug("Completion returned no text or tool_use blocks")

            if not tool_uses:
                return

            await self._run_tools(gateway, tool_uses, emit)
            tool_call_count += len(tool_uses)

            if limit_hit:
                logger.info("Tool call limit (%d) reached, ending query", limit)
                return

            logger.debug("Get model response from tool results")
            response = await self._complete()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, turn: Turn) -> None:
        self._turns = [*self._turns, turn]

    def _token_counter(self) -> TokenCounter:
        if self._counter is not None:
            return self._counter
        if self._settings.token_estimation == "heuristic":
            return self.estimator.count_tokens

        async def count_with_api(system_prompt: str, turns: list[Turn], tools: list[ToolCatalogEntry]) -> int:
            return await self._completion.count_tokens(system_prompt, turns, tools, model=self._settings.model)

        return count_with_api

    async def _complete(self) -> CompletionResponse:
        """Repair, fit to the context window, then call with retries."""
        settings = self._settings
        manager = ContextWindowManager(
            self._token_counter(),
            max_context_tokens=settings.max_context_tokens,
            safety_margin_ratio=settings.safety_margin_ratio,
            min_retained_turns=settings.min_retained_turns,
        )
        self._turns = repair(self._turns)
        self._turns = await manager.ensure_budget(self._turns, settings.system_prompt, self._tools)
        log_conversation(self._turns, "completion request")

        async def send(turns: list[Turn]) -> CompletionResponse:
            return await self._completion.complete(
                settings.system_prompt,
                turns,
                self._tools,
                model=settings.model,
                max_tokens=settings.max_tokens,
            )

        policy = RetryPolicy(settings.max_retries, settings.retry_base_delay_ms)
        response, self._turns = await policy.call(send, self._turns)
        self._record_usage(settings.system_prompt, response)
        return response

    def _record_usage(self, system_prompt: str, response: CompletionResponse) -> None:
        if response.usage is None:
            return
        logger.debug(
            "Token usage: input=%d output=%d",
            response.usage.input_tokens,
            response.usage.output_tokens,
        )
        self.estimator.calibrate(
            TokenEstimator.request_chars(system_prompt, self._turns, self._tools),
            response.usage.input_tokens,
        )

    async def _run_tools(self, gateway: ToolGateway, tool_uses: list[ToolUseBlock], emit: Emit) -> None:
        """Invoke tools in order and commit one tool-channel turn.

        A call already dispatched when the caller is cancelled still
        completes, and its result is committed before the cancellation
        propagates.
        """
        results: list[Block] = []
        try:
            for block in tool_uses:
                task = asyncio.ensure_future(self._invoke_tool(gateway, block))
                try:
                    result = await asyncio.shield(task)
                except asyncio.CancelledError:
                    results.append(await task)
                    raise
                results.append(result)
                await _emit(emit, Role.USER, [block_to_api(result)])
        finally:
            if results:
                self._commit(Turn(role=Role.USER, content=results))

    async def _invoke_tool(self, gateway: ToolGateway, block: ToolUseBlock) -> ToolResultBlock:
        timeout = self._settings.tool_call_timeout_sec
        logger.debug("Calling tool %s (%s) input=%s", block.name, block.id, block.input)
        try:
            output = await asyncio.wait_for(gateway.invoke(block.name, block.input, timeout), timeout=timeout)
        except TimeoutError:
            logger.warning("Tool %s timed out after %ss", block.name, timeout)
            return ToolResultBlock(
                tool_use_id=block.id,
                content=f"Error when calling tool {block.name}, error: timed out after {timeout}s",
                is_error=True,
            )
        except Exception as e:
            logger.warning("Error when calling tool %s: %s", block.name, e)
            return ToolResultBlock(
                tool_use_id=block.id,
                content=f"Error when calling tool {block.name}, error: {e}",
                is_error=True,
            )

        text = output.joined()
        if not text:
            return ToolResultBlock(
                tool_use_id=block.id,
                content=f"No results retrieved from {block.name}",
                is_error=True,
            )
        return ToolResultBlock(tool_use_id=block.id, content=text, is_error=output.is_error)
