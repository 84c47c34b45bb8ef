"""Tests for ConversationEngine: query lifecycle, settings, catalog, persistence."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from parley.api.errors import (
    CompletionError,
    ConversationBusyError,
    RateLimitedError,
    RateLimitExceededError,
    StructuralRejectionError,
)
from parley.api.retry import rate_limit_message
from parley.api.runner import ConversationEngine
from parley.conversation.repair import MISSING_RESULT_MESSAGE
from parley.conversation.schemas import (
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    Usage,
)
from parley.storage.store import JsonFileStore
from tests.conftest import ScriptedCompletion, make_response


def _ignore(role, content):
    pass


# Long enough that ensure_budget counts tokens once a query is added
HISTORY = [
    Turn(role=Role.USER, content="Hi"),
    Turn(role=Role.ASSISTANT, content="Hello! How can I help?"),
]


# ------------------------------------------------------------------
# Query lifecycle
# ------------------------------------------------------------------


class TestProcessQuery:
    @pytest.mark.asyncio
    async def test_error_recorded_emitted_and_reraised(self, settings, echo_gateway):
        error = CompletionError("invalid x-api-key", status_code=401, error_type="authentication_error")
        engine = ConversationEngine(settings, ScriptedCompletion([error]))
        events = []

        with pytest.raises(CompletionError) as exc_info:
            await engine.process_query(echo_gateway, "Hi", lambda r, c: events.append((r, c)))

        assert exc_info.value is error
        assert events == [("assistant", "invalid x-api-key")]
        assert engine.conversation == [
            Turn(role=Role.USER, content="Hi"),
            Turn(role=Role.ASSISTANT, content="invalid x-api-key"),
        ]
        assert engine.busy is False

    @pytest.mark.asyncio
    async def test_retry_exhaustion_surfaces_user_facing_message(self, settings, echo_gateway):
        engine = ConversationEngine(settings, ScriptedCompletion([
            RateLimitedError("slow down", status_code=429),
            RateLimitedError("slow down", status_code=429),
            RateLimitedError("slow down", status_code=429),
        ]))

        with pytest.raises(RateLimitExceededError):
            await engine.process_query(echo_gateway, "Hi", _ignore)

        assert engine.conversation[-1].content == rate_limit_message(3)

    @pytest.mark.asyncio
    async def test_concurrent_query_rejected(self, settings, echo_gateway):
        gate = asyncio.Event()

        class SlowCompletion(ScriptedCompletion):
            async def complete(self, *args, **kwargs):
                await gate.wait()
                return await super().complete(*args, **kwargs)

        engine = ConversationEngine(settings, SlowCompletion([make_response("done")]))
        first = asyncio.create_task(engine.process_query(echo_gateway, "one", _ignore))
        await asyncio.sleep(0)
        assert engine.busy is True

        with pytest.raises(ConversationBusyError):
            await engine.process_query(echo_gateway, "two", _ignore)

        gate.set()
        await first
        assert [t.content for t in engine.conversation if t.role == Role.USER] == ["one"]
        assert engine.busy is False

    @pytest.mark.asyncio
    async def test_transcript_repaired_before_completion(self, settings, echo_gateway):
        interrupted = [
            Turn(role=Role.USER, content="scrape"),
            Turn(role=Role.ASSISTANT, content=[ToolUseBlock(id="toolu_lost", name="echo", input={})]),
        ]
        completion = ScriptedCompletion([make_response("ok")])
        engine = ConversationEngine(settings, completion, turns=interrupted)

        await engine.process_query(echo_gateway, "did it work?", _ignore)

        sent = completion.calls[0]
        assert len(sent) == 4
        assert sent[2] == Turn(role=Role.USER, content=[
            ToolResultBlock(tool_use_id="toolu_lost", content=MISSING_RESULT_MESSAGE),
        ])
        assert sent[3] == Turn(role=Role.USER, content="did it work?")

    @pytest.mark.asyncio
    async def test_structural_rejection_heals_stored_transcript(self, settings, echo_gateway):
        history = [
            Turn(role=Role.USER, content="first"),
            Turn(role=Role.ASSISTANT, content=[ToolUseBlock(id="toolu_01Bad", name="echo", input={})]),
            Turn(role=Role.USER, content=[ToolResultBlock(tool_use_id="toolu_01Bad", content="r")]),
            Turn(role=Role.ASSISTANT, content="answer"),
        ]
        rejection = StructuralRejectionError.from_message(
            "messages.1: `tool_use` ids were found without `tool_result` blocks immediately after: toolu_01Bad"
        )
        completion = ScriptedCompletion([rejection, make_response("recovered")])
        engine = ConversationEngine(settings, completion, turns=history)

        await engine.process_query(echo_gateway, "again", _ignore)

        assert len(completion.calls) == 2
        assert all(
            not any(isinstance(b, ToolUseBlock) for b in t.blocks)
            for t in completion.calls[1]
        )
        assert engine.conversation[-1].content == [TextBlock(text="recovered")]

    @pytest.mark.asyncio
    async def test_over_budget_history_evicted_before_send(self, settings, echo_gateway):
        history = []
        for i in range(10):
            history.append(Turn(role=Role.USER, content=f"q{i}"))
            history.append(Turn(role=Role.ASSISTANT, content=f"a{i}"))

        async def expensive(system_prompt, turns, tools):
            return 10_000_000

        completion = ScriptedCompletion([make_response("short now")])
        engine = ConversationEngine(settings, completion, turns=history, counter=expensive)

        await engine.process_query(echo_gateway, "next", _ignore)

        sent = completion.calls[0]
        assert len(sent) == settings.min_retained_turns
        assert sent[-1] == Turn(role=Role.USER, content="next")


# ------------------------------------------------------------------
# Settings and views
# ------------------------------------------------------------------


class TestSettingsAndViews:
    def test_update_settings(self, settings):
        engine = ConversationEngine(settings, ScriptedCompletion())

        updated = engine.update_settings(model_name="claude-haiku-4-5", max_output_tokens=512)

        assert updated.model == "claude-haiku-4-5"
        assert updated.max_tokens == 512
        assert engine.settings is updated
        # untouched fields keep their values
        assert updated.system_prompt == settings.system_prompt
        assert settings.model != "claude-haiku-4-5"

    def test_update_settings_none_is_noop(self, settings):
        engine = ConversationEngine(settings, ScriptedCompletion())
        assert engine.update_settings() is settings

    @pytest.mark.parametrize("kwargs", [
        {"max_tool_calls_per_query": -1},
        {"max_output_tokens": 0},
        {"tool_call_timeout_sec": 0},
    ])
    def test_update_settings_rejects_invalid(self, settings, kwargs):
        engine = ConversationEngine(settings, ScriptedCompletion())
        with pytest.raises(ValueError):
            engine.update_settings(**kwargs)
        assert engine.settings is settings

    def test_reset_conversation(self, settings):
        engine = ConversationEngine(settings, ScriptedCompletion(), turns=[Turn(role=Role.USER, content="hi")])
        engine.reset_conversation()
        assert engine.conversation == []

    def test_get_conversation_is_flattened(self, settings):
        use = ToolUseBlock(id="t1", name="echo", input={"message": "x"})
        engine = ConversationEngine(settings, ScriptedCompletion(), turns=[
            Turn(role=Role.USER, content="hi"),
            Turn(role=Role.ASSISTANT, content=[TextBlock(text="checking"), use]),
        ])

        flat = engine.get_conversation()

        assert flat == [
            Turn(role=Role.USER, content="hi"),
            Turn(role=Role.ASSISTANT, content="checking"),
            Turn(role=Role.ASSISTANT, content=[use]),
        ]
        assert len(engine.conversation) == 2

    def test_conversation_is_a_copy(self, settings):
        engine = ConversationEngine(settings, ScriptedCompletion(), turns=[Turn(role=Role.USER, content="hi")])
        engine.conversation.append(Turn(role=Role.USER, content="sneaky"))
        assert len(engine.conversation) == 1


# ------------------------------------------------------------------
# Tool catalog
# ------------------------------------------------------------------


class TestToolCatalog:
    @pytest.mark.asyncio
    async def test_connect_gateway_loads_and_follows_catalog(self, settings, echo_gateway):
        engine = ConversationEngine(settings, ScriptedCompletion())

        entries = await engine.connect_gateway(echo_gateway)
        assert [e.name for e in entries] == ["echo", "add", "empty", "broken"]

        async def noop() -> str:
            return "ok"

        await echo_gateway.register("noop", noop, {"type": "object", "properties": {}})
        assert "noop" in [t.name for t in engine.tools]

        await echo_gateway.unregister("broken")
        assert "broken" not in [t.name for t in engine.tools]

    @pytest.mark.asyncio
    async def test_catalog_sent_with_completion(self, settings, echo_gateway, catalog):
        completion = ScriptedCompletion([make_response("hi")])
        completion.complete = AsyncMock(return_value=make_response("hi"))
        engine = ConversationEngine(settings, completion)
        engine.on_tool_catalog_changed(catalog)

        await engine.process_query(echo_gateway, "Hi", _ignore)

        args, kwargs = completion.complete.await_args
        assert args[0] == settings.system_prompt
        assert args[2] == catalog
        assert kwargs == {"model": settings.model, "max_tokens": settings.max_tokens}


# ------------------------------------------------------------------
# Token counting
# ------------------------------------------------------------------


class TestTokenCounting:
    @pytest.mark.asyncio
    async def test_api_counter_by_default(self, settings, echo_gateway):
        completion = ScriptedCompletion([make_response("ok")])
        engine = ConversationEngine(settings, completion, turns=HISTORY)

        await engine.process_query(echo_gateway, "Hi again", _ignore)

        assert completion.count_calls == 1

    @pytest.mark.asyncio
    async def test_heuristic_counter_stays_local_and_calibrates(self, settings, echo_gateway):
        completion = ScriptedCompletion([make_response("ok", usage=Usage(input_tokens=400, output_tokens=3))])
        heuristic = settings.model_copy(update={"token_estimation": "heuristic"})
        engine = ConversationEngine(heuristic, completion, turns=HISTORY)

        await engine.process_query(echo_gateway, "Hi", _ignore)

        assert completion.count_calls == 0
        assert engine.estimator.samples == 1
        assert engine.estimator.ratio != 0.25


# ------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_saves_after_query_and_restores(self, settings, echo_gateway, tmp_path):
        store = JsonFileStore(tmp_path / "conversation.json")
        engine = ConversationEngine(settings, ScriptedCompletion([
            make_response("Echoing", tool_uses=[{"name": "echo", "input": {"message": "x"}}]),
            make_response("Done"),
        ]), store=store)

        await engine.process_query(echo_gateway, "echo x", _ignore)

        restored = ConversationEngine(settings, ScriptedCompletion(), store=store)
        assert await restored.load() == engine.conversation

    @pytest.mark.asyncio
    async def test_saves_after_failed_query(self, settings, echo_gateway, tmp_path):
        path = tmp_path / "conversation.json"
        engine = ConversationEngine(
            settings,
            ScriptedCompletion([CompletionError("boom")]),
            store=JsonFileStore(path),
        )

        with pytest.raises(CompletionError):
            await engine.process_query(echo_gateway, "Hi", _ignore)

        saved = json.loads(path.read_text())
        assert saved == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "boom"},
        ]

    @pytest.mark.asyncio
    async def test_load_repairs_stored_transcript(self, settings, tmp_path):
        path = tmp_path / "conversation.json"
        path.write_text(json.dumps([
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "toolu_x", "content": "orphan"}]},
            {"role": "assistant", "content": "ok"},
        ]))
        engine = ConversationEngine(settings, ScriptedCompletion(), store=JsonFileStore(path))

        turns = await engine.load()

        assert len(turns) == 3
        assert turns[0].content[0].id == "toolu_x"

    @pytest.mark.asyncio
    async def test_save_failure_is_not_fatal(self, settings, echo_gateway):
        store = AsyncMock()
        store.save.side_effect = OSError("read-only filesystem")
        engine = ConversationEngine(settings, ScriptedCompletion([make_response("ok")]), store=store)

        await engine.process_query(echo_gateway, "Hi", _ignore)

        store.save.assert_awaited_once()
        assert engine.conversation[-1].content == [TextBlock(text="ok")]

    @pytest.mark.asyncio
    async def test_load_without_store_keeps_initial_turns(self, settings):
        initial = [Turn(role=Role.USER, content="hi")]
        engine = ConversationEngine(settings, ScriptedCompletion(), turns=initial)
        assert await engine.load() == initial
