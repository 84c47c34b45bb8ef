"""Context window management: token estimation and oldest-first eviction.

The manager never summarizes. When the transcript is over budget it drops
whole user/assistant rounds from the front and re-runs ``repair``, since
cutting a round can orphan a tool_result at the new head.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Protocol

from parley.conversation.repair import log_conversation, repair
from parley.conversation.schemas import ToolCatalogEntry, Turn, turns_to_api

logger = logging.getLogger(__name__)

# Turns removed per eviction step: one user/assistant round.
EVICTION_STEP = 2


class TokenCounter(Protocol):
    """Async token-count capability, usually the completion service's."""

    async def __call__(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
    ) -> int: ...


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with chars/4 heuristic. Improves via calibrate() after each
    API response using actual input_tokens from usage data.

    Limitations (acknowledged):
    - Resets on restart (ephemeral)
    - actual_tokens from API includes system prompt and tool overhead
    - Alpha=0.1 means ~10 samples to ~65% convergence
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char (chars/4 default)
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    @staticmethod
    def request_chars(
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
    ) -> int:
        """Character size of a request as it would go over the wire."""
        size = len(system_prompt)
        size += len(json.dumps(turns_to_api(turns), ensure_ascii=False))
        if tools:
            size += len(json.dumps([t.to_api() for t in tools], ensure_ascii=False))
        return size

    async def count_tokens(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
    ) -> int:
        """TokenCounter implementation that never leaves the process."""
        if not turns:
            return 0
        return max(1, int(self.request_chars(system_prompt, turns, tools) * self._ratio))

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


# ------------------------------------------------------------------
# Context Window Manager
# ------------------------------------------------------------------


def _usable(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


class ContextWindowManager:
    """Keeps a transcript under ``max_context_tokens * safety_margin_ratio``."""

    def __init__(
        self,
        counter: TokenCounter,
        max_context_tokens: int,
        safety_margin_ratio: float = 0.99,
        min_retained_turns: int = 2,
    ) -> None:
        self._counter = counter
        self.max_context_tokens = max_context_tokens
        self.safety_margin_ratio = safety_margin_ratio
        self.min_retained_turns = min_retained_turns

    @property
    def budget(self) -> int:
        return int(self.max_context_tokens * self.safety_margin_ratio)

    async def _count(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
    ) -> int | float | None:
        """Count tokens; None means the cost is unknown."""
        try:
            value = await self._counter(system_prompt, turns, tools)
        except Exception as e:
            logger.warning("Error counting tokens: %s", e)
            return None
        if not _usable(value):
            logger.warning("Token counter returned unusable value: %r", value)
            return None
        return value

    async def ensure_budget(
        self,
        turns: list[Turn],
        system_prompt: str,
        tools: list[ToolCatalogEntry],
    ) -> list[Turn]:
        """Evict the oldest rounds until the request fits the budget.

        Callers pass a transcript that has already been through ``repair``,
        as ``ConversationEngine`` does before every request. Given one, the
        result never has fewer than ``min_retained_turns`` turns nor more
        than the input. An unrepaired input comes back repaired, which can
        add synthetic turns. A failing counter stops eviction rather than
        guessing.
        """
        if len(turns) <= self.min_retained_turns:
            return turns

        budget = self.budget
        current = list(turns)
        tokens = await self._count(system_prompt, current, tools)
        logger.debug("[Context truncation] Current token count: %s, max allowed: %d", tokens, budget)

        if tokens is not None and tokens > budget:
            initial_count = len(current)
            logger.info(
                "[Context truncation] Token count (%s) exceeds limit (%d). Truncating conversation...",
                tokens,
                budget,
            )
            while tokens is not None and tokens > budget and len(current) > self.min_retained_turns:
                step = min(EVICTION_STEP, len(current) - self.min_retained_turns)
                current = repair(current[step:])
                # repair may add synthetic turns; never end up longer than we started
                if len(current) >= initial_count:
                    logger.warning(
                        "[Context truncation] Repair re-grew the conversation to %d turns, stopping",
                        len(current),
                    )
                    break
                log_conversation(current, "context truncation")
                tokens = await self._count(system_prompt, current, tools)
                logger.debug("[Context truncation] New token count after removal: %s", tokens)
            logger.info(
                "[Context truncation] Finished. Removed %d turns. Current token count: %s. Turns remaining: %d.",
                initial_count - len(current),
                tokens,
                len(current),
            )

        # A no-op for repaired input
        return repair(current)
