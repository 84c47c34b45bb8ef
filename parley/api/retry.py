"""Bounded retry for completion calls.

Rate limits (429) and overloads (529) back off linearly: the wait before
attempt n+1 is ``n * base_delay``. Structural rejections (a tool_use
the service says has no tool_result) are healed by dropping the offending
turn along with its paired blocks, repairing, and resending immediately.
That does not use up an attempt, because the next request is a different
request. Everything else propagates on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from parley.api.errors import (
    OverloadedError,
    RateLimitedError,
    RateLimitExceededError,
    ServerOverloadedError,
    StructuralRejectionError,
)
from parley.conversation.repair import drop_turn, repair
from parley.conversation.schemas import CompletionResponse, Turn

logger = logging.getLogger(__name__)

Sender = Callable[[list[Turn]], Awaitable[CompletionResponse]]


def rate_limit_message(max_retries: int) -> str:
    return (
        f"Rate limit exceeded after {max_retries} attempts. Please try again in a few minutes "
        "or consider switching to a different model"
    )


OVERLOAD_MESSAGE = (
    "Server is currently experiencing high load. Please try again in a few moments "
    "or consider switching to a different model."
)


class RetryPolicy:
    def __init__(self, max_retries: int = 3, base_delay_ms: int = 2000) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms

    async def call(self, send: Sender, turns: list[Turn]) -> tuple[CompletionResponse, list[Turn]]:
        """Send ``turns`` until success or a non-retryable failure.

        Returns the response and the transcript that produced it, which is
        shorter than ``turns`` if a rejected turn had to be dropped.
        """
        attempt = 1
        while True:
            try:
                return await send(turns), turns
            except (RateLimitedError, OverloadedError) as e:
                label = "Rate limit" if isinstance(e, RateLimitedError) else "Server overload"
                if attempt >= self.max_retries:
                    logger.warning("%s hit, giving up after %d attempts", label, attempt)
                    if isinstance(e, RateLimitedError):
                        raise RateLimitExceededError(
                            rate_limit_message(self.max_retries), status_code=e.status_code, error_type=e.error_type
                        ) from e
                    raise ServerOverloadedError(
                        OVERLOAD_MESSAGE, status_code=e.status_code, error_type=e.error_type
                    ) from e
                delay = attempt * self.base_delay_ms / 1000
                logger.warning(
                    "%s hit, attempt %d/%d. Retrying in %.1f seconds...",
                    label,
                    attempt,
                    self.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
            except StructuralRejectionError as e:
                healed = drop_turn(turns, tool_use_id=e.tool_use_id, message_index=e.message_index)
                if healed is None:
                    raise
                logger.warning(
                    "Service rejected tool_use %s without tool_result, dropped turn and retrying",
                    e.tool_use_id or f"at messages.{e.message_index}",
                )
                turns = repair(healed)
