"""Transcript redaction and tool pairing repair.

Pure functions over ``list[Turn]``; inputs are never mutated.

``repair`` restores two invariants before a transcript is sent to the
completion service:

* base64 payloads are replaced with a fixed placeholder, so one pasted
  image does not eat the context window for the rest of the session;
* every tool_use has a tool_result and every tool_result has a tool_use.
  Missing halves are synthesized next to the orphan. The one exception is
  a tool_use in the last turn, which is a round still in progress.

``repair(repair(x)) == repair(x)`` for every transcript.
"""

from __future__ import annotations

import base64
import binascii
import logging

from parley.conversation.schemas import (
    Block,
    ImageBlock,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    preview,
)

logger = logging.getLogger(__name__)

BASE64_PLACEHOLDER = "[Base64 encoded content - image was pruned to save context tokens]"
UNKNOWN_TOOL_NAME = "unknown_tool"
MISSING_RESULT_MESSAGE = (
    "[Tool use without result - most likely tool failed or response was too large to be sent to LLM]"
)

# Shorter strings are left alone: plenty of ordinary words ("test", "abcd")
# happen to be valid base64.
MIN_BASE64_LENGTH = 16


# ------------------------------------------------------------------
# Redaction
# ------------------------------------------------------------------


def is_base64(value: str) -> bool:
    """Return True if value decodes as base64 and re-encodes to itself."""
    if not value or len(value) < MIN_BASE64_LENGTH:
        return False
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return base64.b64encode(decoded).decode("ascii") == value


def _redact_block(block: Block) -> Block:
    if isinstance(block, TextBlock):
        if is_base64(block.text):
            return block.model_copy(update={"text": BASE64_PLACEHOLDER})
        return block

    if isinstance(block, ImageBlock):
        if block.source.type == "base64":
            return TextBlock(text=BASE64_PLACEHOLDER, cache_control=block.cache_control)
        return block

    if isinstance(block, ToolResultBlock):
        if isinstance(block.content, str):
            if is_base64(block.content):
                return block.model_copy(update={"content": BASE64_PLACEHOLDER})
            return block
        items = [_redact_block(item) for item in block.content]
        if any(new is not old for new, old in zip(items, block.content)):
            return block.model_copy(update={"content": items})
        return block

    return block


def redact_turn(turn: Turn) -> Turn:
    """Replace base64 payloads in a turn with the placeholder.

    Returns the same object when nothing needed redacting.
    """
    if isinstance(turn.content, str):
        if is_base64(turn.content):
            return turn.with_content(BASE64_PLACEHOLDER)
        return turn

    blocks = [_redact_block(b) for b in turn.content]
    if any(new is not old for new, old in zip(blocks, turn.content)):
        return turn.with_content(blocks)
    return turn


# ------------------------------------------------------------------
# Pairing repair
# ------------------------------------------------------------------


def _synthetic_tool_use_turn(ids: list[str]) -> Turn:
    return Turn(
        role=Role.ASSISTANT,
        content=[ToolUseBlock(id=tool_id, name=UNKNOWN_TOOL_NAME, input={}) for tool_id in ids],
    )


def _synthetic_tool_result_turn(ids: list[str]) -> Turn:
    return Turn(
        role=Role.USER,
        content=[ToolResultBlock(tool_use_id=tool_id, content=MISSING_RESULT_MESSAGE) for tool_id in ids],
    )


def repair(turns: list[Turn]) -> list[Turn]:
    """Redact base64 payloads and fix orphaned tool_use / tool_result blocks.

    Orphaned results get one synthetic assistant turn inserted directly
    before their turn (prepended when that is the first turn). Unresolved
    tool_uses get one synthetic tool-channel turn inserted directly after
    theirs, unless their turn is the last one.
    """
    redacted: list[Turn] = []
    use_ids: dict[str, int] = {}
    result_ids: dict[str, int] = {}

    for index, turn in enumerate(turns):
        turn = redact_turn(turn)
        redacted.append(turn)
        for block in turn.blocks:
            if isinstance(block, ToolUseBlock):
                use_ids[block.id] = index
            elif isinstance(block, ToolResultBlock):
                result_ids[block.tool_use_id] = index

    results_without_use = [i for i in result_ids if i not in use_ids]
    uses_without_result = [i for i in use_ids if i not in result_ids]

    if not results_without_use and not uses_without_result:
        return redacted

    # Group orphan ids by the turn they live in; dict order keeps block order.
    orphan_results: dict[int, list[str]] = {}
    for tool_id in results_without_use:
        orphan_results.setdefault(result_ids[tool_id], []).append(tool_id)

    orphan_uses: dict[int, list[str]] = {}
    for tool_id in uses_without_result:
        orphan_uses.setdefault(use_ids[tool_id], []).append(tool_id)

    last_index = len(redacted) - 1
    fixed: list[Turn] = []
    for index, turn in enumerate(redacted):
        if index in orphan_results:
            ids = orphan_results[index]
            logger.debug("Adding synthetic tool_use turn for orphaned tool_result ids: %s", ids)
            fixed.append(_synthetic_tool_use_turn(ids))

        fixed.append(turn)

        if index in orphan_uses:
            ids = orphan_uses[index]
            if index == last_index:
                logger.debug("Leaving tool_use ids %s unresolved in last turn", ids)
                continue
            logger.debug("Adding synthetic tool_result turn for tool_use ids: %s", ids)
            fixed.append(_synthetic_tool_result_turn(ids))

    return fixed


def drop_turn(
    turns: list[Turn],
    tool_use_id: str | None = None,
    message_index: int | None = None,
) -> list[Turn] | None:
    """Remove the turn the completion service rejected.

    Looks up the turn holding ``tool_use_id`` first, then falls back to
    ``message_index``. Returns None when neither identifies a turn.

    The other half of every pair the removed turn took part in goes with
    it (tool_results answering its tool_use blocks, or tool_use blocks
    its tool_results answered), and turns left empty are dropped. The
    result is always shorter than ``turns`` and creates no orphans.
    """
    index = None
    if tool_use_id:
        for i, turn in enumerate(turns):
            if any(isinstance(b, ToolUseBlock) and b.id == tool_use_id for b in turn.blocks):
                index = i
                break
    if index is None and message_index is not None and 0 <= message_index < len(turns):
        index = message_index
    if index is None:
        return None

    removed = turns[index]
    use_ids = {b.id for b in removed.blocks if isinstance(b, ToolUseBlock)}
    result_ids = {b.tool_use_id for b in removed.blocks if isinstance(b, ToolResultBlock)}

    kept: list[Turn] = []
    for turn in turns[:index] + turns[index + 1:]:
        if isinstance(turn.content, str):
            kept.append(turn)
            continue
        blocks = [
            b for b in turn.content
            if not (isinstance(b, ToolResultBlock) and b.tool_use_id in use_ids)
            and not (isinstance(b, ToolUseBlock) and b.id in result_ids)
        ]
        if len(blocks) == len(turn.content):
            kept.append(turn)
        elif blocks:
            kept.append(turn.with_content(blocks))
    return kept


def log_conversation(turns: list[Turn], label: str = "conversation") -> None:
    """Dump a short preview of every turn at debug level."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("[%s] %d turns", label, len(turns))
    for turn in turns:
        for line in preview(turn):
            logger.debug("[%s]   %s", label, line)
