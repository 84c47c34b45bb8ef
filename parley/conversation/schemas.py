"""Pydantic models for the conversation transcript.

Blocks are a closed union discriminated by ``type``, mirroring the
Anthropic Messages API wire shapes so turns round-trip through
``turns_to_api`` / ``turns_from_api`` without hand-written mapping.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextBlock(_FrozenModel):
    type: Literal["text"] = "text"
    text: str
    cache_control: dict[str, Any] | None = None
    citations: list[dict[str, Any]] | None = None


class ImageSource(_FrozenModel):
    type: Literal["base64", "url"]
    media_type: str | None = None
    data: str | None = None
    url: str | None = None


class ImageBlock(_FrozenModel):
    type: Literal["image"] = "image"
    source: ImageSource
    cache_control: dict[str, Any] | None = None


class ToolUseBlock(_FrozenModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


ToolResultContent = Annotated[TextBlock | ImageBlock, Field(discriminator="type")]


class ToolResultBlock(_FrozenModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[ToolResultContent] = ""
    is_error: bool | None = None
    cache_control: dict[str, Any] | None = None


Block = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock | ImageBlock,
    Field(discriminator="type"),
]


class Turn(_FrozenModel):
    """One entry in the transcript.

    Frozen: edits go through ``with_content`` and produce a new Turn,
    so a turn shared between two lists can never change under either.
    """

    role: Role
    content: str | list[Block]

    @property
    def blocks(self) -> list[Block]:
        """Content as a block list (empty for plain-text turns)."""
        return [] if isinstance(self.content, str) else list(self.content)

    @property
    def is_tool_channel(self) -> bool:
        """True for user turns that carry only tool_result blocks."""
        blocks = self.blocks
        return (
            self.role == Role.USER
            and len(blocks) > 0
            and all(isinstance(b, ToolResultBlock) for b in blocks)
        )

    def with_content(self, content: str | list[Block]) -> Turn:
        return Turn(role=self.role, content=content)


class ToolCatalogEntry(_FrozenModel):
    """A tool the model may call, as advertised by the tool gateway."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionResponse(BaseModel):
    """Parsed response from the completion service."""

    content: list[Block] = Field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: Usage | None = None


_TURNS_ADAPTER = TypeAdapter(list[Turn])
_BLOCK_ADAPTER = TypeAdapter(Block)


def block_to_api(block: Block) -> dict[str, Any]:
    return block.model_dump(mode="json", exclude_none=True)


def block_from_api(data: dict[str, Any]) -> Block:
    return _BLOCK_ADAPTER.validate_python(data)


def turns_to_api(turns: list[Turn]) -> list[dict[str, Any]]:
    """Serialize turns to Messages API wire form (None fields dropped)."""
    return _TURNS_ADAPTER.dump_python(turns, mode="json", exclude_none=True)


def turns_from_api(messages: list[dict[str, Any]]) -> list[Turn]:
    return _TURNS_ADAPTER.validate_python(messages)


def flatten(turns: list[Turn]) -> list[Turn]:
    """Split multi-block turns into one turn per block, for display.

    Text blocks become plain-string turns; tool_use, tool_result and
    image blocks become single-block turns. Projection only: the result
    must never be written back as conversation state.
    """
    result: list[Turn] = []
    for turn in turns:
        if isinstance(turn.content, str):
            result.append(turn)
            continue
        for block in turn.content:
            if isinstance(block, TextBlock):
                result.append(Turn(role=turn.role, content=block.text))
            else:
                result.append(Turn(role=turn.role, content=[block]))
    return result


def preview(turn: Turn, width: int = 50) -> list[str]:
    """Short one-line descriptions of a turn's content, for debug logs."""
    if isinstance(turn.content, str):
        return [f"{turn.role}: {turn.content[:width]}"]
    lines = []
    for block in turn.content:
        if isinstance(block, TextBlock):
            lines.append(f"{turn.role} text: {block.text[:width]}")
        elif isinstance(block, ToolUseBlock):
            lines.append(f"{turn.role} tool_use: {block.name} ({block.id}) input={str(block.input)[:width]}")
        elif isinstance(block, ToolResultBlock):
            lines.append(f"{turn.role} tool_result: {block.tool_use_id} content={str(block.content)[:width]}")
        else:
            lines.append(f"{turn.role} image: {block.source.type}")
    return lines
