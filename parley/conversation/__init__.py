"""Conversation model: typed transcript plus redaction and repair.

Public API: Turn/Block schemas, the flattened display view, and the
pure repair functions.
"""

from parley.conversation.repair import (
    BASE64_PLACEHOLDER,
    MISSING_RESULT_MESSAGE,
    UNKNOWN_TOOL_NAME,
    drop_turn,
    is_base64,
    log_conversation,
    redact_turn,
    repair,
)
from parley.conversation.schemas import (
    Block,
    CompletionResponse,
    ImageBlock,
    ImageSource,
    Role,
    TextBlock,
    ToolCatalogEntry,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    Usage,
    block_from_api,
    block_to_api,
    flatten,
    turns_from_api,
    turns_to_api,
)

__all__ = [
    "BASE64_PLACEHOLDER",
    "MISSING_RESULT_MESSAGE",
    "UNKNOWN_TOOL_NAME",
    "Block",
    "CompletionResponse",
    "ImageBlock",
    "ImageSource",
    "Role",
    "TextBlock",
    "ToolCatalogEntry",
    "ToolResultBlock",
    "ToolUseBlock",
    "Turn",
    "Usage",
    "block_from_api",
    "block_to_api",
    "drop_turn",
    "flatten",
    "is_base64",
    "log_conversation",
    "redact_turn",
    "repair",
    "turns_from_api",
    "turns_to_api",
]
