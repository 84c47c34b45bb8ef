"""Exception types raised by the completion client, retry policy and engine."""

from __future__ import annotations

import re

_TOOL_USE_ID_RE = re.compile(r"toolu_[A-Za-z0-9]+")
_MESSAGE_INDEX_RE = re.compile(r"messages\.(\d+)")
_MISSING_RESULT_RE = re.compile(r"tool_use.*without.*tool_result", re.DOTALL)


class CompletionError(RuntimeError):
    """Completion service call failed."""

    def __init__(self, message: str, status_code: int | None = None, error_type: str = "unknown") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class RateLimitedError(CompletionError):
    """HTTP 429 from the completion service (retryable)."""


class OverloadedError(CompletionError):
    """HTTP 529 from the completion service (retryable)."""


class StructuralRejectionError(CompletionError):
    """The service rejected the transcript: a tool_use has no tool_result.

    ``tool_use_id`` and ``message_index`` identify the offending turn when
    the error message names them.
    """

    def __init__(
        self,
        message: str,
        tool_use_id: str | None = None,
        message_index: int | None = None,
        status_code: int | None = 400,
    ) -> None:
        super().__init__(message, status_code=status_code, error_type="invalid_request_error")
        self.tool_use_id = tool_use_id
        self.message_index = message_index

    @classmethod
    def matches(cls, message: str) -> bool:
        return bool(_MISSING_RESULT_RE.search(message))

    @classmethod
    def from_message(cls, message: str) -> StructuralRejectionError:
        tool_match = _TOOL_USE_ID_RE.search(message)
        index_match = _MESSAGE_INDEX_RE.search(message)
        return cls(
            message,
            tool_use_id=tool_match.group(0) if tool_match else None,
            message_index=int(index_match.group(1)) if index_match else None,
        )


class RateLimitExceededError(CompletionError):
    """Rate limit still hit after all retries. Message is user-facing."""


class ServerOverloadedError(CompletionError):
    """Service still overloaded after all retries. Message is user-facing."""


class ToolGatewayError(RuntimeError):
    """Tool could not be executed (unknown tool, handler failure, timeout)."""


class ConversationBusyError(RuntimeError):
    """A query is already being processed for this conversation."""
