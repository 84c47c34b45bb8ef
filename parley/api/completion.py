"""Completion service: direct httpx calls to the Anthropic Messages API.

The engine depends only on the ``CompletionService`` protocol; tests
substitute fakes. ``AnthropicClient`` does a single HTTP attempt per call
and classifies failures into the error types in ``parley.api.errors``.
Retrying is the caller's job (``parley.api.retry``).
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from parley.api.errors import (
    CompletionError,
    OverloadedError,
    RateLimitedError,
    StructuralRejectionError,
)
from parley.config import Settings
from parley.conversation.schemas import (
    Block,
    CompletionResponse,
    ToolCatalogEntry,
    Turn,
    Usage,
    block_from_api,
    turns_to_api,
)

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_HANDLED_BLOCK_TYPES = frozenset({"text", "tool_use"})


class CompletionService(Protocol):
    async def complete(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
        *,
        model: str,
        max_tokens: int,
    ) -> CompletionResponse: ...

    async def count_tokens(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
        *,
        model: str,
    ) -> int: ...


def parse_content(raw_blocks: list[dict[str, Any]]) -> list[Block]:
    """Parse response content blocks, skipping types the engine does not handle."""
    blocks: list[Block] = []
    for raw in raw_blocks:
        if raw.get("type") not in _HANDLED_BLOCK_TYPES:
            logger.debug("Skipping unhandled response block type: %s", raw.get("type"))
            continue
        blocks.append(block_from_api(raw))
    return blocks


def classify_error(status_code: int, error_type: str, error_msg: str) -> CompletionError:
    """Map an HTTP error response onto the completion error taxonomy."""
    message = f"Anthropic API error ({status_code}): {error_type} - {error_msg}"
    if status_code == 429:
        return RateLimitedError(message, status_code=status_code, error_type=error_type)
    if status_code == 529 or error_type == "overloaded_error":
        return OverloadedError(message, status_code=status_code, error_type=error_type)
    if status_code == 400 and StructuralRejectionError.matches(error_msg):
        return StructuralRejectionError.from_message(error_msg)
    return CompletionError(message, status_code=status_code, error_type=error_type)


class AnthropicClient:
    """CompletionService backed by the Anthropic Messages API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # Explicit auth token always uses Bearer; plain API keys use x-api-key
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if auth_token else "API key")

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
        model: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "system": system_prompt,
            "messages": turns_to_api(turns),
        }
        if tools:
            payload["tools"] = [t.to_api() for t in tools]
        return payload

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        try:
            response = await self._http.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise CompletionError(f"API request timed out: {e}", error_type="timeout") from e
        except httpx.HTTPError as e:
            raise CompletionError(f"HTTP error: {e}", error_type="http_error") from e

        if response.status_code == 200:
            return response.json()

        try:
            error_data = response.json()
            error_type = error_data.get("error", {}).get("type", "unknown")
            error_msg = error_data.get("error", {}).get("message", "unknown error")
        except ValueError:
            error_type = "http_error"
            error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

        raise classify_error(response.status_code, error_type, error_msg)

    async def complete(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
        *,
        model: str,
        max_tokens: int,
    ) -> CompletionResponse:
        payload = self._build_payload(system_prompt, turns, tools, model)
        payload["max_tokens"] = max_tokens
        data = await self._post("/v1/messages", payload)
        usage = data.get("usage")
        return CompletionResponse(
            content=parse_content(data.get("content", [])),
            stop_reason=data.get("stop_reason") or "end_turn",
            usage=Usage.model_validate(usage) if usage else None,
        )

    async def count_tokens(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[ToolCatalogEntry],
        *,
        model: str,
    ) -> int:
        if not turns:
            return 0
        data = await self._post(
            "/v1/messages/count_tokens",
            self._build_payload(system_prompt, turns, tools, model),
        )
        return int(data.get("input_tokens", 0))
