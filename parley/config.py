"""Settings via pydantic-settings with PARLEY_ env prefix.

Credentials use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the Anthropic SDKs use, so an
existing .env works without renaming anything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to external tools. "
    "Use the tools when they help answer the user's question, and explain "
    "what you found in plain language."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env", extra="ignore")

    # Auth: unprefixed aliases match the Anthropic SDK env vars
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 2048  # max output tokens per completion
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Tool loop
    max_tool_calls_per_query: int = Field(10, ge=0)
    tool_call_timeout_sec: float = Field(300, gt=0)

    # Context window
    max_context_tokens: int = Field(200_000, gt=0)
    safety_margin_ratio: float = Field(0.99, gt=0.0, le=1.0)
    min_retained_turns: int = Field(2, ge=0)
    token_estimation: Literal["api", "heuristic"] = "api"

    # Retry policy for 429/529
    max_retries: int = Field(3, ge=1)
    retry_base_delay_ms: int = Field(2000, ge=0)

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Persistence ("" disables the conversation store)
    conversation_store_path: str = ""

    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.max_tokens >= self.max_context_tokens:
            raise ValueError(
                f"max_tokens ({self.max_tokens}) must be < "
                f"max_context_tokens ({self.max_context_tokens})."
            )
        return self
