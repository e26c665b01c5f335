from __future__ import annotations

from pathlib import Path
from typing import Literal, Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import so all BaseSettings subclasses will see the env vars
load_dotenv()


class OpenAISettings(BaseSettings):
    """OpenAI-compatible API settings. Env vars prefixed with OPENAI_."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = ""  # empty = checked at client construction time
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    provider: str = "openai"  # label recorded in session metadata
    max_retries: int = Field(3, ge=0, le=10)


class AgentSettings(BaseSettings):
    """Agent loop settings. Env vars prefixed with AGENT_.

    context_threshold is measured in *estimated* tokens: the estimator is a
    rough heuristic, so the threshold is a tuning knob rather than a hard
    model limit.
    """

    model_config = SettingsConfigDict(env_prefix="AGENT_")

    max_iterations: int = 10
    context_threshold: int = 100_000
    keep_tool_uses: int = 5
    streaming: bool = False
    default_tool_call_limit: int = 3
    query_similarity_threshold: float = 0.7
    trace_dir: Path = Path(".fieldnote/scratchpad")
    estimator: Literal["chars", "tiktoken"] = "chars"

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.context_threshold <= 0:
            raise ValueError(
                f"context_threshold must be > 0, got {self.context_threshold}"
            )
        if self.keep_tool_uses < 1:
            raise ValueError(f"keep_tool_uses must be >= 1, got {self.keep_tool_uses}")
        if self.default_tool_call_limit < 1:
            raise ValueError(
                f"default_tool_call_limit must be >= 1, got {self.default_tool_call_limit}"
            )
        if not (0.0 < self.query_similarity_threshold <= 1.0):
            raise ValueError(
                "query_similarity_threshold must be in (0, 1], "
                f"got {self.query_similarity_threshold}"
            )
        return self


class SessionSettings(BaseSettings):
    """Session persistence settings. Env vars prefixed with SESSION_."""

    model_config = SettingsConfigDict(env_prefix="SESSION_")

    base_dir: Path = Path(".")
    enabled: bool = True


class TelegramSettings(BaseSettings):
    """Telegram channel settings. Env vars prefixed with TELEGRAM_."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_")

    bot_token: str = ""  # empty = channel disabled
    allowed_user_ids: str = ""  # comma-separated Telegram user ID whitelist
    message_max_length: int = 4096
    auto_approve_tools: bool = False
    run_timeout_seconds: int = Field(120, ge=1)

    @field_validator("message_max_length")
    @classmethod
    def _validate_max_length(cls, v: int) -> int:
        if not (1 <= v <= 4096):
            msg = f"TELEGRAM_MESSAGE_MAX_LENGTH must be in [1, 4096] (got {v})"
            raise ValueError(msg)
        return v


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    workspace_dir: Path = Path(".")


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
