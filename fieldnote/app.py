"""Wiring shared by the CLI, JSON mode and the Telegram channel."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from fieldnote.agent.model_client import OpenAICompatModelClient
from fieldnote.infra.errors import ConfigError
from fieldnote.session.manager import SessionManager
from fieldnote.tools.builtins import register_builtins
from fieldnote.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from fieldnote.config.settings import Settings

logger = structlog.get_logger()


def build_model_client(settings: Settings) -> OpenAICompatModelClient:
    """Fail fast when no API key is configured."""
    if not settings.openai.api_key:
        raise ConfigError(
            "OPENAI_API_KEY is not configured. Set it in the environment or .env.",
            code="MISSING_API_KEY",
        )
    return OpenAICompatModelClient(
        api_key=settings.openai.api_key,
        base_url=settings.openai.base_url,
        max_retries=settings.openai.max_retries,
    )


def build_registry(settings: Settings) -> ToolRegistry:
    registry = ToolRegistry()
    register_builtins(registry, settings.workspace_dir)
    logger.info("tools_ready", tool_count=len(registry))
    return registry


def build_session_manager(settings: Settings) -> SessionManager | None:
    if not settings.session.enabled:
        return None
    return SessionManager(settings.session.base_dir)
