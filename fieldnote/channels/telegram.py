"""Telegram DM adapter: bridges Telegram messages to per-chat AgentRunners.

Single-worker long-polling design. Group messages are silently ignored.
Only whitelisted user IDs (TELEGRAM_ALLOWED_USER_IDS) may interact; empty
whitelist = deny all. Each chat has one runner and at most one active run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog
from aiogram import Bot, Dispatcher
from aiogram.enums import ChatAction, ChatType
from aiogram.types import Message

from fieldnote.agent.approval import auto_approve, auto_deny
from fieldnote.app import build_model_client, build_registry
from fieldnote.channels.telegram_render import (
    format_for_telegram,
    friendly_error_message,
    split_message,
)
from fieldnote.infra.errors import ChannelError, ConfigError, FieldnoteError
from fieldnote.runner import AgentRunner

if TYPE_CHECKING:
    from fieldnote.config.settings import Settings

logger = structlog.get_logger()

# Typing indicator interval (Telegram requires refresh every ~5s)
_TYPING_INTERVAL_S = 4

RunnerFactory = Callable[[int], AgentRunner]


def _parse_allowed_ids(raw: str) -> frozenset[int]:
    """Parse comma-separated Telegram user ID whitelist."""
    if not raw.strip():
        return frozenset()
    return frozenset(int(part) for part in (p.strip() for p in raw.split(",")) if part)


class TelegramAdapter:
    """Bridges Telegram DM messages to AgentRunner, one runner per chat."""

    def __init__(self, settings: Settings, runner_factory: RunnerFactory) -> None:
        self._bot = Bot(token=settings.telegram.bot_token)
        self._dp = Dispatcher()
        self._settings = settings.telegram
        self._runner_factory = runner_factory
        self._runners: dict[int, AgentRunner] = {}
        self._allowed_ids = _parse_allowed_ids(settings.telegram.allowed_user_ids)
        self._bot_username: str = ""

        self._dp.message.register(self._handle_dm)

    async def check_ready(self) -> None:
        """Verify bot token and connectivity via getMe. Raises ChannelError on failure."""
        try:
            me = await self._bot.get_me()
            self._bot_username = me.username or ""
            logger.info("telegram_bot_ready", username=self._bot_username)
        except Exception as exc:
            raise ChannelError(
                f"Telegram bot token verification failed: {exc}",
                code="TELEGRAM_AUTH_FAILED",
            ) from exc

    async def start_polling(self) -> None:
        """Start long-polling. Blocks until stopped or fatal error."""
        logger.info("telegram_polling_started", username=self._bot_username)
        await self._dp.start_polling(self._bot)

    async def stop(self) -> None:
        for runner in self._runners.values():
            runner.cancel()
        await self._dp.stop_polling()
        await self._bot.session.close()
        logger.info("telegram_polling_stopped")

    def _runner_for(self, chat_id: int) -> AgentRunner:
        runner = self._runners.get(chat_id)
        if runner is None:
            runner = self._runner_factory(chat_id)
            self._runners[chat_id] = runner
        return runner

    async def _handle_dm(self, message: Message) -> None:
        """Process incoming Telegram message. Only DM text from allowed users."""
        if message.chat.type != ChatType.PRIVATE:
            return

        user = message.from_user
        if user is None:
            return

        if user.id not in self._allowed_ids:
            logger.warning("telegram_user_denied", user_id=user.id, username=user.username)
            return

        query = (message.text or "").strip()
        if not query:
            return

        chat_id = message.chat.id
        runner = self._runner_for(chat_id)
        if runner.is_running:
            logger.info("telegram_chat_busy", chat_id=chat_id)
            await message.answer(friendly_error_message("RUN_IN_PROGRESS"))
            return

        typing_task = asyncio.create_task(self._typing_loop(chat_id), name="tg_typing")
        try:
            result = await asyncio.wait_for(
                runner.run_query(query), timeout=self._settings.run_timeout_seconds
            )
            if result.answer.strip():
                await self._send_response(message, result.answer)
            else:
                logger.info("telegram_empty_answer", chat_id=chat_id, status=result.status)
        except TimeoutError:
            runner.cancel()
            logger.warning("telegram_run_timeout", chat_id=chat_id)
            await message.answer(friendly_error_message("RUN_TIMEOUT"))
        except FieldnoteError as exc:
            logger.exception("telegram_run_error", chat_id=chat_id, error_code=exc.code)
            await message.answer(friendly_error_message(exc.code))
        except Exception:
            logger.exception("telegram_run_error", chat_id=chat_id)
            await message.answer(friendly_error_message(None))
        finally:
            typing_task.cancel()
            try:
                await typing_task
            except asyncio.CancelledError:
                pass

    async def _send_response(self, message: Message, text: str) -> None:
        """Send with MarkdownV2 when formatting applies; resend plain on rejection."""
        formatted, parse_mode = format_for_telegram(text)
        for part in split_message(formatted, self._settings.message_max_length):
            try:
                await message.answer(part, parse_mode=parse_mode)
            except Exception:
                if not parse_mode:
                    raise
                logger.debug("telegram_markdownv2_send_failed")
                await message.answer(part, parse_mode=None)

    async def _typing_loop(self, chat_id: int) -> None:
        """Send typing indicator every _TYPING_INTERVAL_S until cancelled."""
        while True:
            try:
                await self._bot.send_chat_action(chat_id, ChatAction.TYPING)
            except Exception:
                logger.debug("telegram_typing_failed", chat_id=chat_id)
            await asyncio.sleep(_TYPING_INTERVAL_S)


async def run_telegram(settings: Settings) -> int:
    """Build the channel from settings and poll until interrupted."""
    if not settings.telegram.bot_token:
        raise ConfigError("TELEGRAM_BOT_TOKEN is not configured.", code="MISSING_BOT_TOKEN")

    model_client = build_model_client(settings)
    registry = build_registry(settings)
    policy = auto_approve if settings.telegram.auto_approve_tools else auto_deny

    def runner_factory(chat_id: int) -> AgentRunner:
        return AgentRunner(
            model_client,
            registry,
            settings,
            request_approval=policy,
            session_id=f"telegram:{chat_id}",
        )

    adapter = TelegramAdapter(settings, runner_factory)
    await adapter.check_ready()
    try:
        await adapter.start_polling()
    finally:
        await adapter.stop()
    return 0
