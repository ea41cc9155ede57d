"""Parcel Tracker — Telegram Notifier.

Async Telegram delivery using python-telegram-bot v22+. Implements the
Notifier port: the user id of a subscription is the Telegram chat id,
so every status change becomes a direct message.

Handles retry on rate limits and network errors, message splitting,
HTML fallback to plain text, and a circuit breaker around the API.
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from typing import Optional, Union

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import (
    BadRequest,
    Forbidden,
    NetworkError,
    RetryAfter,
    TimedOut,
)

from src.config import TelegramConfig
from src.notifier.formatters import format_status_update
from src.tracking.models import NotificationPayload
from src.utils.logger import get_logger
from src.utils.resilience import CircuitBreaker

logger = get_logger(__name__)

_SAFE_LEN = 4000  # Telegram limit is 4096
_MAX_RETRIES = 3


def _seconds(value: Union[int, float, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class TelegramNotifier:
    """Sends tracking notifications as Telegram direct messages.

    Attributes:
        config: TelegramConfig with the bot token.
        circuit_breaker: Opens after repeated delivery failures.
    """

    def __init__(self, config: TelegramConfig, bot: Optional[Bot] = None) -> None:
        """Initialize the notifier.

        Args:
            config: TelegramConfig from the app configuration.
            bot: Optional pre-built Bot (shared with the command
                Application, or a fake in tests).
        """
        self.config = config
        self._bot = bot or Bot(token=config.bot_token)
        self.circuit_breaker = CircuitBreaker(
            name="telegram",
            failure_threshold=5,
            cooldown_seconds=300,
        )
        self.sent_count = 0

    async def initialize(self) -> bool:
        """Verify the token with getMe.

        Returns:
            True if connected successfully, False otherwise.
        """
        try:
            me = await self._bot.get_me()
            logger.info("Telegram bot connected: @%s", me.username)
            return True
        except Exception as e:
            logger.error("Telegram bot connection failed: %s", e)
            return False

    # ═══════════════════════════════════════════════════════
    # Notifier port
    # ═══════════════════════════════════════════════════════

    async def notify(self, user_id: str, payload: NotificationPayload) -> bool:
        """Deliver one status update to one user.

        Returns:
            True if Telegram accepted the message.
        """
        if self.circuit_breaker.is_open:
            logger.warning(
                "Telegram circuit open (%.0fs left), not notifying %s about %s",
                self.circuit_breaker.remaining_cooldown, user_id, payload.code,
            )
            return False

        msg_id = await self.send_message(user_id, format_status_update(payload))
        if msg_id is None:
            return False

        self.sent_count += 1
        logger.info("Notified %s about %s (message %s)", user_id, payload.code, msg_id)
        return True

    # ═══════════════════════════════════════════════════════
    # Sending
    # ═══════════════════════════════════════════════════════

    async def send_message(
        self,
        chat_id: Union[int, str],
        text: str,
        parse_mode: str = ParseMode.HTML,
    ) -> Optional[str]:
        """Send a message, splitting it when too long.

        Returns:
            Message ID of the last chunk, or None on failure.
        """
        if not text:
            return None

        chunks = self._split_message(text, _SAFE_LEN)
        last_msg_id: Optional[str] = None

        for i, chunk in enumerate(chunks):
            msg_id = await self._send_single(chat_id, chunk, parse_mode)
            if msg_id is None:
                return None
            last_msg_id = msg_id
            if i < len(chunks) - 1:
                await asyncio.sleep(0.5)

        return last_msg_id

    async def _send_single(
        self,
        chat_id: Union[int, str],
        text: str,
        parse_mode: str,
    ) -> Optional[str]:
        """Send one chunk with retry; updates the circuit breaker."""
        for attempt in range(_MAX_RETRIES):
            try:
                msg = await self._bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode=parse_mode,
                    disable_web_page_preview=True,
                )
                self.circuit_breaker.record_success()
                return str(msg.message_id)

            except BadRequest as e:
                error_msg = str(e)
                if "parse" not in error_msg.lower():
                    # Chat not found and similar: permanent for this user
                    logger.error("Telegram BadRequest for chat %s: %s", chat_id, error_msg)
                    return None

                logger.warning("Parse error, retrying as plain text: %s", error_msg[:200])
                try:
                    msg = await self._bot.send_message(
                        chat_id=chat_id,
                        text=self._strip_formatting(text),
                        disable_web_page_preview=True,
                    )
                    self.circuit_breaker.record_success()
                    return str(msg.message_id)
                except Exception as e2:
                    logger.error("Plain text fallback also failed: %s", e2)
                    return None

            except Forbidden as e:
                logger.warning("Chat %s blocked the bot or is unreachable: %s", chat_id, e)
                return None

            except RetryAfter as e:
                wait = _seconds(e.retry_after)
                logger.warning("Telegram rate limited. Waiting %.0f seconds...", wait)
                await asyncio.sleep(wait)

            except TimedOut:
                logger.warning("Telegram timeout (attempt %d/%d)", attempt + 1, _MAX_RETRIES)
                await asyncio.sleep(2 ** attempt)

            except NetworkError as e:
                logger.warning(
                    "Telegram network error (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
                await asyncio.sleep(2 ** attempt)

        logger.error("Failed to send message to %s after %d attempts", chat_id, _MAX_RETRIES)
        self.circuit_breaker.record_failure(RuntimeError("telegram delivery failed"))
        return None

    @staticmethod
    def _split_message(text: str, max_len: int = _SAFE_LEN) -> list[str]:
        """Split long text at paragraph or line boundaries."""
        if len(text) <= max_len:
            return [text]

        chunks: list[str] = []
        remaining = text
        while len(remaining) > max_len:
            cut_point = remaining.rfind("\n\n", 0, max_len)
            if cut_point <= 0:
                cut_point = remaining.rfind("\n", 0, max_len)
            if cut_point <= 0:
                cut_point = max_len
            chunks.append(remaining[:cut_point].rstrip())
            remaining = remaining[cut_point:].lstrip("\n")

        if remaining.strip():
            chunks.append(remaining.strip())
        return chunks

    @staticmethod
    def _strip_formatting(text: str) -> str:
        """Remove HTML tags and entities for the plain-text fallback."""
        text = re.sub(r'<a href="([^"]+)">([^<]+)</a>', r"\2 (\1)", text)
        text = re.sub(r"<[^>]+>", "", text)
        return text.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")
