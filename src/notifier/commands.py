"""Parcel Tracker — Telegram Command Handlers.

Interactive commands via Telegram bot:
  /start — welcome message and system summary
  /track <code> — subscribe this chat to a tracking code
  /untrack <code> — unsubscribe this chat
  /status <code> — stored state, or a live lookup for untracked codes
  /list — codes this chat is tracking

The chat id is the subscriber id, so notifications go back to the
same chat. Uses python-telegram-bot v22+ Application with polling.
"""

from __future__ import annotations

from typing import Optional

from telegram import Update
from telegram.ext import Application, CommandHandler as TgCmdHandler, ContextTypes

from src.notifier.formatters import (
    _e,
    format_record,
    format_snapshot,
    format_subscription_list,
    format_system_status,
    status_label,
)
from src.tracking.engine import ReconciliationEngine
from src.tracking.errors import FetchError, InvalidCode, SubscriptionNotFound
from src.tracking.registry import SubscriptionRegistry
from src.utils.health import HealthMonitor
from src.utils.logger import get_logger

logger = get_logger(__name__)

_USAGE = {
    "track": "Usage: /track &lt;tracking code&gt;",
    "untrack": "Usage: /untrack &lt;tracking code&gt;",
    "status": "Usage: /status &lt;tracking code&gt;",
}


def _code_arg(context: ContextTypes.DEFAULT_TYPE) -> Optional[str]:
    args = context.args or []
    return args[0].strip() if args else None


class CommandHandler:
    """Telegram bot command handlers.

    Attributes:
        registry: Subscription registry (all mutations go through it).
        engine: Reconciliation engine, used for live lookups.
        health: Health monitor for the /start footer.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        engine: ReconciliationEngine,
        health: HealthMonitor,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.health = health

    def register(self, tg_app: Application) -> None:
        """Register all command handlers with the Telegram Application."""
        tg_app.add_handler(TgCmdHandler("start", self._cmd_start))
        tg_app.add_handler(TgCmdHandler("track", self._cmd_track))
        tg_app.add_handler(TgCmdHandler("untrack", self._cmd_untrack))
        tg_app.add_handler(TgCmdHandler("status", self._cmd_status))
        tg_app.add_handler(TgCmdHandler("list", self._cmd_list))
        logger.info("Registered 5 Telegram commands")

    async def _reply(self, update: Update, text: str) -> None:
        await update.effective_message.reply_text(
            text, parse_mode="HTML", disable_web_page_preview=True,
        )

    async def _cmd_start(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /start — welcome message with available commands."""
        records = await self.registry.all_records()
        active = sum(1 for record in records.values() if record.is_active)
        text = (
            "<b>📦 Parcel Tracker</b>\n"
            "\n"
            "I watch your tracking codes and message you when the status changes.\n"
            "\n"
            "<b>Commands:</b>\n"
            "/track &lt;code&gt; — start tracking\n"
            "/untrack &lt;code&gt; — stop tracking\n"
            "/status &lt;code&gt; — current status\n"
            "/list — your parcels\n"
            "\n"
            + format_system_status(self.health.get_status(), len(records), active)
        )
        await self._reply(update, text)

    async def _cmd_track(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /track <code> — subscribe the chat."""
        code = _code_arg(context)
        if code is None:
            await self._reply(update, _USAGE["track"])
            return

        user_id = str(update.effective_chat.id)
        try:
            result = await self.registry.subscribe(code, user_id)
        except InvalidCode as e:
            await self._reply(update, f"❌ {_e(e)}")
            return

        record = result.record
        if result.already_subscribed:
            text = f"ℹ️ You are already tracking <code>{_e(code)}</code>."
        else:
            text = f"✅ Now tracking <code>{_e(code)}</code>."
        text += f"\nStatus: <b>{status_label(record.last_status)}</b>"
        if record.is_terminal:
            text += "\n🏁 This parcel already reached its final status."
        await self._reply(update, text)

    async def _cmd_untrack(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /untrack <code> — unsubscribe the chat."""
        code = _code_arg(context)
        if code is None:
            await self._reply(update, _USAGE["untrack"])
            return

        result = await self.registry.unsubscribe(code, str(update.effective_chat.id))
        if result.found:
            await self._reply(update, f"🗑 Stopped tracking <code>{_e(code)}</code>.")
        else:
            await self._reply(update, f"You were not tracking <code>{_e(code)}</code>.")

    async def _cmd_status(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /status <code> — stored record, or a live lookup."""
        code = _code_arg(context)
        if code is None:
            await self._reply(update, _USAGE["status"])
            return

        try:
            record = await self.registry.get_subscription(code)
        except SubscriptionNotFound:
            record = None

        if record is not None:
            await self._reply(update, format_record(record))
            return

        try:
            snapshot = await self.engine.lookup(code)
        except InvalidCode as e:
            await self._reply(update, f"❌ {_e(e)}")
            return
        except FetchError as e:
            logger.warning("Live lookup for %s failed: %s", code, e)
            await self._reply(
                update, f"⚠️ Could not fetch <code>{_e(code)}</code> right now. Try again later.",
            )
            return

        await self._reply(update, format_snapshot(snapshot))

    async def _cmd_list(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /list — codes this chat is tracking."""
        summaries = await self.registry.list_for_user(str(update.effective_chat.id))
        await self._reply(update, format_subscription_list(summaries))
