from __future__ import annotations

import asyncio

from telegram.error import BadRequest, Forbidden, RetryAfter

from src.config import TelegramConfig
from src.notifier.commands import CommandHandler
from src.notifier.formatters import format_status_update, format_subscription_list
from src.notifier.telegram_bot import TelegramNotifier
from src.providers.chain import ProviderChain
from src.tracking.engine import ReconciliationEngine
from src.tracking.models import CanonicalStatus, NotificationPayload
from src.tracking.registry import SubscriptionRegistry
from src.utils.health import HealthMonitor
from tests.fakes import CODE, MemoryStore, RecordingNotifier, ScriptedProvider, snap


class DummyMessage:
    def __init__(self, message_id: int) -> None:
        self.message_id = message_id


class DummyBot:
    """Fails with the queued errors, then succeeds."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.sent: list[dict] = []

    async def send_message(self, **kwargs):
        self.sent.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        return DummyMessage(len(self.sent))


def _payload(**overrides) -> NotificationPayload:
    values = dict(
        code=CODE,
        snapshot=snap(CanonicalStatus.OUT_FOR_DELIVERY, description="Saiu para entrega"),
        previous_status=CanonicalStatus.IN_TRANSIT,
    )
    values.update(overrides)
    return NotificationPayload(**values)


def _notifier(bot: DummyBot) -> TelegramNotifier:
    return TelegramNotifier(TelegramConfig(bot_token="123:abc"), bot=bot)


# ── Notifier ─────────────────────────────────────────────


def test_notify_sends_direct_message_to_user() -> None:
    bot = DummyBot()
    assert asyncio.run(_notifier(bot).notify("4242", _payload())) is True
    assert bot.sent[0]["chat_id"] == "4242"
    assert bot.sent[0]["parse_mode"] == "HTML"
    assert CODE in bot.sent[0]["text"]


def test_parse_error_falls_back_to_plain_text() -> None:
    bot = DummyBot(BadRequest("Can't parse entities: unsupported start tag"))
    assert asyncio.run(_notifier(bot).notify("4242", _payload())) is True
    assert "parse_mode" not in bot.sent[1]
    assert "<b>" not in bot.sent[1]["text"]


def test_blocked_user_is_a_failed_delivery() -> None:
    bot = DummyBot(Forbidden("bot was blocked by the user"))
    assert asyncio.run(_notifier(bot).notify("4242", _payload())) is False
    assert len(bot.sent) == 1


def test_rate_limit_is_retried() -> None:
    bot = DummyBot(RetryAfter(0))
    assert asyncio.run(_notifier(bot).notify("4242", _payload())) is True
    assert len(bot.sent) == 2


def test_repeated_failures_count_against_circuit_breaker() -> None:
    bot = DummyBot(RetryAfter(0), RetryAfter(0), RetryAfter(0))
    notifier = _notifier(bot)
    assert asyncio.run(notifier.notify("4242", _payload())) is False
    assert notifier.circuit_breaker.failure_count == 1


def test_long_message_is_split() -> None:
    text = "\n".join(f"line {i} " + "x" * 80 for i in range(100))
    chunks = TelegramNotifier._split_message(text, 4000)
    assert len(chunks) > 1
    assert all(len(chunk) <= 4000 for chunk in chunks)


# ── Formatters ───────────────────────────────────────────


def test_status_update_mentions_both_statuses() -> None:
    text = format_status_update(_payload())
    assert "In transit" in text
    assert "Out for delivery" in text


def test_seed_notification_has_no_previous_status() -> None:
    text = format_status_update(_payload(previous_status=None, is_transition=False))
    assert "Tracking started" in text
    assert "→" not in text


def test_delivered_update_says_tracking_finished() -> None:
    text = format_status_update(_payload(snapshot=snap(CanonicalStatus.DELIVERED)))
    assert "tracking finished" in text


def test_html_is_escaped() -> None:
    text = format_status_update(_payload(snapshot=snap(CanonicalStatus.UNKNOWN, description="<script>")))
    assert "<script>" not in text
    assert "&lt;script&gt;" in text


def test_empty_list_message() -> None:
    assert "not tracking" in format_subscription_list([])


# ── Commands ─────────────────────────────────────────────


class DummyChat:
    def __init__(self, chat_id: int) -> None:
        self.id = chat_id


class DummyReplyTarget:
    def __init__(self) -> None:
        self.replies: list[str] = []

    async def reply_text(self, text: str, **kwargs) -> None:
        self.replies.append(text)


class DummyUpdate:
    def __init__(self, chat_id: int = 4242) -> None:
        self.effective_chat = DummyChat(chat_id)
        self.effective_message = DummyReplyTarget()


class DummyContext:
    def __init__(self, *args: str) -> None:
        self.args = list(args)


def _commands(provider: ScriptedProvider):
    chain = ProviderChain([provider])
    registry = SubscriptionRegistry(MemoryStore(), fetcher=chain)
    health = HealthMonitor()
    engine = ReconciliationEngine(registry, chain, RecordingNotifier(), health=health)
    return CommandHandler(registry, engine, health), registry


def test_track_command_subscribes_chat() -> None:
    provider = ScriptedProvider()
    provider.queue(CODE, snap(CanonicalStatus.POSTED))
    handler, registry = _commands(provider)
    update = DummyUpdate()

    async def run():
        await handler._cmd_track(update, DummyContext(CODE))
        await handler._cmd_track(update, DummyContext(CODE))
        return await registry.get_subscription(CODE)

    record = asyncio.run(run())
    assert record.subscribers == {"4242"}
    assert "Now tracking" in update.effective_message.replies[0]
    assert "Posted" in update.effective_message.replies[0]
    assert "already tracking" in update.effective_message.replies[1]


def test_track_command_without_code_shows_usage() -> None:
    handler, _ = _commands(ScriptedProvider())
    update = DummyUpdate()
    asyncio.run(handler._cmd_track(update, DummyContext()))
    assert update.effective_message.replies[0].startswith("Usage")


def test_track_command_rejects_invalid_code() -> None:
    handler, registry = _commands(ScriptedProvider())
    update = DummyUpdate()
    asyncio.run(handler._cmd_track(update, DummyContext("short")))
    assert update.effective_message.replies[0].startswith("❌")
    assert asyncio.run(registry.all_records()) == {}


def test_untrack_and_list_commands() -> None:
    handler, registry = _commands(ScriptedProvider())
    update = DummyUpdate()

    async def run():
        await handler._cmd_track(update, DummyContext(CODE))
        await handler._cmd_list(update, DummyContext())
        await handler._cmd_untrack(update, DummyContext(CODE))
        await handler._cmd_untrack(update, DummyContext(CODE))
        await handler._cmd_list(update, DummyContext())

    asyncio.run(run())
    replies = update.effective_message.replies
    assert CODE in replies[1]
    assert "Stopped tracking" in replies[2]
    assert "were not tracking" in replies[3]
    assert "not tracking any parcels" in replies[4]


def test_status_command_uses_live_lookup_for_untracked_code() -> None:
    provider = ScriptedProvider()
    provider.queue(CODE, snap(CanonicalStatus.IN_TRANSIT, provider="tracking_api"))
    handler, registry = _commands(provider)
    update = DummyUpdate()

    asyncio.run(handler._cmd_status(update, DummyContext(CODE)))

    assert "In transit" in update.effective_message.replies[0]
    assert asyncio.run(registry.all_records()) == {}


def test_status_command_reports_fetch_failure() -> None:
    handler, _ = _commands(ScriptedProvider())
    update = DummyUpdate()
    asyncio.run(handler._cmd_status(update, DummyContext(CODE)))
    assert "Could not fetch" in update.effective_message.replies[0]


def test_start_command_lists_commands() -> None:
    handler, _ = _commands(ScriptedProvider())
    update = DummyUpdate()
    asyncio.run(handler._cmd_start(update, DummyContext()))
    assert "/track" in update.effective_message.replies[0]
    assert "Poll cycles" in update.effective_message.replies[0]
