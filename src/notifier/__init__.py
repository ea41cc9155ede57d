"""Parcel Tracker — Telegram notifier and commands."""

from src.notifier.commands import CommandHandler
from src.notifier.telegram_bot import TelegramNotifier

__all__ = ["CommandHandler", "TelegramNotifier"]
