"""Parcel Tracker — Main Orchestrator.

Ties all components together: config, subscription store, registry,
provider chain, Telegram notifier and commands, HTTP API, health
monitoring and the reconciliation engine.

Runs on a schedule with APScheduler (owned by the engine):
  - Poll cycle (every N seconds)
  - One startup cycle shortly after boot

Usage:
    python -m src.main
    python scripts/run.py
"""

from __future__ import annotations

import asyncio
import signal
import traceback
from pathlib import Path
from typing import Optional

from aiohttp import web
from telegram.ext import Application

from src.api.server import create_app
from src.config import AppConfig, load_config
from src.notifier.commands import CommandHandler
from src.notifier.telegram_bot import TelegramNotifier
from src.providers.chain import ProviderChain, build_provider_chain
from src.storage import SqliteStore, build_store
from src.tracking.classifier import StatusClassifier
from src.tracking.engine import ReconciliationEngine
from src.tracking.models import NotificationPayload
from src.tracking.registry import SubscriptionRegistry
from src.utils.health import HealthMonitor
from src.utils.logger import get_logger, set_level

logger = get_logger(__name__)


class LogNotifier:
    """Notifier used when Telegram is disabled: writes updates to the log."""

    async def notify(self, user_id: str, payload: NotificationPayload) -> bool:
        logger.info(
            "[notify %s] %s: %s (%s)",
            user_id, payload.code,
            payload.snapshot.canonical_status.value, payload.snapshot.raw_status,
        )
        return True


class ParcelTracker:
    """Main application orchestrator.

    Wires every component explicitly; nothing is global. Runs until a
    stop signal arrives, then shuts down in reverse order.

    Attributes:
        config: Full application configuration.
        health: HealthMonitor for poll metrics.
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self.config = config
        self.health = HealthMonitor()

        self.store = None
        self.registry: Optional[SubscriptionRegistry] = None
        self.chain: Optional[ProviderChain] = None
        self.engine: Optional[ReconciliationEngine] = None
        self._telegram: Optional[TelegramNotifier] = None
        self._tg_app: Optional[Application] = None
        self._http_runner: Optional[web.AppRunner] = None
        self._stop_event = asyncio.Event()

    def request_stop(self) -> None:
        logger.info("Stop requested")
        self._stop_event.set()

    async def start(self) -> None:
        """Full application startup sequence, then wait for stop.

        1. Load config
        2. Open store and load the registry
        3. Build providers, notifier and engine
        4. Start Telegram polling and the HTTP API
        5. Start the poll scheduler
        """
        try:
            # ── 1. Config ────────────────────────────────
            logger.info("═══ Loading configuration ═══")
            if self.config is None:
                self.config = load_config()
            config = self.config
            set_level(config.log_level)

            # ── 2. Storage + registry ────────────────────
            logger.info("═══ Loading subscriptions ═══")
            classifier = StatusClassifier(config.status_keywords)
            self.chain = build_provider_chain(config.providers, classifier)
            self.store = build_store(config.storage)
            self.registry = SubscriptionRegistry(
                self.store,
                fetcher=self.chain,
                min_code_length=config.min_code_length,
                max_code_length=config.max_code_length,
            )
            await self.registry.load()

            # ── 3. Notifier + engine ─────────────────────
            logger.info("═══ Initializing components ═══")
            notifier = await self._build_notifier()
            self.engine = ReconciliationEngine(
                self.registry,
                self.chain,
                notifier,
                health=self.health,
                interval_seconds=config.poll.interval_seconds,
                startup_delay_seconds=config.poll.startup_delay_seconds,
                max_concurrency=config.poll.max_concurrency,
                notify_timeout_seconds=config.poll.notify_timeout_seconds,
            )

            # ── 4. Inbound adapters ──────────────────────
            if self._telegram is not None:
                await self._start_telegram_commands()
            if config.http.enabled:
                await self._start_http()

            # ── 5. Scheduler ────────────────────────────
            logger.info("═══ Setting up scheduler ═══")
            self.engine.start()

            logger.info("═══ Entering main loop ═══")
            await self._stop_event.wait()

        except Exception as e:
            logger.error("Fatal error: %s", e)
            logger.error(traceback.format_exc())
        finally:
            await self.shutdown()

    async def _build_notifier(self):
        config = self.config
        if not config.telegram.enabled:
            logger.warning("Telegram disabled; notifications go to the log only")
            return LogNotifier()

        self._tg_app = Application.builder().token(config.telegram.bot_token).build()
        self._telegram = TelegramNotifier(config.telegram, bot=self._tg_app.bot)
        if not await self._telegram.initialize():
            logger.error("Telegram bot connection failed! Continuing anyway...")
        return self._telegram

    async def _start_telegram_commands(self) -> None:
        CommandHandler(self.registry, self.engine, self.health).register(self._tg_app)
        await self._tg_app.initialize()
        await self._tg_app.start()
        await self._tg_app.updater.start_polling(drop_pending_updates=True)
        logger.info("Telegram command polling started")

    async def _start_http(self) -> None:
        http = self.config.http
        app = create_app(self.registry, self.engine, self.health)
        self._http_runner = web.AppRunner(app)
        await self._http_runner.setup()
        await web.TCPSite(self._http_runner, http.host, http.port).start()
        logger.info("HTTP API listening on http://%s:%d", http.host, http.port)

    async def shutdown(self) -> None:
        """Graceful shutdown in reverse start order.

        Stops new work first (scheduler, inbound adapters), waits for an
        in-flight poll cycle, flushes the registry, then closes
        connections.
        """
        logger.info("═══ Shutting down ═══")

        if self.engine is not None:
            await self.engine.stop()

        if self._tg_app is not None:
            try:
                if self._tg_app.updater is not None and self._tg_app.updater.running:
                    await self._tg_app.updater.stop()
                if self._tg_app.running:
                    await self._tg_app.stop()
                await self._tg_app.shutdown()
            except Exception as e:
                logger.warning("Error stopping Telegram application: %s", e)

        if self._http_runner is not None:
            await self._http_runner.cleanup()
            logger.info("HTTP API stopped")

        if self.registry is not None:
            await self.registry.flush()

        if self.chain is not None:
            await self.chain.close()

        if isinstance(self.store, SqliteStore):
            await self.store.close()

        logger.info("Shutdown complete")


def main() -> None:
    """Application entry point."""
    Path("data").mkdir(exist_ok=True)
    Path("logs").mkdir(exist_ok=True)

    app = ParcelTracker()

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, app.request_stop)
            except NotImplementedError:
                # Windows: Ctrl+C still raises KeyboardInterrupt
                pass
        await app.start()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received")


if __name__ == "__main__":
    main()
