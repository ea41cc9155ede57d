"""Parcel Tracker — Reconciliation Engine.

Drives the poll cycle: every tick it snapshots the active subscriptions,
asks the provider chain for each code's current status, and when the
canonical status changed it notifies every subscriber and then records
the new state.

Runs on a schedule with APScheduler:
  - Poll cycle (every `interval_seconds`)
  - One extra cycle `startup_delay_seconds` after start

Per code, the order is always: fetch → notify all subscribers → commit
+ persist. A crash between notify and persist can therefore produce one
duplicate notification after restart, never a lost state change.

Codes are processed with bounded concurrency (`max_concurrency`,
default 1: strictly sequential, so a slow code delays the next one).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.tracking.errors import FetchError, NotifyError
from src.tracking.models import NotificationPayload, StatusSnapshot, SubscriptionRecord
from src.tracking.ports import Notifier, StatusProvider
from src.tracking.registry import SubscriptionRegistry
from src.utils.health import HealthMonitor
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CycleStats:
    """Counters for one poll cycle."""

    eligible: int = 0
    checked: int = 0
    skipped: int = 0
    transitions: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    fetch_errors: int = 0
    errors: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


class ReconciliationEngine:
    """Periodic status reconciliation with fan-out notification.

    Attributes:
        registry: The subscription registry (sole owner of records).
        fetcher: Status source, normally a ProviderChain.
        notifier: Delivers notifications to individual users.
        health: Cycle and error history.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        fetcher: StatusProvider,
        notifier: Notifier,
        health: Optional[HealthMonitor] = None,
        interval_seconds: int = 300,
        startup_delay_seconds: int = 10,
        max_concurrency: int = 1,
        notify_timeout_seconds: float = 20.0,
    ) -> None:
        self.registry = registry
        self.fetcher = fetcher
        self.notifier = notifier
        self.health = health or HealthMonitor()
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.notify_timeout_seconds = notify_timeout_seconds

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._cycle_lock = asyncio.Lock()
        self._stopping = False
        self._cycle_count = 0
        self._last_cycle_time: Optional[str] = None

    # ═══════════════════════════════════════════════════════
    # Scheduling
    # ═══════════════════════════════════════════════════════

    def start(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        """Register the poll jobs and start the scheduler.

        Must be called from inside the running event loop.
        """
        self._stopping = False
        self._scheduler = scheduler or AsyncIOScheduler()

        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id="poll_cycle",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            name=f"Poll cycle (every {self.interval_seconds}s)",
        )
        self._scheduler.add_job(
            self._tick,
            DateTrigger(run_date=datetime.now() + timedelta(seconds=self.startup_delay_seconds)),
            id="poll_startup",
            name=f"Startup poll (+{self.startup_delay_seconds}s)",
        )

        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(
            "Poll scheduler started: every %ds, first cycle in %ds",
            self.interval_seconds, self.startup_delay_seconds,
        )

    async def stop(self) -> None:
        """Stop scheduling new cycles and wait for an in-flight one."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Poll scheduler stopped")

        if self._cycle_lock.locked():
            logger.info("Waiting for the in-flight poll cycle to finish...")
        async with self._cycle_lock:
            pass

    async def _tick(self) -> None:
        """Scheduler entry point; nothing may escape into APScheduler."""
        try:
            await self.run_cycle()
        except Exception as e:
            self.health.record_error("poll_cycle", str(e)[:200])
            logger.exception("Unhandled error in poll cycle: %s", e)

    # ═══════════════════════════════════════════════════════
    # Poll cycle
    # ═══════════════════════════════════════════════════════

    async def run_cycle(self) -> Optional[CycleStats]:
        """Run one reconciliation pass over every active code.

        Returns:
            Stats for the cycle, or None if it was skipped because the
            engine is stopping or a previous cycle is still running.
        """
        if self._stopping:
            logger.info("Poll cycle skipped (engine stopping)")
            return None

        if self._cycle_lock.locked():
            logger.warning("Previous poll cycle still running, skipping")
            return None

        async with self._cycle_lock:
            self._cycle_count += 1
            cycle_num = self._cycle_count
            started = time.monotonic()
            self._last_cycle_time = datetime.now().strftime("%H:%M:%S")
            stats = CycleStats()

            records = await self.registry.snapshot()
            stats.eligible = len(records)
            logger.info(
                "═══ Poll cycle #%d: %d active codes ═══", cycle_num, stats.eligible,
            )

            if self.max_concurrency == 1:
                for record in records:
                    await self._reconcile_safely(record, stats)
            else:
                semaphore = asyncio.Semaphore(self.max_concurrency)

                async def _bounded(record: SubscriptionRecord) -> None:
                    async with semaphore:
                        await self._reconcile_safely(record, stats)

                await asyncio.gather(*(_bounded(record) for record in records))

            if not await self.registry.flush():
                stats.errors += 1
                self.health.record_error("store", "bookkeeping flush failed")

            stats.duration = time.monotonic() - started
            logger.info(
                "═══ Cycle #%d complete: checked %d | changed %d | notified %d "
                "(failed %d) | fetch errors %d | %.1fs ═══",
                cycle_num, stats.checked, stats.transitions, stats.notifications_sent,
                stats.notifications_failed, stats.fetch_errors, stats.duration,
            )
            self.health.record_cycle(stats.to_dict())

            alert = self.health.should_alert(
                circuit_breakers=getattr(self.fetcher, "circuit_breakers", None),
            )
            if alert:
                logger.warning(alert)
            return stats

    async def _reconcile_safely(self, record: SubscriptionRecord, stats: CycleStats) -> None:
        """Reconcile one code, containing any error to that code.

        Args:
            record: Snapshot copy of the record to reconcile.
            stats: Counters for the running cycle; errors are added here.
        """
        try:
            await self.reconcile(record.code, stats)
        except Exception as e:
            stats.errors += 1
            self.health.record_error("reconcile", f"{record.code}: {str(e)[:180]}")
            logger.exception("Error reconciling %s: %s", record.code, e)

    async def reconcile(self, code: str, stats: Optional[CycleStats] = None) -> bool:
        """Fetch one code and act on a status change.

        Args:
            code: Tracking code to reconcile.
            stats: Counters to update; a throwaway instance when omitted.

        Returns:
            True if a change was detected and committed.
        """
        stats = stats if stats is not None else CycleStats()

        # Terminal or unsubscribed since the snapshot was taken
        if not await self.registry.is_pollable(code):
            stats.skipped += 1
            logger.debug("Skipping %s (no longer active)", code)
            return False

        try:
            snapshot = await self.fetcher.fetch(code)
        except FetchError as e:
            stats.fetch_errors += 1
            self.health.record_error("fetch", str(e)[:200])
            logger.warning("Could not fetch %s this cycle: %s", code, e.reason)
            return False

        stats.checked += 1
        observation = await self.registry.observe(code, snapshot)
        if observation is None or not observation.changed:
            return False

        payload = NotificationPayload(
            code=code,
            snapshot=snapshot,
            previous_status=observation.previous_status,
            is_transition=not observation.is_seed,
        )
        logger.info(
            "Status changed for %s: %s → %s (via %s, %d subscribers)",
            code,
            observation.previous_status.value if observation.previous_status else "unseeded",
            snapshot.canonical_status.value,
            snapshot.provider,
            len(observation.subscribers),
        )

        sent, failed = await self.fan_out(observation.subscribers, payload)
        stats.notifications_sent += sent
        stats.notifications_failed += failed

        if await self.registry.commit(code, snapshot):
            stats.transitions += 1
            if snapshot.is_terminal:
                logger.info("%s reached a terminal state; polling stops for it", code)
            return True
        return False

    async def fan_out(
        self,
        subscribers: Iterable[str],
        payload: NotificationPayload,
    ) -> tuple[int, int]:
        """Notify each subscriber once, isolating failures per subscriber.

        Returns:
            (delivered, failed) counts.
        """
        sent = failed = 0
        for user_id in sorted(subscribers):
            try:
                ok = await asyncio.wait_for(
                    self.notifier.notify(user_id, payload),
                    timeout=self.notify_timeout_seconds,
                )
                if not ok:
                    raise NotifyError(user_id, payload.code, "notifier reported failure")
            except asyncio.TimeoutError:
                failed += 1
                logger.warning(
                    "%s", NotifyError(user_id, payload.code,
                                      f"timed out after {self.notify_timeout_seconds:.0f}s"),
                )
            except Exception as e:
                failed += 1
                error = e if isinstance(e, NotifyError) else NotifyError(
                    user_id, payload.code, f"{type(e).__name__}: {e}",
                )
                self.health.record_error("notify", str(error)[:200])
                logger.warning("%s", error)
            else:
                sent += 1
        return sent, failed

    # ═══════════════════════════════════════════════════════
    # Read-only lookups for adapters
    # ═══════════════════════════════════════════════════════

    async def lookup(self, code: str) -> StatusSnapshot:
        """Live status for any code, without touching the registry.

        Raises:
            InvalidCode: If the code length is out of range.
            FetchError: If every provider failed.
        """
        self.registry.validate(code)
        return await self.fetcher.fetch(code)

    # ── Public state accessors ───────────────────────────

    @property
    def cycle_count(self) -> int:
        """Number of completed poll cycles."""
        return self._cycle_count

    @property
    def last_cycle_time(self) -> Optional[str]:
        """ISO timestamp of the last completed cycle, if any."""
        return self._last_cycle_time

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running and not self._stopping
