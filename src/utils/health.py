"""Parcel Tracker — Health Monitoring.

Tracks poll-cycle metrics and recent errors for the /health endpoint
and the Telegram /status command. Uses in-memory data structures
(deque) for bounded history with zero storage overhead.

Usage:
    monitor = HealthMonitor()
    monitor.record_cycle({"duration": 1.2, "checked": 4, "transitions": 1})
    status = monitor.get_status()
    alert = monitor.should_alert(circuit_breakers=[cb1, cb2])
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class _CycleRecord:
    """Record of a single poll cycle."""
    timestamp: float
    duration: float
    checked: int
    transitions: int
    notifications_sent: int
    notifications_failed: int
    fetch_errors: int


@dataclass
class _ErrorRecord:
    """Record of a single error event."""
    timestamp: float
    component: str
    error: str


class HealthMonitor:
    """Tracks poll health with bounded in-memory history.

    Attributes:
        start_time: When the monitor was created (app start).
    """

    def __init__(self, max_history: int = 200, stale_after_seconds: float = 1800) -> None:
        """Initialize the health monitor.

        Args:
            max_history: Maximum number of cycle/error records to keep.
            stale_after_seconds: Alert when no cycle completed for this long.
        """
        self.start_time = time.monotonic()
        self._start_datetime = datetime.now()
        self.stale_after_seconds = stale_after_seconds

        self._cycles: deque[_CycleRecord] = deque(maxlen=max_history)
        self._errors: deque[_ErrorRecord] = deque(maxlen=max_history)

        # Aggregate counters (never reset)
        self.total_cycles = 0
        self.total_checked = 0
        self.total_transitions = 0
        self.total_notifications = 0
        self.total_notify_failures = 0
        self.total_fetch_errors = 0

        self.last_cycle_time: Optional[float] = None
        self.last_cycle_duration: float = 0.0

    def record_cycle(self, stats: dict[str, Any]) -> None:
        """Record stats from a completed poll cycle.

        Args:
            stats: Dict with keys: duration, checked, transitions,
                   notifications_sent, notifications_failed, fetch_errors.
        """
        now = time.monotonic()
        record = _CycleRecord(
            timestamp=now,
            duration=stats.get("duration", 0.0),
            checked=stats.get("checked", 0),
            transitions=stats.get("transitions", 0),
            notifications_sent=stats.get("notifications_sent", 0),
            notifications_failed=stats.get("notifications_failed", 0),
            fetch_errors=stats.get("fetch_errors", 0),
        )
        self._cycles.append(record)

        self.total_cycles += 1
        self.total_checked += record.checked
        self.total_transitions += record.transitions
        self.total_notifications += record.notifications_sent
        self.total_notify_failures += record.notifications_failed
        self.total_fetch_errors += record.fetch_errors

        self.last_cycle_time = now
        self.last_cycle_duration = record.duration

        if self.total_cycles % 10 == 0:
            logger.info(
                "Health check [cycle %d]: checked=%d, transitions=%d, "
                "notified=%d, fetch_errors=%d, errors_1h=%d",
                self.total_cycles, self.total_checked, self.total_transitions,
                self.total_notifications, self.total_fetch_errors,
                self._recent_errors(now),
            )

    def record_error(self, component: str, error: str) -> None:
        """Record an error event.

        Args:
            component: Component name (fetch, notify, store, poll_cycle).
            error: Error description.
        """
        self._errors.append(_ErrorRecord(
            timestamp=time.monotonic(),
            component=component,
            error=error[:200],
        ))
        logger.debug("Health: error recorded for %s", component)

    def recent_errors(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent errors, newest first."""
        now = time.monotonic()
        return [
            {
                "component": e.component,
                "error": e.error,
                "seconds_ago": round(now - e.timestamp),
            }
            for e in list(self._errors)[::-1][:limit]
        ]

    def get_status(self) -> dict[str, Any]:
        """Get current system health status.

        Returns:
            Dict with uptime, totals, error counts and cycle timings.
        """
        now = time.monotonic()
        uptime_s = now - self.start_time

        recent_durations = [c.duration for c in list(self._cycles)[-20:]]
        avg_duration = (
            sum(recent_durations) / len(recent_durations)
            if recent_durations else 0.0
        )
        since_last = (
            now - self.last_cycle_time if self.last_cycle_time is not None else None
        )

        return {
            "uptime": self._format_uptime(uptime_s),
            "uptime_seconds": round(uptime_s),
            "started_at": self._start_datetime.strftime("%Y-%m-%d %H:%M"),
            "total_cycles": self.total_cycles,
            "total_checked": self.total_checked,
            "total_transitions": self.total_transitions,
            "total_notifications": self.total_notifications,
            "total_notify_failures": self.total_notify_failures,
            "total_fetch_errors": self.total_fetch_errors,
            "recent_errors_1h": self._recent_errors(now),
            "avg_cycle_duration": round(avg_duration, 1),
            "last_cycle_duration": round(self.last_cycle_duration, 1),
            "seconds_since_last_cycle": round(since_last) if since_last is not None else None,
        }

    def should_alert(
        self,
        circuit_breakers: Optional[list] = None,
    ) -> Optional[str]:
        """Check if any condition warrants an operator warning.

        Args:
            circuit_breakers: CircuitBreaker instances to check.

        Returns:
            Alert message string, or None if everything is fine.
        """
        now = time.monotonic()
        alerts: list[str] = []

        # Most codes failing to fetch over the last hour
        one_hour_ago = now - 3600
        recent = [c for c in self._cycles if c.timestamp > one_hour_ago]
        attempted = sum(c.checked + c.fetch_errors for c in recent)
        failed = sum(c.fetch_errors for c in recent)
        if len(recent) >= 3 and attempted and failed / attempted > 0.5:
            alerts.append(
                f"High fetch failure rate: {failed}/{attempted} ({failed / attempted * 100:.0f}%)"
            )

        if self.last_cycle_time is not None:
            since_last = now - self.last_cycle_time
            if since_last > self.stale_after_seconds:
                alerts.append(f"No poll cycle completed in {int(since_last / 60)} minutes")

        if circuit_breakers:
            for cb in circuit_breakers:
                if cb.is_open:
                    alerts.append(
                        f"Provider {cb.name} unavailable "
                        f"(retry in {cb.remaining_cooldown:.0f}s)"
                    )

        if not alerts:
            return None
        return "⚠️ System warning:\n" + "\n".join(f"• {a}" for a in alerts)

    def _recent_errors(self, now: float) -> int:
        return sum(1 for e in self._errors if e.timestamp > now - 3600)

    @staticmethod
    def _format_uptime(seconds: float) -> str:
        """Format seconds into human-readable uptime."""
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        if hours >= 24:
            days = hours // 24
            hours = hours % 24
            return f"{days}d {hours}h {mins}m"
        if hours:
            return f"{hours}h {mins}m"
        return f"{mins}m"
