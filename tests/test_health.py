from __future__ import annotations

from src.utils.health import HealthMonitor
from src.utils.resilience import CircuitBreaker


def test_cycle_totals_accumulate() -> None:
    monitor = HealthMonitor()
    monitor.record_cycle({"duration": 1.0, "checked": 3, "transitions": 1, "notifications_sent": 2})
    monitor.record_cycle({"duration": 3.0, "checked": 3, "fetch_errors": 1})

    status = monitor.get_status()
    assert status["total_cycles"] == 2
    assert status["total_checked"] == 6
    assert status["total_transitions"] == 1
    assert status["total_notifications"] == 2
    assert status["total_fetch_errors"] == 1
    assert status["avg_cycle_duration"] == 2.0


def test_recent_errors_newest_first() -> None:
    monitor = HealthMonitor()
    monitor.record_error("fetch", "first")
    monitor.record_error("notify", "second")
    assert [e["error"] for e in monitor.recent_errors()] == ["second", "first"]


def test_no_alert_when_healthy() -> None:
    monitor = HealthMonitor()
    monitor.record_cycle({"checked": 5})
    assert monitor.should_alert() is None


def test_alert_on_high_fetch_failure_rate() -> None:
    monitor = HealthMonitor()
    for _ in range(3):
        monitor.record_cycle({"checked": 1, "fetch_errors": 4})
    assert "fetch failure rate" in monitor.should_alert()


def test_alert_on_open_circuit() -> None:
    breaker = CircuitBreaker("tracking_api", failure_threshold=1)
    breaker.record_failure(RuntimeError("down"))
    alert = HealthMonitor().should_alert(circuit_breakers=[breaker])
    assert "tracking_api" in alert
