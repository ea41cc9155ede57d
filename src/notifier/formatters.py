"""Parcel Tracker — Telegram Message Formatters.

Plain, compact status messages using HTML parse mode (only &, <, >
need escaping). One data point per line; events are listed newest
first and truncated.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from src.tracking.models import (
    CanonicalStatus,
    NotificationPayload,
    StatusSnapshot,
    SubscriptionRecord,
    SubscriptionSummary,
    TrackingEvent,
)

_SEP = "━━━━━━━━━━━━━━━━━━"
_MAX_EVENTS = 5

_STATUS_LABELS = {
    CanonicalStatus.PROCESSING: "⚙️ Processing",
    CanonicalStatus.POSTED: "📮 Posted",
    CanonicalStatus.IN_TRANSIT: "🚚 In transit",
    CanonicalStatus.OUT_FOR_DELIVERY: "🛵 Out for delivery",
    CanonicalStatus.DELIVERED: "✅ Delivered",
    CanonicalStatus.UNKNOWN: "❔ Unknown",
}


def _e(text: Any) -> str:
    """Escape HTML special characters for Telegram."""
    if not text:
        return ""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _code(text: str) -> str:
    return f"<code>{_e(text)}</code>"


def status_label(status: Optional[CanonicalStatus]) -> str:
    if status is None:
        return "⏳ Not checked yet"
    return _STATUS_LABELS.get(status, status.value)


def _event_lines(events: Iterable[TrackingEvent], limit: int = _MAX_EVENTS) -> list[str]:
    lines = []
    for event in list(events)[:limit]:
        when = event.raw_time or (
            event.timestamp.strftime("%d/%m/%Y %H:%M") if event.timestamp else ""
        )
        prefix = f"<i>{_e(when)}</i> " if when else ""
        lines.append(f"• {prefix}{_e(event.description)}")
    return lines


# ═══════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════


def format_status_update(payload: NotificationPayload) -> str:
    """Message sent to each subscriber when a code changes status."""
    snapshot = payload.snapshot
    if payload.is_transition:
        header = "<b>📦 Tracking update</b>"
        change = (
            f"{status_label(payload.previous_status)} → "
            f"<b>{status_label(snapshot.canonical_status)}</b>"
        )
    else:
        header = "<b>📦 Tracking started</b>"
        change = f"<b>{status_label(snapshot.canonical_status)}</b>"

    lines = [
        header,
        _code(payload.code),
        _SEP,
        change,
    ]
    if snapshot.raw_status:
        lines.append(f"📝 {_e(snapshot.raw_status)}")

    events = _event_lines(snapshot.events, limit=3)
    if events:
        lines.extend(["", "<b>Latest events:</b>", *events])

    if snapshot.is_terminal:
        lines.extend(["", "🏁 Final status reached, tracking finished."])
    return "\n".join(lines)


def format_snapshot(snapshot: StatusSnapshot) -> str:
    """Live lookup result for /status on any code."""
    lines = [
        f"<b>🔎 {_e(snapshot.code)}</b>",
        _SEP,
        f"Status: <b>{status_label(snapshot.canonical_status)}</b>",
    ]
    if snapshot.raw_status:
        lines.append(f"📝 {_e(snapshot.raw_status)}")

    events = _event_lines(snapshot.events)
    if events:
        lines.extend(["", "<b>Events:</b>", *events])
    else:
        lines.extend(["", "<i>No events yet.</i>"])

    lines.append(f"\n<i>Source: {_e(snapshot.provider)}</i>")
    return "\n".join(lines)


def format_record(record: SubscriptionRecord) -> str:
    """Stored state of a tracked code."""
    lines = [
        f"<b>📦 {_e(record.code)}</b>",
        _SEP,
        f"Status: <b>{status_label(record.last_status)}</b>",
        f"👥 Subscribers: {len(record.subscribers)}",
    ]
    if record.last_checked_at:
        lines.append(f"🕐 Last check: {record.last_checked_at.strftime('%Y-%m-%d %H:%M')} UTC")
    if record.is_terminal:
        lines.append("🏁 Tracking finished")

    events = _event_lines(record.last_events)
    if events:
        lines.extend(["", "<b>Events:</b>", *events])
    return "\n".join(lines)


def format_subscription_list(summaries: list[SubscriptionSummary]) -> str:
    if not summaries:
        return "You are not tracking any parcels.\nUse /track &lt;code&gt; to start."

    lines = [f"<b>📋 Your parcels ({len(summaries)})</b>", ""]
    for summary in summaries:
        lines.append(f"{_code(summary.code)}: {status_label(summary.last_status)}")
    return "\n".join(lines)


def format_system_status(
    status: dict[str, Any],
    tracked_codes: int,
    active_codes: int,
) -> str:
    """Short health summary for the /start footer."""
    lines = [
        "<b>🤖 System</b>",
        f"⏱ Uptime: {_e(status.get('uptime', '?'))}",
        f"🔄 Poll cycles: {status.get('total_cycles', 0)}",
        f"📦 Tracked codes: {tracked_codes} ({active_codes} active)",
    ]
    since = status.get("seconds_since_last_cycle")
    if since is not None:
        lines.append(f"🕐 Last cycle: {int(since)}s ago")
    return "\n".join(lines)
