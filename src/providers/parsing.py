"""Parcel Tracker — Tracking Page Parsing.

Shared helpers for turning carrier output into TrackingEvent tuples:
the SPX tracking page markup (one `.nss-comp-tracking-item` per event,
newest first, with `.time` and `.message` children) and the loose date
formats found in both the page and the JSON API.

Uses selectolax (HTMLParser) for the markup.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from selectolax.parser import HTMLParser, Node

from src.tracking.models import TrackingEvent

EVENT_SELECTOR = ".nss-comp-tracking-item"

_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S",
    "%d %b %Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
)


def _text(node: Optional[Node]) -> str:
    """Stripped text of a node, child text nodes joined by spaces."""
    if node is None:
        return ""
    return node.text(separator=" ", strip=True)


def parse_event_time(raw: Any) -> Optional[datetime]:
    """Best-effort parse of an event time.

    Accepts epoch numbers (seconds or milliseconds), ISO 8601 strings,
    and the day-first formats the carrier uses. Returns None when
    nothing matches.
    """
    if raw is None or raw == "":
        return None

    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = raw / 1000 if raw > 1e11 else raw
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = " ".join(str(raw).split())
    if text.isdigit():
        return parse_event_time(int(text))

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_tracking_html(html: str) -> list[TrackingEvent]:
    """Extract the event list from a rendered SPX tracking page.

    Args:
        html: Full page HTML.

    Returns:
        Events in page order (most recent first). Rows with no message
        are skipped.
    """
    tree = HTMLParser(html)
    events: list[TrackingEvent] = []
    for item in tree.css(EVENT_SELECTOR):
        message = _text(item.css_first(".message"))
        if not message:
            continue
        raw_time = _text(item.css_first(".time"))
        events.append(TrackingEvent(
            description=message,
            timestamp=parse_event_time(raw_time),
            raw_time=raw_time,
        ))
    return events
