"""Parcel Tracker — Data Models.

Dataclasses for everything the reconciliation core passes around:
status snapshots produced by providers, the subscription records the
registry owns, and the payload handed to notifiers.

Records include:
  - to_dict(): plain JSON-compatible dict for the stores
  - from_dict(data): classmethod to rebuild from a stored dict
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

MIN_CODE_LENGTH = 10
MAX_CODE_LENGTH = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def is_valid_code(
    code: Any,
    min_length: int = MIN_CODE_LENGTH,
    max_length: int = MAX_CODE_LENGTH,
) -> bool:
    """Tracking codes are opaque; only their length is checked."""
    return isinstance(code, str) and min_length <= len(code) <= max_length


class CanonicalStatus(str, Enum):
    """Normalized shipment state, independent of any provider's wording."""

    PROCESSING = "processing"
    POSTED = "posted"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self is CanonicalStatus.DELIVERED

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["CanonicalStatus"]:
        """Read a stored value, mapping unrecognized names to UNKNOWN."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# ═══════════════════════════════════════════════════════════
# Provider Models
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TrackingEvent:
    """One line of a shipment's history.

    Attributes:
        description: Carrier text for the event.
        timestamp: Parsed event time, None when the source text was unparseable.
        raw_time: The source's own time text, kept for display.
    """

    description: str
    timestamp: Optional[datetime] = None
    raw_time: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "timestamp": _format_dt(self.timestamp),
            "raw_time": self.raw_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackingEvent":
        return cls(
            description=data.get("description", ""),
            timestamp=_parse_dt(data.get("timestamp")),
            raw_time=data.get("raw_time", ""),
        )


@dataclass(frozen=True)
class StatusSnapshot:
    """A single observation of a tracking code, as returned by a provider.

    Attributes:
        code: The tracking code observed.
        canonical_status: Classified status.
        events: History, most recent first.
        fetched_at: When the observation was made.
        raw_status: The provider text that was classified.
        provider: Name of the provider that answered.
    """

    code: str
    canonical_status: CanonicalStatus
    events: tuple[TrackingEvent, ...] = ()
    fetched_at: datetime = field(default_factory=utcnow)
    raw_status: str = ""
    provider: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.canonical_status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracking_code": self.code,
            "status": self.canonical_status.value,
            "raw_status": self.raw_status,
            "is_terminal": self.is_terminal,
            "provider": self.provider,
            "fetched_at": _format_dt(self.fetched_at),
            "events": [event.to_dict() for event in self.events],
        }


# ═══════════════════════════════════════════════════════════
# Registry Models
# ═══════════════════════════════════════════════════════════


@dataclass
class SubscriptionRecord:
    """Everything the registry knows about one tracking code.

    Attributes:
        code: Tracking code (registry key).
        subscribers: User ids to notify.
        last_status: Last observed canonical status, None until seeded.
        last_events: Last observed event history.
        is_terminal: Once True the code is never polled again.
        created_at: Time of the first subscription.
        last_checked_at: Time of the last successful observation.
    """

    code: str
    subscribers: set[str] = field(default_factory=set)
    last_status: Optional[CanonicalStatus] = None
    last_events: tuple[TrackingEvent, ...] = ()
    is_terminal: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_checked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Eligible for polling: not terminal and someone is listening."""
        return not self.is_terminal and bool(self.subscribers)

    def copy(self) -> "SubscriptionRecord":
        """Detached copy; the subscriber set is not shared."""
        return replace(self, subscribers=set(self.subscribers))

    def apply_snapshot(self, snapshot: StatusSnapshot) -> None:
        """Record an observation. Terminal state is never cleared."""
        self.last_status = snapshot.canonical_status
        self.last_events = snapshot.events
        self.last_checked_at = snapshot.fetched_at
        self.is_terminal = self.is_terminal or snapshot.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscribers": sorted(self.subscribers),
            "last_status": self.last_status.value if self.last_status else None,
            "last_events": [event.to_dict() for event in self.last_events],
            "is_terminal": self.is_terminal,
            "created_at": _format_dt(self.created_at),
            "last_checked_at": _format_dt(self.last_checked_at),
        }

    @classmethod
    def from_dict(cls, code: str, data: dict[str, Any]) -> "SubscriptionRecord":
        created_at = _parse_dt(data.get("created_at")) or utcnow()
        return cls(
            code=code,
            subscribers={str(user) for user in data.get("subscribers", [])},
            last_status=CanonicalStatus.parse(data.get("last_status")),
            last_events=tuple(
                TrackingEvent.from_dict(item) for item in data.get("last_events", [])
            ),
            is_terminal=bool(data.get("is_terminal", False)),
            created_at=created_at,
            last_checked_at=_parse_dt(data.get("last_checked_at")),
        )


@dataclass(frozen=True)
class SubscriptionSummary:
    """Row returned by list_for_user."""

    code: str
    last_status: Optional[CanonicalStatus]
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracking_code": self.code,
            "last_status": self.last_status.value if self.last_status else None,
            "created_at": _format_dt(self.created_at),
        }


@dataclass(frozen=True)
class SubscribeResult:
    record: SubscriptionRecord
    already_subscribed: bool


@dataclass(frozen=True)
class UnsubscribeResult:
    found: bool


# ═══════════════════════════════════════════════════════════
# Notifier Models
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class NotificationPayload:
    """What a notifier receives for one subscriber.

    Attributes:
        code: Tracking code that changed.
        snapshot: The observation that triggered the notification.
        previous_status: Status stored before this observation.
        is_transition: False when the observation only seeded a record
            that had never been observed.
    """

    code: str
    snapshot: StatusSnapshot
    previous_status: Optional[CanonicalStatus]
    is_transition: bool = True
