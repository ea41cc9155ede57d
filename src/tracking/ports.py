"""Ports (interfaces) used by the reconciliation core.

Providers, notifiers and stores are plugged in from outside; the core
only relies on these contracts.
"""

from __future__ import annotations

from typing import Protocol

from src.tracking.models import NotificationPayload, StatusSnapshot, SubscriptionRecord


class StatusProvider(Protocol):
    """One ranked source of tracking status."""

    name: str

    async def fetch(self, code: str) -> StatusSnapshot:
        """Return a snapshot or raise FetchError."""
        ...


class Notifier(Protocol):
    """Delivers a notification to a single user."""

    async def notify(self, user_id: str, payload: NotificationPayload) -> bool:
        ...


class SubscriptionStore(Protocol):
    """Durable home of the registry's record map."""

    async def load(self) -> dict[str, SubscriptionRecord]:
        ...

    async def save(self, records: dict[str, SubscriptionRecord]) -> None:
        """Persist the full map or raise PersistenceError."""
        ...
