"""Parcel Tracker — Error Types.

Only InvalidCode and SubscriptionNotFound ever reach the inbound
adapters. FetchError, NotifyError and PersistenceError are contained
inside the poll cycle and the registry.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for all parcel tracker errors."""


class InvalidCode(TrackingError):
    """A tracking code failed length validation."""

    def __init__(self, code: object, min_length: int, max_length: int) -> None:
        self.code = code
        super().__init__(
            f"Invalid tracking code {code!r}: expected {min_length}-{max_length} characters"
        )


class SubscriptionNotFound(TrackingError):
    """No subscription record exists for the requested code."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"No subscription for tracking code {code!r}")


class FetchError(TrackingError):
    """A status provider could not produce a snapshot.

    `upstream_miss` marks a provider that answered but had nothing for this
    code (unknown code, empty history). Such a miss says nothing about the
    provider's health and does not count toward its circuit breaker.
    """

    def __init__(
        self,
        provider: str,
        code: str,
        reason: str,
        upstream_miss: bool = False,
    ) -> None:
        self.provider = provider
        self.code = code
        self.reason = reason
        self.upstream_miss = upstream_miss
        super().__init__(f"[{provider}] {code}: {reason}")


class NotifyError(TrackingError):
    """Delivery to one subscriber failed."""

    def __init__(self, user_id: str, code: str, reason: str) -> None:
        self.user_id = user_id
        self.code = code
        self.reason = reason
        super().__init__(f"Notify {user_id} about {code} failed: {reason}")


class PersistenceError(TrackingError):
    """The subscription store could not be written or read."""
