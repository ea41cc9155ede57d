"""Parcel Tracker — Tracking core.

Components:
  - models: snapshots, records and notification payloads
  - classifier: raw carrier text → CanonicalStatus
  - registry: the only owner of subscription state
  - engine: periodic reconciliation with fan-out notification
"""

from src.tracking.classifier import StatusClassifier
from src.tracking.engine import CycleStats, ReconciliationEngine
from src.tracking.errors import (
    FetchError,
    InvalidCode,
    NotifyError,
    PersistenceError,
    SubscriptionNotFound,
    TrackingError,
)
from src.tracking.models import CanonicalStatus, StatusSnapshot, SubscriptionRecord
from src.tracking.registry import SubscriptionRegistry

__all__ = [
    "CanonicalStatus",
    "CycleStats",
    "FetchError",
    "InvalidCode",
    "NotifyError",
    "PersistenceError",
    "ReconciliationEngine",
    "StatusClassifier",
    "StatusSnapshot",
    "SubscriptionNotFound",
    "SubscriptionRecord",
    "SubscriptionRegistry",
    "TrackingError",
]
