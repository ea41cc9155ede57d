"""Parcel Tracker — Subscription Registry.

Owns the in-memory map of tracking code → SubscriptionRecord and is the
only component that ever writes to it. Inbound adapters (Telegram
commands, HTTP routes) call subscribe / unsubscribe / get_subscription /
list_for_user; the reconciliation engine reads snapshots and reports
observations back through observe / commit.

Locking:
  - every read or write of the map happens under one asyncio.Lock
  - network calls (seed fetch) and store writes happen outside it
  - saves are serialized and versioned, so a slow older save can never
    overwrite a newer one
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from src.tracking.errors import FetchError, InvalidCode, PersistenceError, SubscriptionNotFound
from src.tracking.models import (
    MAX_CODE_LENGTH,
    MIN_CODE_LENGTH,
    CanonicalStatus,
    StatusSnapshot,
    SubscribeResult,
    SubscriptionRecord,
    SubscriptionSummary,
    UnsubscribeResult,
    is_valid_code,
)
from src.tracking.ports import StatusProvider, SubscriptionStore
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Observation:
    """Result of comparing a fresh snapshot with the stored record.

    Attributes:
        previous_status: Status stored before the snapshot.
        changed: True when the canonical status differs (or was unseeded).
        subscribers: Subscribers at comparison time, for fan-out.
    """

    previous_status: Optional[CanonicalStatus]
    changed: bool
    subscribers: frozenset[str]

    @property
    def is_seed(self) -> bool:
        return self.previous_status is None


class SubscriptionRegistry:
    """Lock-guarded registry of subscriptions with save-on-mutation.

    Attributes:
        store: Durable backing store.
        fetcher: Provider (usually the ProviderChain) used to seed new records.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        fetcher: Optional[StatusProvider] = None,
        min_code_length: int = MIN_CODE_LENGTH,
        max_code_length: int = MAX_CODE_LENGTH,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.min_code_length = min_code_length
        self.max_code_length = max_code_length

        self._records: dict[str, SubscriptionRecord] = {}
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._version = 0
        self._saved_version = 0
        self._dirty = False

    # ── Lifecycle ────────────────────────────────────────

    async def load(self) -> int:
        """Replace the in-memory map with the store's contents.

        Records without subscribers are dropped on load.

        Returns:
            Number of records loaded.
        """
        loaded = await self.store.load()
        async with self._lock:
            self._records = {
                code: record for code, record in loaded.items() if record.subscribers
            }
            count = len(self._records)
        logger.info("Registry loaded: %d tracked codes", count)
        return count

    def validate(self, code: object) -> str:
        """Return the code unchanged, or raise InvalidCode."""
        if not is_valid_code(code, self.min_code_length, self.max_code_length):
            raise InvalidCode(code, self.min_code_length, self.max_code_length)
        return code  # type: ignore[return-value]

    # ═══════════════════════════════════════════════════════
    # Public contract
    # ═══════════════════════════════════════════════════════

    async def subscribe(self, code: str, user_id: str) -> SubscribeResult:
        """Subscribe a user to a tracking code.

        A new record is seeded with an immediate fetch before returning.
        If that fetch fails the record stays unseeded and the next poll
        cycle picks it up.

        Raises:
            InvalidCode: If the code length is out of range.
        """
        self.validate(code)
        user_id = str(user_id)

        async with self._lock:
            record = self._records.get(code)
            if record is not None and user_id in record.subscribers:
                logger.debug("User %s already subscribed to %s", user_id, code)
                return SubscribeResult(record=record.copy(), already_subscribed=True)

            is_new = record is None
            if is_new:
                record = SubscriptionRecord(code=code)
                self._records[code] = record
            record.subscribers.add(user_id)
            data, version = self._mark_changed()

        logger.info(
            "User %s subscribed to %s (%s record, %d subscribers)",
            user_id, code, "new" if is_new else "existing", len(data[code].subscribers),
        )
        await self._persist(data, version)

        if is_new and self.fetcher is not None:
            await self._seed(code)

        async with self._lock:
            current = self._records.get(code)
            # A concurrent unsubscribe may have removed it again
            result_record = current.copy() if current is not None else data[code]
        return SubscribeResult(record=result_record, already_subscribed=False)

    async def unsubscribe(self, code: str, user_id: str) -> UnsubscribeResult:
        """Remove a user from a code; the record goes when nobody is left."""
        user_id = str(user_id)
        async with self._lock:
            record = self._records.get(code)
            if record is None or user_id not in record.subscribers:
                logger.debug("Unsubscribe no-op: %s not subscribed to %s", user_id, code)
                return UnsubscribeResult(found=False)

            record.subscribers.discard(user_id)
            removed = not record.subscribers
            if removed:
                del self._records[code]
            data, version = self._mark_changed()

        logger.info(
            "User %s unsubscribed from %s%s",
            user_id, code, " (record removed)" if removed else "",
        )
        await self._persist(data, version)
        return UnsubscribeResult(found=True)

    async def get_subscription(self, code: str) -> SubscriptionRecord:
        """Return a copy of the record for a code.

        Raises:
            SubscriptionNotFound: If nobody tracks the code.
        """
        async with self._lock:
            record = self._records.get(code)
            if record is None:
                raise SubscriptionNotFound(code)
            return record.copy()

    async def list_for_user(self, user_id: str) -> list[SubscriptionSummary]:
        """List the codes a user is subscribed to.

        Args:
            user_id: Subscriber identifier (Telegram chat id or API caller).

        Returns:
            Summaries ordered by subscription creation time, oldest first.
        """
        user_id = str(user_id)
        async with self._lock:
            summaries = [
                SubscriptionSummary(
                    code=record.code,
                    last_status=record.last_status,
                    created_at=record.created_at,
                )
                for record in self._records.values()
                if user_id in record.subscribers
            ]
        return sorted(summaries, key=lambda s: s.created_at)

    async def all_records(self) -> dict[str, SubscriptionRecord]:
        """Return copies of every record, keyed by tracking code."""
        async with self._lock:
            return self._copy_all()

    # ═══════════════════════════════════════════════════════
    # Engine-facing operations
    # ═══════════════════════════════════════════════════════

    async def snapshot(self) -> list[SubscriptionRecord]:
        """Return copies of every record eligible for polling.

        A record is eligible while it is not terminal and still has at
        least one subscriber.
        """
        async with self._lock:
            return [record.copy() for record in self._records.values() if record.is_active]

    async def is_pollable(self, code: str) -> bool:
        """Check against live state that a code should still be fetched.

        Args:
            code: Tracking code taken from an earlier snapshot().

        Returns:
            False once the record was removed or reached a terminal status.
        """
        async with self._lock:
            record = self._records.get(code)
            return record is not None and record.is_active

    async def observe(self, code: str, snapshot: StatusSnapshot) -> Optional[Observation]:
        """Compare a fresh snapshot with the stored status.

        Unchanged: bookkeeping (events, last check time) is applied right
        away and saved at the next flush(). Changed: nothing is applied;
        the caller notifies and then calls commit().

        Returns:
            None if the record vanished or went terminal meanwhile.
        """
        async with self._lock:
            record = self._records.get(code)
            if record is None or not record.is_active:
                return None

            previous = record.last_status
            if previous == snapshot.canonical_status:
                record.last_events = snapshot.events
                record.last_checked_at = snapshot.fetched_at
                self._version += 1
                self._dirty = True
                return Observation(previous, False, frozenset(record.subscribers))

            return Observation(previous, True, frozenset(record.subscribers))

    async def commit(self, code: str, snapshot: StatusSnapshot) -> bool:
        """Apply a changed snapshot to the live record and persist it.

        Returns:
            False if the record no longer exists.
        """
        async with self._lock:
            record = self._records.get(code)
            if record is None:
                return False
            record.apply_snapshot(snapshot)
            data, version = self._mark_changed()

        await self._persist(data, version)
        return True

    async def flush(self) -> bool:
        """Persist pending bookkeeping changes, if any.

        Returns:
            True if nothing was pending or the save succeeded.
        """
        async with self._lock:
            if not self._dirty:
                return True
            data, version = self._mark_changed()
        return await self._persist(data, version)

    # ═══════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════

    async def _seed(self, code: str) -> None:
        """Fetch a new record's first snapshot and apply it."""
        try:
            snapshot = await self.fetcher.fetch(code)  # type: ignore[union-attr]
        except FetchError as e:
            logger.warning("Initial fetch for %s failed, next poll will retry: %s", code, e)
            return

        async with self._lock:
            record = self._records.get(code)
            if record is None or record.last_status is not None:
                return
            record.apply_snapshot(snapshot)
            data, version = self._mark_changed()

        logger.info(
            "Seeded %s: %s (via %s)", code, snapshot.canonical_status.value, snapshot.provider,
        )
        await self._persist(data, version)

    def _copy_all(self) -> dict[str, SubscriptionRecord]:
        return {code: record.copy() for code, record in self._records.items()}

    def _mark_changed(self) -> tuple[dict[str, SubscriptionRecord], int]:
        """Bump the version and copy the map. Caller holds the lock."""
        self._version += 1
        self._dirty = False
        return self._copy_all(), self._version

    async def _persist(self, data: dict[str, SubscriptionRecord], version: int) -> bool:
        """Save a copy of the map unless a newer copy was already saved.

        Store failures are logged loudly and swallowed: the in-memory map
        stays authoritative until the next successful save.
        """
        async with self._save_lock:
            if version <= self._saved_version:
                return True
            try:
                await self.store.save(data)
            except PersistenceError as e:
                logger.error(
                    "PERSISTENCE FAILURE (version %d, %d records): %s; "
                    "state will be lost on restart until the next successful save",
                    version, len(data), e,
                )
                async with self._lock:
                    self._dirty = True
                return False
            self._saved_version = version
            logger.debug("Registry saved (version %d, %d records)", version, len(data))
            return True
