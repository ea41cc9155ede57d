"""Parcel Tracker — JSON File Store.

Keeps the whole subscription map in one JSON document keyed by tracking
code. Writes are atomic: the document goes to `<file>.tmp`, is fsynced,
then renamed over the real file with os.replace, so a crash mid-write
leaves the previous document intact.

File I/O runs in a worker thread (asyncio.to_thread) to keep the event
loop free.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

from src.tracking.errors import PersistenceError
from src.tracking.models import SubscriptionRecord
from src.utils.logger import get_logger

logger = get_logger(__name__)


class JsonFileStore:
    """SubscriptionStore backed by a single JSON file.

    Attributes:
        path: Resolved path of the document.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path).resolve()
        self._tmp_path = self.path.with_name(self.path.name + ".tmp")
        logger.debug("JSON store initialized with path: %s", self.path)

    async def load(self) -> dict[str, SubscriptionRecord]:
        """Read the document.

        Returns:
            Records keyed by code; empty if the file does not exist yet.

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed.
        """
        return await asyncio.to_thread(self._load_sync)

    async def save(self, records: dict[str, SubscriptionRecord]) -> None:
        """Atomically replace the document with `records`.

        Raises:
            PersistenceError: On any filesystem or encoding failure.
        """
        document = {code: record.to_dict() for code, record in records.items()}
        await asyncio.to_thread(self._save_sync, document)

    # ── Blocking helpers (run in a worker thread) ────────

    def _load_sync(self) -> dict[str, SubscriptionRecord]:
        if not self.path.exists():
            logger.info("No subscription file at %s, starting empty", self.path)
            return {}

        try:
            with open(self.path, encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise PersistenceError(f"{self.path} does not hold a JSON object")

        records: dict[str, SubscriptionRecord] = {}
        for code, data in document.items():
            if not isinstance(data, dict):
                logger.warning("Skipping malformed entry for %s in %s", code, self.path)
                continue
            records[code] = SubscriptionRecord.from_dict(code, data)
        logger.debug("Loaded %d records from %s", len(records), self.path)
        return records

    def _save_sync(self, document: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(self._tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e
