"""Parcel Tracker — SQLite Store.

Async SQLite persistence for the subscription map using aiosqlite.
One row per tracking code; subscribers and events are JSON columns.
A save replaces the whole table inside one transaction, so readers
never see a half-written map.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite

from src.tracking.errors import PersistenceError
from src.tracking.models import SubscriptionRecord
from src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Schema Definitions ────────────────────────────────────
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    tracking_code   TEXT    PRIMARY KEY,
    subscribers     TEXT    NOT NULL DEFAULT '[]',
    last_status     TEXT,
    last_events     TEXT    NOT NULL DEFAULT '[]',
    is_terminal     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL,
    last_checked_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_terminal ON subscriptions(is_terminal);
"""

_INSERT_SQL = """
INSERT INTO subscriptions (
    tracking_code, subscribers, last_status, last_events,
    is_terminal, created_at, last_checked_at
) VALUES (
    :tracking_code, :subscribers, :last_status, :last_events,
    :is_terminal, :created_at, :last_checked_at
)
"""


def _to_db_dict(code: str, record: SubscriptionRecord) -> dict[str, Any]:
    data = record.to_dict()
    return {
        "tracking_code": code,
        "subscribers": json.dumps(data["subscribers"]),
        "last_status": data["last_status"],
        "last_events": json.dumps(data["last_events"], ensure_ascii=False),
        "is_terminal": 1 if data["is_terminal"] else 0,
        "created_at": data["created_at"],
        "last_checked_at": data["last_checked_at"],
    }


def _from_db_row(row: dict[str, Any]) -> SubscriptionRecord:
    return SubscriptionRecord.from_dict(row["tracking_code"], {
        "subscribers": json.loads(row["subscribers"] or "[]"),
        "last_status": row["last_status"],
        "last_events": json.loads(row["last_events"] or "[]"),
        "is_terminal": bool(row["is_terminal"]),
        "created_at": row["created_at"],
        "last_checked_at": row["last_checked_at"],
    })


class SqliteStore:
    """SubscriptionStore backed by a SQLite database.

    Attributes:
        db_path: Resolved absolute path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).resolve()
        self._connection: aiosqlite.Connection | None = None
        logger.debug("SQLite store initialized with path: %s", self.db_path)

    async def initialize(self) -> None:
        """Open the connection, set pragmas and create the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Connecting to database: %s", self.db_path)
        self._connection = await aiosqlite.connect(str(self.db_path))
        await self._connection.execute("PRAGMA journal_mode=WAL")
        self._connection.row_factory = aiosqlite.Row
        await self._connection.executescript(SCHEMA_SQL)
        await self._connection.commit()

    async def get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.initialize()
        return self._connection  # type: ignore[return-value]

    async def load(self) -> dict[str, SubscriptionRecord]:
        """Read every row.

        Raises:
            PersistenceError: If the database cannot be opened or read.
        """
        try:
            conn = await self.get_connection()
            cursor = await conn.execute("SELECT * FROM subscriptions")
            rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Cannot read {self.db_path}: {e}") from e

        records = {}
        for row in rows:
            record = _from_db_row(dict(row))
            records[record.code] = record
        logger.debug("Loaded %d records from %s", len(records), self.db_path)
        return records

    async def save(self, records: dict[str, SubscriptionRecord]) -> None:
        """Replace the table contents with `records` in one transaction.

        Raises:
            PersistenceError: If the transaction fails (it is rolled back).
        """
        rows = [_to_db_dict(code, record) for code, record in records.items()]
        try:
            conn = await self.get_connection()
            try:
                await conn.execute("DELETE FROM subscriptions")
                await conn.executemany(_INSERT_SQL, rows)
                await conn.commit()
            except aiosqlite.Error:
                await conn.rollback()
                raise
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Cannot write {self.db_path}: {e}") from e
        logger.debug("Saved %d records to %s", len(rows), self.db_path)

    async def close(self) -> None:
        """Close the connection. Safe to call when never opened."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    async def __aenter__(self) -> "SqliteStore":
        await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
