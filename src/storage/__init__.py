"""Parcel Tracker — Subscription storage backends."""

from __future__ import annotations

from typing import Union

from src.config import StorageConfig
from src.storage.json_store import JsonFileStore
from src.storage.sqlite_store import SqliteStore

__all__ = ["JsonFileStore", "SqliteStore", "build_store"]


def build_store(config: StorageConfig) -> Union[JsonFileStore, SqliteStore]:
    """Create the store selected by `storage.backend`."""
    if config.backend == "sqlite":
        return SqliteStore(config.path)
    return JsonFileStore(config.path)
