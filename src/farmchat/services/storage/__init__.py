"""Durable storage service package."""

from __future__ import annotations

from farmchat.services.storage.core import (
    KeyValueStore,
    MemoryKeyValueStore,
    delete_key,
    read_json,
    write_json,
)


def init_store(local_db_path: str | None = None) -> KeyValueStore:
    """Open the store for a session.

    Without a path the store is in-memory; with one it is a libSQL database.
    """
    if local_db_path:
        from farmchat.services.storage.libsql_store import LibsqlKeyValueStore

        return LibsqlKeyValueStore(local_db_path)
    return MemoryKeyValueStore()


__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "delete_key",
    "init_store",
    "read_json",
    "write_json",
]
