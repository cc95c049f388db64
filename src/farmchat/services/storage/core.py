"""Key-value store abstraction used for durable client state."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from farmchat.core.error_handling import log_exception

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (OSError, RuntimeError, ValueError, TypeError)


class KeyValueStore(Protocol):
    """Protocol for a transactional string key-value store."""

    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """In-process store, used for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data


def read_json(store: KeyValueStore, key: str) -> Any:
    """Read and decode a JSON document, returning None when absent or corrupt."""
    try:
        raw = store.get(key)
    except STORAGE_ERRORS as exc:
        log_exception(
            logger=logger,
            message="Failed to read from store",
            error=exc,
            context={"key": key},
        )
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        log_exception(
            logger=logger,
            message="Discarding corrupt stored document",
            error=exc,
            context={"key": key, "length": len(raw)},
        )
        return None


def write_json(store: KeyValueStore, key: str, value: Any) -> bool:
    """Encode and write a JSON document; failures are logged, not raised."""
    try:
        store.set(key, json.dumps(value, ensure_ascii=False))
    except STORAGE_ERRORS as exc:
        log_exception(
            logger=logger,
            message="Failed to write to store",
            error=exc,
            context={"key": key},
        )
        return False
    return True


def delete_key(store: KeyValueStore, key: str) -> bool:
    """Delete a key; failures are logged, not raised."""
    try:
        store.delete(key)
    except STORAGE_ERRORS as exc:
        log_exception(
            logger=logger,
            message="Failed to delete from store",
            error=exc,
            context={"key": key},
        )
        return False
    return True
