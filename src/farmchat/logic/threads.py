"""Conversation thread collection with lazy materialization.

A new chat only gets an id at first. The thread joins the persisted collection
when it receives its first message, so abandoned "new chat" clicks never leave
empty conversations behind.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from farmchat.core.config.constants import EXPORT_FILENAME_PREFIX, THREADS_STORAGE_KEY
from farmchat.core.error_handling import default_notify, log_exception, safe_notify
from farmchat.core.exceptions import ThreadImportError
from farmchat.core.models import Thread, derive_title, make_id, parse_iso, utc_now_iso
from farmchat.services.storage import delete_key, read_json, write_json

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from farmchat.core.models import Message
    from farmchat.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=UTC)


class ThreadState(StrEnum):
    """Where the current-thread pointer stands."""

    NO_THREAD = "no-thread"
    PENDING = "pending"
    MATERIALIZED = "materialized"


@dataclass(frozen=True, slots=True)
class ThreadExport:
    """A downloadable backup of every thread."""

    filename: str
    content: str


def _updated_at_key(thread: Thread) -> datetime:
    return parse_iso(thread.updated_at) or _OLDEST


def _parse_import(payload: str | bytes) -> list[Thread]:
    try:
        decoded = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ThreadImportError(str(exc)) from exc

    if not isinstance(decoded, list):
        detail = f"expected an array of threads, got {type(decoded).__name__}"
        raise ThreadImportError(detail)

    threads: list[Thread] = []
    for index, item in enumerate(decoded):
        try:
            threads.append(Thread.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            detail = f"thread #{index}: {exc}"
            raise ThreadImportError(detail) from exc
    return threads


class ThreadStore:
    """Owns the thread collection and the current-thread pointer."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        notify: Callable[[str], None] = default_notify,
        storage_key: str = THREADS_STORAGE_KEY,
    ) -> None:
        self._store = store
        self._notify = notify
        self._storage_key = storage_key
        self._threads: list[Thread] = []
        self._current_id: str | None = None
        self.is_pending_new_thread = False

    # Queries

    @property
    def threads(self) -> list[Thread]:
        return list(self._threads)

    @property
    def current_thread_id(self) -> str | None:
        return self._current_id

    @property
    def state(self) -> ThreadState:
        if not self._current_id:
            return ThreadState.NO_THREAD
        if self.get(self._current_id) is None:
            return ThreadState.PENDING
        return ThreadState.MATERIALIZED

    def get(self, thread_id: str) -> Thread | None:
        for thread in self._threads:
            if thread.id == thread_id:
                return thread
        return None

    def current_thread(self) -> Thread | None:
        if not self._current_id:
            return None
        return self.get(self._current_id)

    # Lifecycle

    def load(self) -> int:
        """Load persisted threads. The current pointer always starts empty."""
        data = read_json(self._store, self._storage_key)
        if data is None:
            return 0
        if not isinstance(data, list):
            logger.warning(
                "Ignoring stored threads: expected a list, got %s",
                type(data).__name__,
            )
            return 0

        loaded: list[Thread] = []
        for item in data:
            try:
                loaded.append(Thread.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                log_exception(
                    logger=logger,
                    message="Skipping unreadable stored thread",
                    error=exc,
                )
        self._threads = loaded
        self._current_id = None
        logger.info("Loaded %d chat threads", len(loaded))
        return len(loaded)

    def create_pending_thread(self) -> str:
        """Start a new chat without adding it to the collection."""
        thread_id = make_id("thread")
        self._current_id = thread_id
        self.is_pending_new_thread = False
        logger.debug("Created pending thread %s", thread_id)
        return thread_id

    def materialize(self, thread_id: str, messages: Sequence[Message]) -> Thread | None:
        """Upsert a thread with its messages and persist the collection.

        Threads without messages are never stored.
        """
        if not messages:
            return None

        now = utc_now_iso()
        existing = self.get(thread_id)
        thread = Thread(
            id=thread_id,
            title=derive_title(messages),
            messages=list(messages),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing is None:
            self._threads.insert(0, thread)
            logger.info("Materialized thread %s", thread_id)
        else:
            index = self._threads.index(existing)
            self._threads[index] = thread

        self._persist()
        return thread

    def update_current(self, messages: Sequence[Message]) -> Thread | None:
        """Write messages to the current thread, creating one when needed."""
        if not messages:
            return None
        thread_id = self._current_id or self.create_pending_thread()
        return self.materialize(thread_id, messages)

    def switch_to(self, thread_id: str) -> Thread | None:
        thread = self.get(thread_id)
        if thread is None:
            logger.debug("Ignoring switch to unknown thread %s", thread_id)
            return None
        self._current_id = thread_id
        self.is_pending_new_thread = False
        return thread

    def delete_thread(self, thread_id: str) -> Thread | None:
        """Delete a thread and, if it was current, pick its replacement.

        Returns the new current thread, or None when nothing replaces it.
        """
        self._threads = [thread for thread in self._threads if thread.id != thread_id]
        self._persist()

        if thread_id != self._current_id:
            return None

        if self._threads:
            replacement = max(self._threads, key=_updated_at_key)
            self._current_id = replacement.id
            self.is_pending_new_thread = False
            return replacement

        self._current_id = None
        self.is_pending_new_thread = True
        return None

    def clear_current(self) -> None:
        """Detach from the current thread without deleting it."""
        self._current_id = None
        self.is_pending_new_thread = False

    # Backup

    def export_all(self, today: date | None = None) -> ThreadExport:
        day = today or datetime.now(UTC).date()
        content = json.dumps(
            [thread.to_dict() for thread in self._threads],
            indent=2,
            ensure_ascii=False,
        )
        return ThreadExport(
            filename=f"{EXPORT_FILENAME_PREFIX}-{day.isoformat()}.json",
            content=content,
        )

    def import_merge(self, payload: str | bytes) -> int | None:
        """Prepend threads from a backup.

        Returns the number of imported threads, or None when the payload was
        rejected; the user is notified and the collection is left unchanged.
        """
        try:
            imported = _parse_import(payload)
        except ThreadImportError as exc:
            log_exception(
                logger=logger,
                message="Error importing chat threads",
                error=exc,
                context={"detail": exc.detail},
            )
            safe_notify(self._notify, str(exc))
            return None

        self._threads = [*imported, *self._threads]
        self._persist()
        logger.info("Imported %d chat threads", len(imported))
        return len(imported)

    # Persistence

    def _persist(self) -> bool:
        with_messages = [
            thread.to_dict() for thread in self._threads if thread.messages
        ]
        if not with_messages:
            return delete_key(self._store, self._storage_key)
        return write_json(self._store, self._storage_key, with_messages)
