"""libSQL-backed key-value store."""

from __future__ import annotations

import contextlib
import functools
import logging
from typing import TYPE_CHECKING, Any, Concatenate, ParamSpec, TypeVar, cast

import libsql as libsql_module

from farmchat.core.error_handling import log_exception

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)
libsql: Any = libsql_module
LibsqlConnection = Any

P = ParamSpec("P")
T = TypeVar("T")

LIBSQL_ERROR = cast(
    "type[BaseException]",
    getattr(libsql, "LibsqlError", getattr(libsql, "Error", Exception)),
)


def _with_reconnect(
    method: Callable[Concatenate[LibsqlKeyValueStore, P], T],
) -> Callable[Concatenate[LibsqlKeyValueStore, P], T]:
    """Reconnect once and retry when the connection has gone stale."""

    @functools.wraps(method)
    def wrapper(self: LibsqlKeyValueStore, *args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return method(self, *args, **kwargs)
        except (ValueError, LIBSQL_ERROR) as exc:
            logger.warning("libSQL error, reconnecting: %s", exc)
            self._reconnect()
            try:
                return method(self, *args, **kwargs)
            except (ValueError, LIBSQL_ERROR) as retry_exc:
                log_exception(
                    logger=logger,
                    message="libSQL operation failed after reconnect",
                    error=retry_exc,
                    context={"path": self.local_db_path},
                )
                raise

    return wrapper


class LibsqlKeyValueStore:
    """Key-value store on a local libSQL database file."""

    def __init__(self, local_db_path: str = "farmchat.db") -> None:
        """Open the database and make sure the table exists.

        Args:
            local_db_path: Path of the local database file (":memory:" works too)

        """
        self.local_db_path = local_db_path
        self._conn: LibsqlConnection | None = None
        self._init_db()

    def _get_connection(self) -> LibsqlConnection:
        if self._conn is None:
            self._conn = libsql.connect(self.local_db_path)
            logger.info("Opened local store at %s", self.local_db_path)
        return self._conn

    def _reconnect(self) -> None:
        if self._conn is not None:
            with contextlib.suppress(Exception):
                self._conn.close()
            self._conn = None
        self._get_connection()

    def _init_db(self) -> None:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()

    @_with_reconnect
    def get(self, key: str) -> str | None:
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = cursor.fetchone()
        return str(row[0]) if row else None

    @_with_reconnect
    def set(self, key: str, value: str) -> None:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            """INSERT INTO kv_store (key, value, updated_at)
               VALUES (?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = CURRENT_TIMESTAMP""",
            (key, value),
        )
        conn.commit()

    @_with_reconnect
    def delete(self, key: str) -> None:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        conn.commit()

    def close(self) -> None:
        if self._conn is not None:
            with contextlib.suppress(Exception):
                self._conn.close()
            self._conn = None
