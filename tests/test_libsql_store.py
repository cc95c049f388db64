from __future__ import annotations

import json
from pathlib import Path

import pytest

from farmchat.core.config.constants import THREADS_STORAGE_KEY
from farmchat.core.models import Message
from farmchat.logic.threads import ThreadStore
from farmchat.services.storage import delete_key, read_json, write_json

LibsqlKeyValueStore = pytest.importorskip(
    "farmchat.services.storage.libsql_store",
).LibsqlKeyValueStore


def test_values_survive_reopening(tmp_path: Path) -> None:
    db_path = str(tmp_path / "farmchat.db")
    store = LibsqlKeyValueStore(db_path)
    store.set("greeting", "namaste")
    store.set("greeting", "ନମସ୍କାର")
    store.close()

    reopened = LibsqlKeyValueStore(db_path)

    assert reopened.get("greeting") == "ନମସ୍କାର"
    reopened.delete("greeting")
    assert reopened.get("greeting") is None
    reopened.close()


def test_json_helpers_on_libsql(tmp_path: Path) -> None:
    store = LibsqlKeyValueStore(str(tmp_path / "farmchat.db"))

    assert write_json(store, "profile", {"mainCrops": ["rice"]})
    assert read_json(store, "profile") == {"mainCrops": ["rice"]}
    assert delete_key(store, "profile")
    assert read_json(store, "profile") is None
    store.close()


def test_thread_store_persists_through_libsql(tmp_path: Path) -> None:
    db_path = str(tmp_path / "farmchat.db")
    writer_store = LibsqlKeyValueStore(db_path)
    writer = ThreadStore(writer_store)
    writer.create_pending_thread()
    writer.update_current([Message.from_text("user", "When to sow paddy?")])
    writer_store.close()

    reader_store = LibsqlKeyValueStore(db_path)
    reader = ThreadStore(reader_store)

    assert reader.load() == 1
    assert reader.threads[0].title == "When to sow paddy?"
    raw = reader_store.get(THREADS_STORAGE_KEY)
    assert raw is not None
    assert json.loads(raw)[0]["messages"][0]["content"] == "When to sow paddy?"
    reader_store.close()
