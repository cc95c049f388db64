from __future__ import annotations

import pytest

from farmchat.services.storage import MemoryKeyValueStore

from ._fakes import NoticeRecorder


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def notices() -> NoticeRecorder:
    return NoticeRecorder()
