from __future__ import annotations

import pytest

from farmchat.core.models import Message
from farmchat.logic.messages import ChatStatus, MessageStore


def test_begin_turn_rejects_while_busy() -> None:
    store = MessageStore()

    assert store.begin_turn()
    assert store.status is ChatStatus.SUBMITTED
    assert not store.begin_turn()

    store.mark_streaming()
    assert not store.begin_turn()

    store.finish_turn()
    assert store.begin_turn()


def test_begin_turn_resets_streaming_state() -> None:
    store = MessageStore()
    store.streaming_state.final_response = "old"

    store.begin_turn()

    assert store.streaming_state.final_response == ""
    assert store.streaming_state.current_step == "Connecting..."


def test_error_status_allows_a_new_turn() -> None:
    store = MessageStore()
    store.begin_turn()
    store.fail_turn()

    assert store.status is ChatStatus.ERROR
    assert not store.is_busy
    assert store.begin_turn()


def test_observers_see_every_transition() -> None:
    store = MessageStore()
    seen: list[tuple[ChatStatus, ChatStatus]] = []
    unsubscribe = store.subscribe(lambda old, new: seen.append((old, new)))

    store.begin_turn()
    store.mark_streaming()
    store.finish_turn()
    unsubscribe()
    store.begin_turn()

    assert seen == [
        (ChatStatus.IDLE, ChatStatus.SUBMITTED),
        (ChatStatus.SUBMITTED, ChatStatus.STREAMING),
        (ChatStatus.STREAMING, ChatStatus.IDLE),
    ]


def test_failing_observer_is_logged_not_raised(
    caplog: pytest.LogCaptureFixture,
) -> None:
    store = MessageStore()

    def _boom(_old: ChatStatus, _new: ChatStatus) -> None:
        raise RuntimeError("observer exploded")

    store.subscribe(_boom)
    store.begin_turn()

    assert store.status is ChatStatus.SUBMITTED
    assert "Status observer failed" in caplog.text


def test_messages_are_returned_as_copies() -> None:
    store = MessageStore()
    first = Message.from_text("user", "hi")

    snapshot = store.append(first)
    snapshot.append(Message.from_text("assistant", "sneaky"))

    assert store.messages == [first]
    store.clear()
    assert store.messages == []
