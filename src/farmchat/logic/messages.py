"""Active message list, turn status and streaming state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING

from farmchat.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from farmchat.core.models import StreamingState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from farmchat.core.models import Message

logger = logging.getLogger(__name__)


class ChatStatus(StrEnum):
    """Status of the active thread's turn."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    ERROR = "error"


BUSY_STATUSES = frozenset({ChatStatus.SUBMITTED, ChatStatus.STREAMING})

StatusObserver = Callable[[ChatStatus, ChatStatus], None]


class MessageStore:
    """Holds the active thread's messages and at most one in-flight turn."""

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._status = ChatStatus.IDLE
        self._observers: list[StatusObserver] = []
        self.streaming_state = StreamingState()

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def status(self) -> ChatStatus:
        return self._status

    @property
    def is_busy(self) -> bool:
        return self._status in BUSY_STATUSES

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Register a status observer; returns a function that removes it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    # Message list

    def append(self, message: Message) -> list[Message]:
        self._messages.append(message)
        return self.messages

    def replace(self, messages: Sequence[Message]) -> None:
        self._messages = list(messages)

    def clear(self) -> None:
        self._messages = []
        self.streaming_state = StreamingState()

    # Turn lifecycle

    def begin_turn(self) -> bool:
        """Claim the turn slot. Returns False if a turn is already in flight."""
        if self.is_busy:
            logger.debug("Rejecting send while status is %s", self._status)
            return False
        self.streaming_state = StreamingState.initial()
        self._set_status(ChatStatus.SUBMITTED)
        return True

    def mark_streaming(self) -> None:
        self._set_status(ChatStatus.STREAMING)

    def finish_turn(self) -> None:
        self._set_status(ChatStatus.IDLE)

    def fail_turn(self) -> None:
        self._set_status(ChatStatus.ERROR)

    def _set_status(self, status: ChatStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        logger.debug("Chat status %s -> %s", previous, status)
        for observer in list(self._observers):
            try:
                observer(previous, status)
            except COMMON_HANDLER_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="Status observer failed",
                    error=exc,
                    context={"from": str(previous), "to": str(status)},
                )
