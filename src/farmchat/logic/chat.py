"""Chat turn orchestration: request building, streaming and finalization."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import httpx

from farmchat.core.config.constants import IMAGE_ONLY_CONTENT, USER_PROFILE_STORAGE_KEY
from farmchat.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from farmchat.core.exceptions import ChatRequestError
from farmchat.core.models import (
    ImageAttachment,
    ImagePart,
    Message,
    Part,
    TextPart,
    UserContext,
    make_id,
)
from farmchat.logic.stream import StreamParser, UpdateCallback, build_assistant_message
from farmchat.services.storage import read_json

if TYPE_CHECKING:
    from farmchat.logic.images import ImageStagingArea
    from farmchat.logic.messages import MessageStore
    from farmchat.logic.threads import ThreadStore
    from farmchat.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

STREAM_ERRORS = (httpx.HTTPError, httpx.StreamError, OSError)
UserContextProvider = Callable[[], UserContext | None]


def load_user_context(store: KeyValueStore) -> UserContext | None:
    """Read the saved farmer profile; absent or unreadable profiles are skipped."""
    data = read_json(store, USER_PROFILE_STORAGE_KEY)
    if not isinstance(data, dict):
        return None
    return UserContext.from_dict(data)


def build_user_message(text: str, images: Sequence[ImageAttachment]) -> Message:
    parts: list[Part] = []
    if text.strip():
        parts.append(TextPart(text=text))
    parts.extend(image.to_part() for image in images)
    return Message(
        id=make_id("user"),
        role="user",
        content=text if text.strip() else IMAGE_ONLY_CONTENT,
        parts=tuple(parts),
    )


def to_request_message(message: Message) -> dict[str, Any]:
    """Map a message to the provider-neutral role/content shape.

    User messages carrying a single text part collapse to a bare string;
    images travel as data URIs.
    """
    if message.role != "user":
        return {"role": message.role, "content": message.content}

    content: list[dict[str, str]] = []
    for part in message.parts:
        if isinstance(part, TextPart) and part.text:
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart) and part.image_data and part.image_type:
            content.append(
                {
                    "type": "image",
                    "image": f"data:{part.image_type};base64,{part.image_data}",
                },
            )

    if not content:
        return {"role": "user", "content": message.content}
    if len(content) == 1 and content[0]["type"] == "text":
        return {"role": "user", "content": content[0]["text"]}
    return {"role": "user", "content": content}


def build_request_body(
    messages: Sequence[Message],
    user_context: UserContext | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "messages": [to_request_message(message) for message in messages],
    }
    if user_context is not None:
        payload = user_context.to_payload()
        if payload:
            body["userContext"] = payload
    return body


def error_message(reason: str) -> Message:
    return Message.from_text(
        "assistant",
        f"Error: {reason}",
        message_id=make_id("error"),
    )


class ChatOrchestrator:
    """Runs one user turn against the streaming chat backend."""

    def __init__(
        self,
        messages: MessageStore,
        threads: ThreadStore,
        images: ImageStagingArea,
        *,
        client: httpx.AsyncClient,
        chat_url: str,
        user_context_provider: UserContextProvider | None = None,
        on_stream_update: UpdateCallback | None = None,
    ) -> None:
        self._messages = messages
        self._threads = threads
        self._images = images
        self._client = client
        self._chat_url = chat_url
        self._user_context_provider = user_context_provider
        self._on_stream_update = on_stream_update

    async def send_message(
        self,
        text: str,
        images: Sequence[ImageAttachment] | None = None,
    ) -> Message | None:
        """Send a user turn and stream the answer into the stores.

        Returns the assistant message (or the synthetic error message) that
        closed the turn, or None when the send was rejected. Never raises for
        transport or protocol failures.
        """
        staged = tuple(images) if images is not None else self._images.snapshot()
        if not text.strip() and not staged:
            logger.debug("Ignoring empty send")
            return None
        if not self._messages.begin_turn():
            return None

        # Images are single-use; clearing before the network call keeps the
        # staged snapshot intact for this request.
        self._images.clear()

        thread_id = self._threads.current_thread_id
        if thread_id is None:
            thread_id = self._threads.create_pending_thread()
        user_message = build_user_message(text, staged)
        history = self._messages.append(user_message)
        self._threads.materialize(thread_id, history)

        try:
            return await self._run_turn(thread_id, history)
        except COMMON_HANDLER_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Unexpected chat turn failure",
                error=exc,
                context={"thread_id": thread_id},
            )
            self._messages.fail_turn()
            failure = error_message(str(exc) or type(exc).__name__)
            self._commit(thread_id, [*history, failure])
            return failure
        finally:
            if self._messages.is_busy:
                self._messages.fail_turn()

    async def _run_turn(self, thread_id: str, history: list[Message]) -> Message | None:
        body = build_request_body(history, self._user_context())
        parser = StreamParser(
            self._messages.streaming_state,
            on_update=self._on_stream_update,
        )
        logger.info(
            "Sending %d messages to chat backend (thread=%s)",
            len(history),
            thread_id,
        )

        try:
            async with self._client.stream(
                "POST",
                self._chat_url,
                json=body,
            ) as response:
                if not response.is_success:
                    raise ChatRequestError(status_code=response.status_code)
                self._messages.mark_streaming()
                await parser.consume(response.aiter_bytes())
        except ChatRequestError as exc:
            log_exception(
                logger=logger,
                message="Chat backend rejected the turn",
                error=exc,
                context={"status_code": exc.status_code, "thread_id": thread_id},
            )
            return self._fail(thread_id, history, str(exc))
        except STREAM_ERRORS as exc:
            log_exception(
                logger=logger,
                message="Chat stream failed",
                error=exc,
                context={
                    "events_applied": parser.events_applied,
                    "thread_id": thread_id,
                },
            )
            partial = build_assistant_message(parser.state)
            if partial is None:
                return self._fail(thread_id, history, str(exc) or type(exc).__name__)
            self._messages.fail_turn()
            self._commit(thread_id, [*history, partial])
            return partial

        assistant = build_assistant_message(parser.state)
        if assistant is None:
            logger.warning("Chat stream ended with no content (thread=%s)", thread_id)
        else:
            self._commit(thread_id, [*history, assistant])
        if not parser.finished:
            logger.debug("Chat stream closed without a finish marker")
        self._messages.finish_turn()
        return assistant

    def _fail(self, thread_id: str, history: list[Message], reason: str) -> Message:
        self._messages.fail_turn()
        failure = error_message(reason)
        self._commit(thread_id, [*history, failure])
        return failure

    def _commit(self, thread_id: str, messages: list[Message]) -> None:
        """Write a finished turn to the thread it was sent from."""
        if self._threads.current_thread_id == thread_id:
            self._messages.replace(messages)
            self._threads.materialize(thread_id, messages)
            return

        if self._threads.get(thread_id) is None:
            logger.info("Dropping turn result for deleted thread %s", thread_id)
            return
        logger.info("Thread changed during turn; saving result to %s", thread_id)
        self._threads.materialize(thread_id, messages)

    def _user_context(self) -> UserContext | None:
        if self._user_context_provider is None:
            return None
        try:
            return self._user_context_provider()
        except COMMON_HANDLER_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Unable to load user context for chat request",
                error=exc,
            )
            return None
