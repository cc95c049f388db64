from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
import pytest

from farmchat.core.models import (
    Message,
    StreamingState,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UserContext,
)
from farmchat.logic.chat import ChatOrchestrator, build_request_body
from farmchat.logic.images import ImageStagingArea
from farmchat.logic.messages import ChatStatus, MessageStore
from farmchat.logic.stream import StreamEvent, UpdateCallback
from farmchat.logic.threads import ThreadStore
from farmchat.services.storage import MemoryKeyValueStore

from ._fakes import (
    ChunkStream,
    NoticeRecorder,
    RecordingHandler,
    mock_client,
    stream_lines,
)

CHAT_URL = "https://chat.test/api/chat"
WEATHER_QUESTION = "What is the weather in Mumbai today?"
WEATHER_STREAM = stream_lines(
    'b:{"toolCallId":"1","toolName":"weatherTool"}',
    '9:{"toolCallId":"1","args":{"location":"Mumbai"}}',
    'a:{"toolCallId":"1","result":{"temp":30}}',
    '0:"It is 30°C in Mumbai."',
    'd:{"finishReason":"stop"}',
)


@dataclass(slots=True)
class ChatHarness:
    orchestrator: ChatOrchestrator
    messages: MessageStore
    threads: ThreadStore
    images: ImageStagingArea


def _harness(
    client: httpx.AsyncClient,
    store: MemoryKeyValueStore,
    *,
    user_context: UserContext | None = None,
    on_stream_update: UpdateCallback | None = None,
) -> ChatHarness:
    messages = MessageStore()
    threads = ThreadStore(store)
    images = ImageStagingArea(notify=NoticeRecorder())
    orchestrator = ChatOrchestrator(
        messages,
        threads,
        images,
        client=client,
        chat_url=CHAT_URL,
        user_context_provider=lambda: user_context,
        on_stream_update=on_stream_update,
    )
    return ChatHarness(orchestrator, messages, threads, images)


def _streaming(
    *chunks: bytes,
    error_after: Exception | None = None,
) -> RecordingHandler:
    return RecordingHandler(
        lambda _request: httpx.Response(
            200,
            stream=ChunkStream(chunks, error_after=error_after),
        ),
    )


@pytest.mark.asyncio
async def test_weather_turn_end_to_end(store: MemoryKeyValueStore) -> None:
    handler = _streaming(WEATHER_STREAM[:40], WEATHER_STREAM[40:])
    async with mock_client(handler) as client:
        chat = _harness(client, store)
        chat.threads.create_pending_thread()

        assistant = await chat.orchestrator.send_message(WEATHER_QUESTION)

    assert assistant is not None
    assert assistant.parts == (
        ToolCallPart(
            tool_name="weatherTool",
            tool_args={"location": "Mumbai"},
            tool_call_id="1",
        ),
        ToolResultPart(tool_result={"temp": 30}, tool_call_id="1"),
        TextPart(text="It is 30°C in Mumbai."),
    )
    assert chat.messages.status is ChatStatus.IDLE
    user, stored_assistant = chat.messages.messages
    assert user.parts == (TextPart(text=WEATHER_QUESTION),)
    assert stored_assistant == assistant
    assert handler.bodies() == [
        {"messages": [{"role": "user", "content": WEATHER_QUESTION}]},
    ]
    (thread,) = chat.threads.threads
    assert thread.title == WEATHER_QUESTION
    assert len(thread.messages) == 2


@pytest.mark.asyncio
async def test_http_error_appends_error_message(store: MemoryKeyValueStore) -> None:
    handler = RecordingHandler(lambda _request: httpx.Response(500, text="boom"))
    async with mock_client(handler) as client:
        chat = _harness(client, store)

        result = await chat.orchestrator.send_message("hello")

    assert result is not None
    assert result.content == "Error: HTTP error! status: 500"
    assert result.id.startswith("error-")
    assert chat.messages.status is ChatStatus.ERROR
    assert [message.role for message in chat.messages.messages] == ["user", "assistant"]
    assert len(chat.threads.threads[0].messages) == 2


@pytest.mark.asyncio
async def test_network_error_is_reported_not_raised(store: MemoryKeyValueStore) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(RecordingHandler(_refuse)) as client:
        chat = _harness(client, store)

        result = await chat.orchestrator.send_message("hello")

    assert result is not None
    assert result.content == "Error: connection refused"
    assert chat.messages.status is ChatStatus.ERROR


@pytest.mark.asyncio
async def test_mid_stream_failure_keeps_partial_answer(
    store: MemoryKeyValueStore,
) -> None:
    handler = _streaming(
        stream_lines('0:"Irrigate early "', '0:"in the morning"'),
        error_after=httpx.ReadError("connection reset"),
    )
    async with mock_client(handler) as client:
        chat = _harness(client, store)

        partial = await chat.orchestrator.send_message("When should I water?")

    assert partial is not None
    assert partial.content == "Irrigate early in the morning"
    assert chat.messages.status is ChatStatus.ERROR
    assert chat.messages.messages[-1] == partial
    assert chat.threads.threads[0].messages[-1] == partial


@pytest.mark.asyncio
async def test_failure_before_any_content_reports_error(
    store: MemoryKeyValueStore,
) -> None:
    handler = _streaming(
        stream_lines('f:{"messageId":"msg-1"}'),
        error_after=httpx.ReadError("connection reset"),
    )
    async with mock_client(handler) as client:
        chat = _harness(client, store)

        result = await chat.orchestrator.send_message("Will it rain?")

    assert result is not None
    assert result.content == "Error: connection reset"
    assert chat.messages.status is ChatStatus.ERROR
    assert [message.role for message in chat.messages.messages] == ["user", "assistant"]
    assert chat.threads.threads[0].messages[-1] == result


@pytest.mark.asyncio
async def test_empty_send_is_ignored(store: MemoryKeyValueStore) -> None:
    handler = _streaming(WEATHER_STREAM)
    async with mock_client(handler) as client:
        chat = _harness(client, store)

        assert await chat.orchestrator.send_message("   ") is None

    assert handler.requests == []
    assert chat.messages.status is ChatStatus.IDLE


@pytest.mark.asyncio
async def test_image_only_message_and_user_context(store: MemoryKeyValueStore) -> None:
    handler = _streaming(stream_lines('0:"Looks like leaf blight."'))
    async with mock_client(handler) as client:
        chat = _harness(
            client,
            store,
            user_context=UserContext(name="Asha", main_crops="tomato"),
        )
        chat.images.add("leaf.jpg", b"jpeg-bytes", "image/jpeg")

        await chat.orchestrator.send_message("")

    user = chat.messages.messages[0]
    assert user.content == "Image message"
    assert len(chat.images) == 0
    (body,) = handler.bodies()
    assert body["userContext"] == {"name": "Asha", "mainCrops": "tomato"}
    (image_item,) = body["messages"][0]["content"]
    assert image_item["type"] == "image"
    assert image_item["image"].startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_blank_text_with_image_counts_as_image_only(
    store: MemoryKeyValueStore,
) -> None:
    handler = _streaming(stream_lines('0:"Healthy leaf."'))
    async with mock_client(handler) as client:
        chat = _harness(client, store)
        chat.images.add("leaf.png", b"\x89PNG fake", "image/png")

        await chat.orchestrator.send_message("   ")

    user = chat.messages.messages[0]
    assert user.content == "Image message"
    assert chat.threads.threads[0].title == "Image message"


@pytest.mark.asyncio
async def test_only_one_turn_in_flight(store: MemoryKeyValueStore) -> None:
    gate = asyncio.Event()
    requests: list[httpx.Request] = []

    async def _slow(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        await gate.wait()
        return httpx.Response(200, stream=ChunkStream([stream_lines('0:"ok"')]))

    async with httpx.AsyncClient(transport=httpx.MockTransport(_slow)) as client:
        chat = _harness(client, store)
        first = asyncio.create_task(chat.orchestrator.send_message("first"))
        while not requests:
            await asyncio.sleep(0)

        second = await chat.orchestrator.send_message("second")
        gate.set()
        await first

    assert second is None
    assert len(requests) == 1
    assert [message.content for message in chat.messages.messages] == ["first", "ok"]


class GatedStream(httpx.AsyncByteStream):
    """Sends the first chunk, then holds the rest until released."""

    def __init__(self, first: bytes, rest: bytes, release: asyncio.Event) -> None:
        self._first = first
        self._rest = rest
        self._release = release

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self._first
        await self._release.wait()
        yield self._rest


@pytest.mark.asyncio
async def test_send_is_rejected_while_streaming(store: MemoryKeyValueStore) -> None:
    release = asyncio.Event()
    first_event = asyncio.Event()
    handler = RecordingHandler(
        lambda _request: httpx.Response(
            200,
            stream=GatedStream(
                stream_lines('0:"Sow after "'),
                stream_lines('0:"the first rain."'),
                release,
            ),
        ),
    )

    def _on_update(_state: StreamingState, _event: StreamEvent) -> None:
        first_event.set()

    async with mock_client(handler) as client:
        chat = _harness(client, store, on_stream_update=_on_update)
        first = asyncio.create_task(chat.orchestrator.send_message("When to sow?"))
        await first_event.wait()
        assert chat.messages.status is ChatStatus.STREAMING

        second = await chat.orchestrator.send_message("And the fertilizer?")
        release.set()
        answer = await first

    assert second is None
    assert len(handler.requests) == 1
    assert answer is not None
    assert [message.content for message in chat.messages.messages] == [
        "When to sow?",
        "Sow after the first rain.",
    ]


@pytest.mark.asyncio
async def test_switching_threads_mid_turn_saves_to_origin(
    store: MemoryKeyValueStore,
) -> None:
    other_messages = [Message.from_text("user", "older chat")]
    switched: list[str] = []
    chat: ChatHarness | None = None

    def _switch_once(_state: StreamingState, _event: StreamEvent) -> None:
        assert chat is not None
        if not switched:
            switched.append("done")
            chat.threads.switch_to(other.id)
            chat.messages.replace(other.messages)

    handler = _streaming(WEATHER_STREAM)
    async with mock_client(handler) as client:
        chat = _harness(client, store, on_stream_update=_switch_once)
        chat.threads.create_pending_thread()
        other = chat.threads.update_current(other_messages)
        assert other is not None
        origin_id = chat.threads.create_pending_thread()

        await chat.orchestrator.send_message(WEATHER_QUESTION)

    origin = chat.threads.get(origin_id)
    assert origin is not None
    assert [message.role for message in origin.messages] == ["user", "assistant"]
    assert chat.threads.current_thread_id == other.id
    assert chat.messages.messages == other_messages


@pytest.mark.asyncio
async def test_deleting_thread_mid_turn_drops_result(
    store: MemoryKeyValueStore,
) -> None:
    chat: ChatHarness | None = None

    def _delete(_state: StreamingState, _event: StreamEvent) -> None:
        assert chat is not None
        current = chat.threads.current_thread_id
        if current is not None and chat.threads.get(current) is not None:
            chat.threads.delete_thread(current)

    handler = _streaming(WEATHER_STREAM)
    async with mock_client(handler) as client:
        chat = _harness(client, store, on_stream_update=_delete)
        thread_id = chat.threads.create_pending_thread()

        await chat.orchestrator.send_message(WEATHER_QUESTION)

    assert chat.threads.get(thread_id) is None
    assert chat.threads.threads == []


def test_request_body_collapses_single_text_part() -> None:
    history = [
        Message.from_text("user", "hi"),
        Message.from_text("assistant", "hello"),
    ]

    body = build_request_body(history, UserContext())

    assert body == {
        "messages": [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ],
    }
