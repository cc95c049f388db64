"""Decoder for the chat backend's line-tagged token stream.

The backend answers with a chunked text body in which every complete line is
`<tag>:<json payload>`. Each tag maps to one event type below; events are
folded, in arrival order, into a `StreamingState` that the UI renders live and
that becomes the assistant message when the turn ends.

    f:{"messageId": ...}                      step started
    b:{"toolCallId": ..., "toolName": ...}    tool call started
    c:{"toolCallId": ..., "argsTextDelta": ...}
    9:{"toolCallId": ..., "args": {...}}      tool call arguments complete
    a:{"toolCallId": ..., "result": ...}      tool result
    0:"text"                                  text token
    e:{"finishReason": ...}                   step finished
    d:{"finishReason": ...}                   turn finished
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from typing import Any, assert_never

from farmchat.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from farmchat.core.exceptions import StreamDecodeError
from farmchat.core.models import (
    Message,
    Part,
    StreamingState,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolCallStatus,
    ToolResultPart,
    make_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepStarted:
    message_id: str


@dataclass(frozen=True, slots=True)
class ToolCallStarted:
    tool_call_id: str
    tool_name: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    tool_call_id: str
    args_text_delta: str


@dataclass(frozen=True, slots=True)
class ToolCallReady:
    tool_call_id: str
    args: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolResultReceived:
    tool_call_id: str
    result: Any


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class StepFinished:
    finish_reason: str


@dataclass(frozen=True, slots=True)
class TurnFinished:
    finish_reason: str


StreamEvent = (
    StepStarted
    | ToolCallStarted
    | ToolCallDelta
    | ToolCallReady
    | ToolResultReceived
    | TextDelta
    | StepFinished
    | TurnFinished
)

UpdateCallback = Callable[[StreamingState, StreamEvent], None]


def _str_field(payload: object, key: str) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    value = payload.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def _decode_step_started(payload: object) -> StreamEvent | None:
    message_id = _str_field(payload, "messageId")
    return StepStarted(message_id) if message_id else None


def _decode_tool_call_started(payload: object) -> StreamEvent | None:
    tool_call_id = _str_field(payload, "toolCallId")
    tool_name = _str_field(payload, "toolName")
    if tool_call_id is None or tool_name is None:
        return None
    return ToolCallStarted(tool_call_id, tool_name)


def _decode_tool_call_delta(payload: object) -> StreamEvent | None:
    tool_call_id = _str_field(payload, "toolCallId")
    delta = _str_field(payload, "argsTextDelta")
    if tool_call_id is None or delta is None:
        return None
    return ToolCallDelta(tool_call_id, delta)


def _decode_tool_call_ready(payload: object) -> StreamEvent | None:
    tool_call_id = _str_field(payload, "toolCallId")
    if tool_call_id is None or not isinstance(payload, Mapping):
        return None
    args = payload.get("args")
    if not isinstance(args, Mapping):
        return None
    return ToolCallReady(tool_call_id, dict(args))


def _decode_tool_result(payload: object) -> StreamEvent | None:
    tool_call_id = _str_field(payload, "toolCallId")
    if tool_call_id is None or not isinstance(payload, Mapping):
        return None
    result = payload.get("result")
    if result is None:
        return None
    return ToolResultReceived(tool_call_id, result)


def _decode_text(payload: object) -> StreamEvent | None:
    return TextDelta(payload) if isinstance(payload, str) else None


def _decode_step_finished(payload: object) -> StreamEvent | None:
    reason = _str_field(payload, "finishReason")
    return StepFinished(reason) if reason else None


def _decode_turn_finished(payload: object) -> StreamEvent | None:
    reason = _str_field(payload, "finishReason")
    return TurnFinished(reason) if reason else None


_DECODERS: dict[str, Callable[[object], StreamEvent | None]] = {
    "f": _decode_step_started,
    "b": _decode_tool_call_started,
    "c": _decode_tool_call_delta,
    "9": _decode_tool_call_ready,
    "a": _decode_tool_result,
    "0": _decode_text,
    "e": _decode_step_finished,
    "d": _decode_turn_finished,
}


def decode_line(line: str) -> StreamEvent | None:
    """Decode one protocol line.

    Returns None for blank lines, unknown tags and payloads missing their
    required fields. Raises StreamDecodeError for lines that are not
    `<tag>:<json>` at all.
    """
    stripped = line.strip()
    if not stripped:
        return None

    tag, separator, body = stripped.partition(":")
    if not separator or not tag:
        raise StreamDecodeError(line, "missing tag")

    decoder = _DECODERS.get(tag)
    if decoder is None:
        logger.debug("Ignoring unknown stream tag %r", tag)
        return None

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise StreamDecodeError(line, "invalid JSON") from exc
    return decoder(payload)


def apply_event(state: StreamingState, event: StreamEvent) -> bool:
    """Fold one event into the streaming state.

    Returns False when the event referenced a tool call id that was never
    started; such events leave the state untouched.
    """
    match event:
        case StepStarted(message_id=message_id):
            state.current_step = f"Step: {message_id}"
        case ToolCallStarted(tool_call_id=tool_call_id, tool_name=tool_name):
            state.tool_calls.append(ToolCall(id=tool_call_id, name=tool_name))
            state.current_step = f"Calling tool: {tool_name}"
        case ToolCallDelta(tool_call_id=tool_call_id):
            tool_call = state.find_tool_call(tool_call_id)
            if tool_call is None:
                return False
            state.current_step = f"Building arguments for {tool_call.name}..."
        case ToolCallReady(tool_call_id=tool_call_id, args=args):
            tool_call = state.find_tool_call(tool_call_id)
            if tool_call is None:
                return False
            tool_call.args = dict(args)
            state.current_step = f"Executing {tool_call.name}..."
        case ToolResultReceived(tool_call_id=tool_call_id, result=result):
            tool_call = state.find_tool_call(tool_call_id)
            if tool_call is None:
                return False
            tool_call.result = result
            tool_call.status = ToolCallStatus.COMPLETED
            state.current_step = f"{tool_call.name} completed"
        case TextDelta(text=text):
            state.final_response += text
            state.current_step = "Generating response..."
        case StepFinished(finish_reason=finish_reason):
            state.current_step = f"Step finished: {finish_reason}"
        case TurnFinished():
            state.current_step = "Complete!"
        case _:
            assert_never(event)
    return True


class LineBuffer:
    """Reassembles lines split across network reads."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> list[str]:
        rest, self._pending = self._pending, ""
        return [rest] if rest.strip() else []


class StreamParser:
    """Incrementally applies a tagged token stream to a StreamingState."""

    def __init__(
        self,
        state: StreamingState | None = None,
        *,
        on_update: UpdateCallback | None = None,
    ) -> None:
        self.state = state if state is not None else StreamingState.initial()
        self._on_update = on_update
        self._buffer = LineBuffer()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.finished = False
        self.finish_reason: str | None = None
        self.events_applied = 0
        self.skipped_lines = 0

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        """Consume one network read; returns the events it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        return self._process(self._buffer.feed(text))

    def close(self) -> list[StreamEvent]:
        """Flush the trailing unterminated line at end of stream."""
        tail = self._decoder.decode(b"", final=True)
        lines = self._buffer.feed(tail) if tail else []
        lines.extend(self._buffer.flush())
        return self._process(lines)

    async def consume(
        self,
        chunks: AsyncIterator[str] | AsyncIterator[bytes],
    ) -> StreamingState:
        """Drive the parser over an async chunk iterator.

        Transport errors propagate to the caller after the buffered tail has
        been applied, so partial progress is never lost.
        """
        try:
            async for chunk in chunks:
                self.feed(chunk)
        finally:
            self.close()
        return self.state

    def _process(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            try:
                event = decode_line(line)
            except StreamDecodeError as exc:
                self.skipped_lines += 1
                logger.warning("Skipping stream line: %s", exc)
                continue
            if event is None:
                continue

            if not apply_event(self.state, event):
                logger.debug("Ignoring %s for unknown tool call", type(event).__name__)
                continue
            if isinstance(event, TurnFinished):
                self.finished = True
                self.finish_reason = event.finish_reason

            self.events_applied += 1
            events.append(event)
            self._notify(event)
        return events

    def _notify(self, event: StreamEvent) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self.state, event)
        except COMMON_HANDLER_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Streaming update callback failed",
                error=exc,
                context={"event": type(event).__name__},
            )


def build_assistant_message(
    state: StreamingState,
    message_id: str | None = None,
) -> Message | None:
    """Fold accumulated streaming state into the final assistant message.

    Used for both completed and aborted turns. Tool calls (each followed by
    its result, when one arrived) come first, then the text. Returns None when
    the turn produced neither text nor tool calls.
    """
    has_text = bool(state.final_response.strip())
    if not has_text and not state.tool_calls:
        return None

    parts: list[Part] = []
    for tool_call in state.tool_calls:
        parts.append(
            ToolCallPart(
                tool_name=tool_call.name,
                tool_args=dict(tool_call.args),
                tool_call_id=tool_call.id,
            ),
        )
        if tool_call.result is not None:
            parts.append(
                ToolResultPart(tool_result=tool_call.result, tool_call_id=tool_call.id),
            )
    if has_text:
        parts.append(TextPart(text=state.final_response))

    return Message(
        id=message_id or make_id("assistant"),
        role="assistant",
        content=state.final_response,
        parts=tuple(parts),
    )
