"""Data models for farmchat.

Every record converts to and from the camelCase JSON documents the web client
persists, so exported backups stay interchangeable with it.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal, cast

from farmchat.core.config.constants import DEFAULT_THREAD_TITLE, TITLE_MAX_CHARS

Role = Literal["user", "assistant"]
ROLES: tuple[Role, ...] = ("user", "assistant")


class _IdState:
    def __init__(self) -> None:
        self.last_ms = 0


_ID_STATE = _IdState()


def make_id(prefix: str) -> str:
    """Return a `<prefix>-<epoch ms>` id that is unique within the process.

    Two ids requested in the same millisecond get consecutive timestamps, so a
    thread created right after another one is deleted never reuses its id.
    """
    now_ms = int(time.time() * 1000)
    now_ms = max(now_ms, _ID_STATE.last_ms + 1)
    _ID_STATE.last_ms = now_ms
    return f"{prefix}-{now_ms}"


def make_image_id() -> str:
    """Return an attachment id with a random suffix."""
    return f"img-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a `Z` suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp, returning None for anything unusable."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# Message parts


@dataclass(frozen=True, slots=True)
class TextPart:
    """Plain text content."""

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True, slots=True)
class ImagePart:
    """Inline base64 image attached by the user."""

    image_data: str
    image_name: str
    image_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "image",
            "imageData": self.image_data,
            "imageName": self.image_name,
            "imageType": self.image_type,
        }


@dataclass(frozen=True, slots=True)
class ToolCallPart:
    """A tool invocation made by the backend agent."""

    tool_name: str
    tool_args: dict[str, Any]
    tool_call_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool-call",
            "toolName": self.tool_name,
            "toolArgs": self.tool_args,
            "toolCallId": self.tool_call_id,
        }


@dataclass(frozen=True, slots=True)
class ToolResultPart:
    """The value a tool invocation returned."""

    tool_result: Any
    tool_call_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool-result",
            "toolResult": self.tool_result,
            "toolCallId": self.tool_call_id,
        }


Part = TextPart | ImagePart | ToolCallPart | ToolResultPart


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        message = f"Field '{key}' must be a string"
        raise TypeError(message)
    return value


def part_from_dict(data: Mapping[str, Any]) -> Part:
    """Build a message part from its JSON shape."""
    part_type = data.get("type")
    match part_type:
        case "text":
            return TextPart(text=_require_str(data, "text"))
        case "image":
            return ImagePart(
                image_data=_require_str(data, "imageData"),
                image_name=str(data.get("imageName") or "image"),
                image_type=_require_str(data, "imageType"),
            )
        case "tool-call":
            args = data.get("toolArgs")
            return ToolCallPart(
                tool_name=_require_str(data, "toolName"),
                tool_args=dict(args) if isinstance(args, Mapping) else {},
                tool_call_id=_require_str(data, "toolCallId"),
            )
        case "tool-result":
            return ToolResultPart(
                tool_result=data.get("toolResult"),
                tool_call_id=_require_str(data, "toolCallId"),
            )
        case _:
            message = f"Unknown message part type: {part_type!r}"
            raise ValueError(message)


@dataclass(frozen=True, slots=True)
class Message:
    """One entry of a thread's append-only message log.

    `content` is always a flat text summary, used for history and context
    hashing, while `parts` keeps the richer structure.
    """

    id: str
    role: Role
    content: str
    parts: tuple[Part, ...] = ()

    @classmethod
    def from_text(
        cls,
        role: Role,
        text: str,
        *,
        message_id: str | None = None,
    ) -> Message:
        """Build a message holding a single text part."""
        return cls(
            id=message_id or make_id(role),
            role=role,
            content=text,
            parts=(TextPart(text=text),),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "parts": [part.to_dict() for part in self.parts],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        role = data.get("role")
        if role not in ROLES:
            message = f"Unsupported message role: {role!r}"
            raise ValueError(message)

        raw_parts = data.get("parts") or []
        if not isinstance(raw_parts, list):
            message = "Field 'parts' must be a list"
            raise TypeError(message)
        parts = tuple(part_from_dict(part) for part in raw_parts)

        content = data.get("content")
        if not isinstance(content, str):
            content = "".join(part.text for part in parts if isinstance(part, TextPart))

        return cls(
            id=str(data.get("id") or make_id(cast("str", role))),
            role=cast("Role", role),
            content=content,
            parts=parts,
        )


def derive_title(messages: Sequence[Message]) -> str:
    """Derive a thread title from its first message."""
    if not messages or not messages[0].content:
        return DEFAULT_THREAD_TITLE
    content = messages[0].content
    if len(content) > TITLE_MAX_CHARS:
        return content[:TITLE_MAX_CHARS] + "..."
    return content


@dataclass(slots=True)
class Thread:
    """One persisted conversation."""

    id: str
    title: str = DEFAULT_THREAD_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Thread:
        if not isinstance(data, Mapping):
            message = "Thread record must be an object"
            raise TypeError(message)
        thread_id = _require_str(data, "id")
        raw_messages = data.get("messages") or []
        if not isinstance(raw_messages, list):
            message = "Field 'messages' must be a list"
            raise TypeError(message)
        messages = [Message.from_dict(item) for item in raw_messages]
        title = data.get("title")
        now = utc_now_iso()
        return cls(
            id=thread_id,
            title=title if isinstance(title, str) else derive_title(messages),
            messages=messages,
            created_at=str(data.get("createdAt") or now),
            updated_at=str(data.get("updatedAt") or now),
        )


# Streaming


class ToolCallStatus(StrEnum):
    """Lifecycle of a tool call within a turn."""

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class ToolCall:
    """A tool call being assembled from the stream."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    status: ToolCallStatus = ToolCallStatus.PENDING


@dataclass(slots=True)
class StreamingState:
    """Live view of an in-flight turn."""

    current_step: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    final_response: str = ""

    @classmethod
    def initial(cls) -> StreamingState:
        return cls(current_step="Connecting...")

    def find_tool_call(self, tool_call_id: str) -> ToolCall | None:
        for tool_call in self.tool_calls:
            if tool_call.id == tool_call_id:
                return tool_call
        return None


# Attachments and context


@dataclass(frozen=True, slots=True)
class ImageAttachment:
    """An image staged for the next outgoing message."""

    id: str
    name: str
    data: str
    type: str
    size: int

    @property
    def data_uri(self) -> str:
        return f"data:{self.type};base64,{self.data}"

    def to_part(self) -> ImagePart:
        return ImagePart(
            image_data=self.data,
            image_name=self.name,
            image_type=self.type,
        )


_USER_CONTEXT_FIELDS = {
    "name": "name",
    "location": "location",
    "language": "language",
    "farmType": "farm_type",
    "experience": "experience",
    "mainCrops": "main_crops",
    "farmSize": "farm_size",
    "goals": "goals",
}


@dataclass(frozen=True, slots=True)
class UserContext:
    """Whitelisted farmer profile fields attached to chat requests."""

    name: str | None = None
    location: str | None = None
    language: str | None = None
    farm_type: str | None = None
    experience: str | None = None
    main_crops: str | None = None
    farm_size: str | None = None
    goals: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UserContext:
        values: dict[str, str] = {}
        for key, attr in _USER_CONTEXT_FIELDS.items():
            value = data.get(key)
            if isinstance(value, list):
                value = ", ".join(str(item) for item in value if item)
            if value not in (None, ""):
                values[attr] = str(value)
        return cls(**values)

    def to_payload(self) -> dict[str, str]:
        """Return only the populated fields, keyed the way the backend expects."""
        payload: dict[str, str] = {}
        for key, attr in _USER_CONTEXT_FIELDS.items():
            value = getattr(self, attr)
            if value:
                payload[key] = value
        return payload


# Suggestions


@dataclass(slots=True)
class SuggestionRecord:
    """Persisted suggestion slot."""

    queries: list[str]
    last_updated: str
    context_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queries": list(self.queries),
            "lastUpdated": self.last_updated,
            "contextHash": self.context_hash,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SuggestionRecord:
        queries = data.get("queries")
        if not isinstance(queries, list):
            message = "Field 'queries' must be a list"
            raise TypeError(message)
        context_hash = data.get("contextHash")
        return cls(
            queries=[query for query in queries if isinstance(query, str)],
            last_updated=str(data.get("lastUpdated") or ""),
            context_hash=context_hash if isinstance(context_hash, str) else None,
        )
