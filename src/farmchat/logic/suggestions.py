"""Follow-up question suggestions with cooldown, dedupe and local fallback."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx

from farmchat.core.config.constants import (
    CONTEXT_HASH_WINDOW,
    MAX_CLIENT_SUGGESTIONS,
    MAX_PER_MESSAGE_CHARS,
    SUGGESTION_COOLDOWN_SECONDS,
    SUGGESTION_HISTORY_WINDOW,
    SUGGESTION_RETRIES,
    SUGGESTION_STALE_SECONDS,
    SUGGESTION_TIMEOUT_SECONDS,
    SUGGESTIONS_STORAGE_KEY,
)
from farmchat.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from farmchat.core.exceptions import SuggestionRequestError
from farmchat.core.models import SuggestionRecord, parse_iso, utc_now_iso
from farmchat.logic.heuristics import heuristic_for_messages, profile_queries
from farmchat.services.http import RetryOptions, request_with_retries
from farmchat.services.storage import delete_key, read_json, write_json

if TYPE_CHECKING:
    from farmchat.core.models import Message, UserContext
    from farmchat.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

_HASH_MASK = 0xFFFFFFFF

SUGGESTION_FAILURES = (httpx.HTTPError, *COMMON_HANDLER_EXCEPTIONS)


class GenerationPhase(StrEnum):
    IDLE = "idle"
    GENERATING = "generating"


class SkipReason(StrEnum):
    """Why a generation request did not reach the backend."""

    UNCHANGED = "unchanged"
    COOLDOWN = "cooldown"
    IN_FLIGHT = "in-flight"
    NO_ASSISTANT = "no-assistant"


@dataclass(slots=True)
class SuggestionState:
    queries: list[str] = field(default_factory=list)
    is_loading: bool = False
    error: str | None = None
    last_updated: str | None = None


def compute_context_hash(messages: Sequence[Message]) -> str:
    """Fingerprint the recent conversation.

    Rolling `h * 31 + unit` over UTF-16 code units, kept to 32 bits and
    rendered as hex, so hashes persisted by the web client still compare equal.
    """
    base = "|".join(
        f"{message.role}:{message.content}"
        for message in messages[-CONTEXT_HASH_WINDOW:]
    )
    encoded = base.encode("utf-16-le")
    value = 0
    for index in range(0, len(encoded), 2):
        unit = encoded[index] | (encoded[index + 1] << 8)
        value = (value * 31 + unit) & _HASH_MASK
    return format(value, "x")


def truncate_tail(text: str, limit: int = MAX_PER_MESSAGE_CHARS) -> str:
    """Keep the newest `limit` characters."""
    return text[-limit:] if len(text) > limit else text


def build_suggestion_payload(
    messages: Sequence[Message],
    location: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "messages": [
            {"role": message.role, "content": truncate_tail(message.content)}
            for message in messages[-SUGGESTION_HISTORY_WINDOW:]
        ],
    }
    if location:
        payload["locationContext"] = location
    return payload


def clean_queries(raw: Sequence[Any], limit: int = MAX_CLIENT_SUGGESTIONS) -> list[str]:
    """Trim, drop non-strings and blanks, dedupe in order, cap at `limit`."""
    cleaned = [item.strip() for item in raw if isinstance(item, str) and item.strip()]
    return list(dict.fromkeys(cleaned))[:limit]


def parse_suggestion_response(response: httpx.Response) -> list[str]:
    """Extract usable queries; raises SuggestionRequestError on any failure."""
    if not response.is_success:
        raise SuggestionRequestError(status_code=response.status_code)

    data = response.json()
    if not isinstance(data, dict):
        raise SuggestionRequestError
    queries = data.get("suggestedQueries")
    if data.get("success") is not True or not isinstance(queries, list):
        error = data.get("error")
        raise SuggestionRequestError(error if isinstance(error, str) else None)

    if data.get("fallback"):
        logger.info("Suggestion backend answered with its own fallback")
    return clean_queries(queries)


class SuggestionEngine:
    """Generates "what to ask next" suggestions for the active conversation.

    A single suggestion slot is shared across threads; switching threads keeps
    showing the last generated queries until the next generation.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        client: httpx.AsyncClient,
        url: str,
        cooldown_seconds: float = SUGGESTION_COOLDOWN_SECONDS,
        stale_after_seconds: float = SUGGESTION_STALE_SECONDS,
        timeout_seconds: float = SUGGESTION_TIMEOUT_SECONDS,
        retry: RetryOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
        location_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._url = url
        self._cooldown_seconds = cooldown_seconds
        self._stale_after_seconds = stale_after_seconds
        self._timeout_seconds = timeout_seconds
        self._retry = retry or RetryOptions(retries=SUGGESTION_RETRIES)
        self._clock = clock
        self._location_provider = location_provider

        self.state = SuggestionState()
        self.phase = GenerationPhase.IDLE
        self.last_skip: SkipReason | None = None
        self._last_call: float | None = None
        self._last_context_hash: str | None = None
        self._load()

    @property
    def queries(self) -> list[str]:
        return list(self.state.queries)

    def _load(self) -> None:
        data = read_json(self._store, SUGGESTIONS_STORAGE_KEY)
        if not isinstance(data, dict):
            return
        try:
            record = SuggestionRecord.from_dict(data)
        except TypeError as exc:
            log_exception(
                logger=logger,
                message="Ignoring unreadable stored suggestions",
                error=exc,
            )
            return
        self.state.queries = record.queries
        self.state.last_updated = record.last_updated or None
        self._last_context_hash = record.context_hash

    # Guards

    def _skip_reason(
        self,
        messages: Sequence[Message],
        context_hash: str,
        now: float,
        *,
        force: bool,
    ) -> SkipReason | None:
        match self.phase:
            case GenerationPhase.GENERATING:
                return SkipReason.IN_FLIGHT
            case GenerationPhase.IDLE:
                pass

        if force:
            return None
        if context_hash == self._last_context_hash:
            return SkipReason.UNCHANGED
        if self._within_cooldown(now):
            return SkipReason.COOLDOWN
        if not any(message.role == "assistant" for message in messages):
            return SkipReason.NO_ASSISTANT
        return None

    def _within_cooldown(self, now: float) -> bool:
        if self._last_call is None:
            return False
        return now - self._last_call < self._cooldown_seconds

    def should_regenerate(self, last_updated: str | None) -> bool:
        """Whether suggestions last refreshed at `last_updated` are worth redoing."""
        if not last_updated:
            return True
        if self._within_cooldown(self._clock()):
            return False
        updated = parse_iso(last_updated)
        if updated is None:
            return True
        age = (datetime.now(UTC) - updated).total_seconds()
        return age > self._stale_after_seconds

    # Generation

    async def maybe_generate(
        self,
        messages: Sequence[Message],
        thread_id: str | None = None,
        *,
        force: bool = False,
    ) -> SuggestionState:
        """Refresh suggestions for `messages` unless a guard says otherwise.

        Never raises: backend failures and empty answers resolve to the local
        keyword heuristic with `state.error` describing the failure.
        """
        if not messages:
            self.state.queries = []
            self.state.error = None
            return self.state

        now = self._clock()
        context_hash = compute_context_hash(messages)
        reason = self._skip_reason(messages, context_hash, now, force=force)
        self.last_skip = reason
        if reason is not None:
            logger.debug("Skipping suggestion generation: %s", reason)
            return self.state

        self.phase = GenerationPhase.GENERATING
        self._last_call = now
        self._last_context_hash = context_hash
        self.state.is_loading = True
        self.state.error = None
        logger.info("Generating suggested queries (thread=%s)", thread_id)

        try:
            queries, error = await self._generate(messages)
            self._publish(queries, context_hash, error=error)
        finally:
            self.phase = GenerationPhase.IDLE
            self.state.is_loading = False
        return self.state

    async def force_generate(
        self,
        messages: Sequence[Message],
        thread_id: str | None = None,
    ) -> SuggestionState:
        return await self.maybe_generate(messages, thread_id, force=True)

    async def refresh(
        self,
        messages: Sequence[Message],
        thread_id: str | None = None,
    ) -> SuggestionState:
        return await self.maybe_generate(messages, thread_id)

    async def _generate(
        self,
        messages: Sequence[Message],
    ) -> tuple[list[str], str | None]:
        pairs = [(message.role, message.content) for message in messages]
        payload = build_suggestion_payload(messages, self._location())
        try:
            queries = await self._request(payload)
        except SUGGESTION_FAILURES as exc:
            log_exception(
                logger=logger,
                message="Error generating suggested queries",
                error=exc,
                context={"url": self._url},
            )
            fallback = heuristic_for_messages(pairs, MAX_CLIENT_SUGGESTIONS)
            return fallback, str(exc) or type(exc).__name__

        if not queries:
            logger.warning("Suggestion backend returned no usable queries")
            return heuristic_for_messages(pairs, MAX_CLIENT_SUGGESTIONS), None
        return queries, None

    async def _request(self, payload: dict[str, Any]) -> list[str]:
        response = await request_with_retries(
            lambda: self._client.post(
                self._url,
                json=payload,
                timeout=self._timeout_seconds,
            ),
            options=self._retry,
            log_context="suggested queries",
        )
        return parse_suggestion_response(response)

    def _publish(
        self,
        queries: list[str],
        context_hash: str | None,
        *,
        error: str | None = None,
    ) -> None:
        now = utc_now_iso()
        self.state.queries = list(queries)
        self.state.error = error
        self.state.last_updated = now
        record = SuggestionRecord(
            queries=list(queries),
            last_updated=now,
            context_hash=context_hash,
        )
        write_json(self._store, SUGGESTIONS_STORAGE_KEY, record.to_dict())

    async def seed_from_profile(
        self,
        context: UserContext,
        location: str | None = None,
    ) -> list[str]:
        """Starter suggestions for a freshly onboarded farmer."""
        crops = context.main_crops or ""
        summary = (
            "User Profile\n"
            f"Name: {context.name or ''}\n"
            f"Location: {location or 'Unknown'}\n"
            f"Farm Type: {context.farm_type or 'N/A'}\n"
            f"Experience: {context.experience or 'N/A'}\n"
            f"Main Crops: {crops or 'None'}\n"
            f"Farm Size: {context.farm_size or 'N/A'}\n\n"
            "Generate 3-4 short follow-up agricultural questions this farmer is "
            "likely to ask next. Return ONLY JSON array."
        )
        payload = {"messages": [{"role": "user", "content": summary}]}
        try:
            queries = await self._request(payload)
        except SUGGESTION_FAILURES as exc:
            log_exception(
                logger=logger,
                message="Onboarding suggestions failed, using profile defaults",
                error=exc,
            )
            queries = []

        if not queries:
            queries = profile_queries(crops, context.experience, location)
        self._publish(queries, None)
        return self.queries

    def clear(self) -> None:
        self.state.queries = []
        self.state.error = None
        self.state.last_updated = None
        self._last_context_hash = None
        delete_key(self._store, SUGGESTIONS_STORAGE_KEY)

    def _location(self) -> str | None:
        if self._location_provider is None:
            return None
        return self._location_provider()
