"""Assemble a ready-to-use chat session from configuration."""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from farmchat.core.config import (
    HttpxClientOptions,
    get_config,
    get_float,
    get_int,
    get_or_create_httpx_client,
)
from farmchat.core.config.constants import (
    SUGGESTION_COOLDOWN_SECONDS,
    SUGGESTION_RETRIES,
    SUGGESTION_STALE_SECONDS,
    SUGGESTION_TIMEOUT_SECONDS,
)
from farmchat.core.error_handling import default_notify
from farmchat.core.models import UserContext
from farmchat.logic.chat import ChatOrchestrator, load_user_context
from farmchat.logic.images import ImageStagingArea
from farmchat.logic.messages import MessageStore
from farmchat.logic.session import SUGGESTION_SETTLE_SECONDS, ChatSession
from farmchat.logic.suggestions import SuggestionEngine
from farmchat.logic.threads import ThreadStore
from farmchat.services.http import RetryOptions
from farmchat.services.storage import KeyValueStore, init_store

logger = logging.getLogger(__name__)

DEFAULT_CHAT_URL = "http://localhost:3000/api/chat"
DEFAULT_SUGGESTIONS_URL = "http://localhost:8001/api/suggested-queries"
CHAT_READ_TIMEOUT_SECONDS = 120.0

_httpx_client_holder: list[httpx.AsyncClient | None] = []


def build_session(
    config: dict[str, Any] | None = None,
    *,
    store: KeyValueStore | None = None,
    client: httpx.AsyncClient | None = None,
    notify: Callable[[str], None] = default_notify,
) -> ChatSession:
    """Wire every component of the chat core together.

    Missing keys fall back to defaults, so an empty config yields a working
    session against local backends with an in-memory store.
    """
    config = get_config() if config is None else config
    if store is None:
        store = init_store(config.get("storage_path") or None)
    if client is None:
        client = get_or_create_httpx_client(
            _httpx_client_holder,
            options=HttpxClientOptions(
                timeout=get_float(
                    config,
                    "chat_timeout_seconds",
                    CHAT_READ_TIMEOUT_SECONDS,
                ),
            ),
        )

    threads = ThreadStore(store, notify=notify)
    messages = MessageStore()
    images = ImageStagingArea(notify=notify)

    def user_context() -> UserContext | None:
        return load_user_context(store)

    def location() -> str | None:
        profile = load_user_context(store)
        return profile.location if profile else None

    orchestrator = ChatOrchestrator(
        messages,
        threads,
        images,
        client=client,
        chat_url=str(config.get("chat_url") or DEFAULT_CHAT_URL),
        user_context_provider=user_context,
    )
    suggestions = SuggestionEngine(
        store,
        client=client,
        url=str(config.get("suggestions_url") or DEFAULT_SUGGESTIONS_URL),
        cooldown_seconds=get_float(
            config,
            "suggestion_cooldown_seconds",
            SUGGESTION_COOLDOWN_SECONDS,
        ),
        stale_after_seconds=get_float(
            config,
            "suggestion_stale_seconds",
            SUGGESTION_STALE_SECONDS,
        ),
        timeout_seconds=get_float(
            config,
            "suggestion_timeout_seconds",
            SUGGESTION_TIMEOUT_SECONDS,
        ),
        retry=RetryOptions(
            retries=get_int(config, "suggestion_retries", SUGGESTION_RETRIES),
        ),
        location_provider=location,
    )
    logger.info("Chat session ready (chat_url=%s)", config.get("chat_url"))
    return ChatSession(
        threads=threads,
        messages=messages,
        images=images,
        orchestrator=orchestrator,
        suggestions=suggestions,
        settle_seconds=get_float(
            config,
            "suggestion_settle_seconds",
            SUGGESTION_SETTLE_SECONDS,
        ),
    )
