"""Suggested-queries HTTP backend and health check."""

import asyncio
import hashlib
import json
import logging
import os
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from aiohttp import web

from farmchat.core.config import get_config, get_float, get_int
from farmchat.core.config.constants import (
    CACHE_KEY_WINDOW,
    CACHE_TTL_SECONDS,
    MAX_PER_MESSAGE_CHARS,
    MAX_REQUESTS_PER_WINDOW,
    MAX_SUGGESTIONS,
    MIN_SUGGESTIONS,
    RATE_LIMIT_WINDOW_SECONDS,
    SUGGESTION_HISTORY_WINDOW,
    UPSTREAM_BASE_TIMEOUT_SECONDS,
    UPSTREAM_RETRIES,
    UPSTREAM_TIMEOUT_STEP_SECONDS,
)
from farmchat.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from farmchat.core.exceptions import HTTP_TOO_MANY_REQUESTS
from farmchat.logic.heuristics import heuristic_for_messages
from farmchat.services.llm import LITELLM_ERRORS, LiteLLMOptions, complete_text

logger = logging.getLogger(__name__)

RequestHandler = Callable[[web.Request], Awaitable[web.StreamResponse]]
Completer = Callable[..., Awaitable[str]]
SERVER_HANDLER_EXCEPTIONS = COMMON_HANDLER_EXCEPTIONS
UPSTREAM_ERRORS = (*LITELLM_ERRORS, httpx.HTTPError, *COMMON_HANDLER_EXCEPTIONS)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait before making more requests."
MIN_QUERY_CHARS = 5
LOW_QUALITY_PHRASES = (
    "what else",
    "anything else",
    "other questions",
    "more info",
    "tell me more",
    "क्या और",
    "और क्या",
    "अन्य प्रश्न",
)
_JSON_ARRAY = re.compile(r"\[[\s\S]*?\]")
_NUMBERING = re.compile(r"^[0-9]+\.?\s*")
_BULLET = re.compile(r"^[-•]\s*")
_NUMBERED_LINE = re.compile(r"^[0-9]+\.")

SYSTEM_PROMPT = """\
You generate follow-up questions a farmer is likely to ask next.
Questions must be practical and specific to the crop, season, location and
problem under discussion, build on the assistant's last advice, and use the
same language as the farmer's latest message. Make each question distinct.
Return ONLY a JSON array of 3-4 questions, nothing else."""

USER_PROMPT_TEMPLATE = """\
CONVERSATION CONTEXT:
{context}

Generate 3-4 follow-up questions this farmer would naturally ask next.
Return ONLY the JSON array."""


class UpstreamRateLimitedError(RuntimeError):
    """Raised when the model provider keeps rate limiting after retries."""


@dataclass(slots=True)
class BackendSettings:
    """Runtime settings for the suggestion backend."""

    provider: str = "sarvam"
    model: str = "sarvam-m"
    api_key: str | None = None
    base_url: str | None = None
    max_requests_per_window: int = MAX_REQUESTS_PER_WINDOW
    rate_window_seconds: float = RATE_LIMIT_WINDOW_SECONDS
    cache_ttl_seconds: float = CACHE_TTL_SECONDS
    retries: int = UPSTREAM_RETRIES
    base_timeout_seconds: float = UPSTREAM_BASE_TIMEOUT_SECONDS
    timeout_step_seconds: float = UPSTREAM_TIMEOUT_STEP_SECONDS

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "BackendSettings":
        api_key = config.get("suggestion_api_key") or os.environ.get("SARVAM_API_KEY")
        return cls(
            provider=str(config.get("suggestion_provider") or "sarvam"),
            model=str(config.get("suggestion_model") or "sarvam-m"),
            api_key=api_key or None,
            base_url=config.get("suggestion_base_url") or None,
            max_requests_per_window=get_int(
                config,
                "rate_limit_per_minute",
                MAX_REQUESTS_PER_WINDOW,
            ),
            cache_ttl_seconds=get_float(
                config,
                "cache_ttl_seconds",
                CACHE_TTL_SECONDS,
            ),
            retries=get_int(config, "upstream_retries", UPSTREAM_RETRIES),
        )


class FixedWindowRateLimiter:
    """Allows `limit` requests per identity per window."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}

    def allow(self, identity: str) -> bool:
        now = self._clock()
        count, reset_at = self._windows.get(identity, (0, 0.0))
        if count == 0 or now > reset_at:
            self._windows[identity] = (1, now + self._window_seconds)
            self._prune(now)
            return True
        if count >= self._limit:
            return False
        self._windows[identity] = (count + 1, reset_at)
        return True

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset) in self._windows.items() if now > reset]
        for key in expired:
            del self._windows[key]


class SuggestionCache:
    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[list[str], float]] = {}

    def get(self, key: str) -> list[str] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        queries, stored_at = entry
        if self._clock() - stored_at >= self._ttl_seconds:
            del self._entries[key]
            return None
        return list(queries)

    def set(self, key: str, queries: list[str]) -> None:
        self._entries[key] = (list(queries), self._clock())


def content_text(content: object) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, separators=(",", ":"))


def normalize_messages(messages: Sequence[object]) -> list[tuple[str, str]]:
    """Reduce request messages to (role, text) pairs, dropping malformed ones."""
    pairs: list[tuple[str, str]] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if not isinstance(role, str):
            continue
        pairs.append((role, content_text(message.get("content", ""))))
    return pairs


def cache_key(pairs: Sequence[tuple[str, str]]) -> str:
    joined = "|".join(f"{role}:{text}" for role, text in pairs[-CACHE_KEY_WINDOW:])
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def client_identity(request: web.Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or "unknown"
    return request.headers.get("X-Real-IP") or request.remote or "unknown"


def build_context(pairs: Sequence[tuple[str, str]]) -> str:
    lines = []
    for role, text in pairs[-SUGGESTION_HISTORY_WINDOW:]:
        trimmed = text[-MAX_PER_MESSAGE_CHARS:]
        lines.append(f"{role}: {trimmed}")
    return "\n".join(lines)


def parse_model_output(content: str) -> list[str]:
    """Pull candidate questions out of free-form model output.

    Tries a bare JSON array, then the first array embedded in the text, then
    falls back to lines that look like questions.
    """
    cleaned = content.strip()
    parsed: object = None
    try:
        if cleaned.startswith("["):
            parsed = json.loads(cleaned)
        elif (match := _JSON_ARRAY.search(cleaned)) is not None:
            parsed = json.loads(match.group(0))
    except ValueError:
        parsed = None

    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, str)]

    questions = []
    for raw_line in re.split(r"[\n\r]", content):
        line = raw_line.strip()
        if (
            line.endswith("?")
            and len(line) > 10
            and "question" not in line.lower()
            and not _NUMBERED_LINE.match(line)
        ):
            questions.append(line)
    return questions[:MAX_SUGGESTIONS]


def clean_suggestions(candidates: Sequence[str]) -> list[str]:
    """Drop generic, too-short and repeated questions; strip list markers."""
    cleaned: list[str] = []
    for candidate in candidates:
        text = candidate.strip()
        if len(text) < MIN_QUERY_CHARS:
            continue
        lower = text.lower()
        if any(phrase in lower for phrase in LOW_QUALITY_PHRASES):
            continue
        text = _BULLET.sub("", _NUMBERING.sub("", text))
        if text not in cleaned:
            cleaned.append(text)
    return cleaned[:MAX_SUGGESTIONS]


def ensure_minimum(queries: Sequence[str], supplemental: Sequence[str]) -> list[str]:
    """Pad with heuristic questions up to the minimum; cap at the maximum."""
    unique = list(dict.fromkeys(query.strip() for query in queries if query.strip()))
    if len(unique) >= MIN_SUGGESTIONS:
        return unique[:MAX_SUGGESTIONS]
    merged: list[str] = []
    for query in [*unique, *supplemental]:
        text = query.strip()
        if len(text) >= MIN_QUERY_CHARS and text not in merged:
            merged.append(text)
    return merged[:MAX_SUGGESTIONS]


class SuggestionBackend:
    """Produces 3-4 follow-up questions for a conversation."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        completer: Completer = complete_text,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._completer = completer
        self.limiter = FixedWindowRateLimiter(
            settings.max_requests_per_window,
            settings.rate_window_seconds,
            clock=clock,
        )
        self.cache = SuggestionCache(settings.cache_ttl_seconds, clock=clock)

    async def suggest(self, messages: Sequence[object]) -> dict[str, Any]:
        """Build the response body for one suggestion request.

        Raises UpstreamRateLimitedError when the provider is still rate
        limiting after every retry.
        """
        pairs = normalize_messages(messages)
        key = cache_key(pairs)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Returning cached suggestions")
            return {"suggestedQueries": cached, "success": True, "cached": True}

        heuristic = heuristic_for_messages(pairs, MAX_SUGGESTIONS)
        if not self.settings.api_key:
            logger.warning("No suggestion API key configured, using heuristic")
            return self._fallback(heuristic, "not_configured")

        try:
            content = await self._complete_with_retries(build_context(pairs))
        except UpstreamRateLimitedError:
            raise
        except UPSTREAM_ERRORS as exc:
            log_exception(
                logger=logger,
                message="Suggestion model failed after retries",
                error=exc,
                context={"model": self.settings.model},
            )
            return self._fallback(heuristic, "upstream_error")

        if not content:
            logger.warning("No content generated upstream, switching to heuristic")
            return self._fallback(heuristic, "empty_upstream")

        parsed = parse_model_output(content)
        queries = ensure_minimum(clean_suggestions(parsed or heuristic), heuristic)
        if len(queries) >= MIN_SUGGESTIONS:
            self.cache.set(key, queries)
        return {
            "suggestedQueries": queries,
            "success": True,
            "count": len(queries),
            "fromCache": False,
            "reliability": (
                "stable" if len(queries) >= MIN_SUGGESTIONS else "degraded"
            ),
        }

    def _fallback(self, heuristic: list[str], reason: str) -> dict[str, Any]:
        return {
            "suggestedQueries": ensure_minimum([], heuristic),
            "success": True,
            "fallback": True,
            "reason": reason,
        }

    async def _complete_with_retries(self, context: str) -> str:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": USER_PROMPT_TEMPLATE.format(context=context)},
        ]
        settings = self.settings
        api_key = settings.api_key or ""

        for attempt in range(settings.retries + 1):
            timeout = (
                settings.base_timeout_seconds + settings.timeout_step_seconds * attempt
            )
            try:
                async with asyncio.timeout(timeout):
                    return await self._completer(
                        settings.provider,
                        settings.model,
                        messages,
                        api_key,
                        options=LiteLLMOptions(
                            base_url=settings.base_url,
                            timeout=timeout,
                        ),
                    )
            except UPSTREAM_ERRORS as exc:
                rate_limited = (
                    getattr(exc, "status_code", None) == HTTP_TOO_MANY_REQUESTS
                )
                if attempt >= settings.retries:
                    if rate_limited:
                        raise UpstreamRateLimitedError(str(exc)) from exc
                    raise
                delay = 2.0**attempt if rate_limited else 0.75 * (attempt + 1)
                logger.warning(
                    "Suggestion model attempt %s/%s failed (%s), retrying in %.2fs",
                    attempt + 1,
                    settings.retries + 1,
                    type(exc).__name__,
                    delay,
                )
                await asyncio.sleep(delay)

        msg = "suggestion completion exhausted without a result"
        raise RuntimeError(msg)


BACKEND_KEY = web.AppKey("suggestion_backend", SuggestionBackend)


@web.middleware
async def _error_middleware(
    request: web.Request,
    handler: RequestHandler,
) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except SERVER_HANDLER_EXCEPTIONS as exc:
        log_exception(
            logger=logger,
            message="Unhandled suggestion server error",
            error=exc,
            context={
                "method": request.method,
                "path": request.path,
            },
        )
        return web.json_response(
            {"error": "Failed to generate suggested queries"},
            status=500,
        )


async def health_check(_request: web.Request) -> web.Response:
    """Return a basic liveness response."""
    return web.Response(text="I'm alive")


async def suggested_queries(request: web.Request) -> web.Response:
    backend = request.app[BACKEND_KEY]
    identity = client_identity(request)
    if not backend.limiter.allow(identity):
        logger.info("Rate limit exceeded for %s", identity)
        return web.json_response(
            {"error": RATE_LIMIT_MESSAGE},
            status=HTTP_TOO_MANY_REQUESTS,
        )

    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"error": "Invalid JSON body"}, status=400)

    messages = body.get("messages") if isinstance(body, dict) else None
    if not isinstance(messages, list) or not messages:
        return web.json_response({"error": "No messages provided"}, status=400)

    try:
        result = await backend.suggest(messages)
    except UpstreamRateLimitedError:
        return web.json_response(
            {"error": "Rate limit exceeded"},
            status=HTTP_TOO_MANY_REQUESTS,
        )
    return web.json_response(result)


def create_app(backend: SuggestionBackend) -> web.Application:
    app = web.Application(middlewares=[_error_middleware])
    app[BACKEND_KEY] = backend
    app.add_routes(
        [
            web.get("/", health_check),
            web.post("/api/suggested-queries", suggested_queries),
        ],
    )
    return app


async def start_server() -> web.AppRunner:
    """Start the suggestion backend.

    Returns the underlying aiohttp runner so callers can clean it up on shutdown.
    """
    config = get_config()
    app = create_app(SuggestionBackend(BackendSettings.from_config(config)))
    runner = web.AppRunner(app)
    await runner.setup()
    port = int(os.environ.get("PORT", str(config.get("port", 8001))))
    host = os.environ.get("HOST", config.get("host"))
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Suggestion backend listening on %s:%s", host or "0.0.0.0", port)
    return runner
