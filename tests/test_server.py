from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pytest
from aiohttp.test_utils import TestClient, TestServer

from farmchat import server
from farmchat.services.llm import LiteLLMOptions

GOOD_QUESTIONS = [
    "How much neem oil per litre of water?",
    "Should I spray before or after rain?",
    "Which pests attack onion in winter?",
    "When is the right time to harvest onion?",
]
CONVERSATION = [
    {"role": "user", "content": "My onion leaves have spots"},
    {"role": "assistant", "content": "It looks like purple blotch. Spray mancozeb."},
]


class RateLimitedError(RuntimeError):
    status_code = 429


class FakeCompleter:
    def __init__(self, *outcomes: str | Exception) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def __call__(
        self,
        provider: str,
        model: str,
        messages: list[dict[str, str]],
        api_key: str,
        *,
        options: LiteLLMOptions,
    ) -> str:
        self.calls.append(
            {
                "provider": provider,
                "model": model,
                "messages": messages,
                "options": options,
            },
        )
        outcome = self._outcomes[min(len(self.calls), len(self._outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _backend(
    completer: FakeCompleter,
    *,
    api_key: str | None = "test-key",
    retries: int = 2,
) -> server.SuggestionBackend:
    settings = server.BackendSettings(api_key=api_key, retries=retries)
    return server.SuggestionBackend(settings, completer=completer)


@asynccontextmanager
async def _serve(backend: server.SuggestionBackend) -> AsyncIterator[TestClient]:
    async with TestClient(TestServer(server.create_app(backend))) as client:
        yield client


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(server.asyncio, "sleep", _fake_sleep)
    return delays


@pytest.mark.asyncio
async def test_health_check() -> None:
    async with _serve(_backend(FakeCompleter(""))) as client:
        response = await client.get("/")

        assert response.status == 200
        assert await response.text() == "I'm alive"


@pytest.mark.asyncio
async def test_suggestions_are_served_then_cached() -> None:
    completer = FakeCompleter(json.dumps(GOOD_QUESTIONS))
    async with _serve(_backend(completer)) as client:
        first = await client.post(
            "/api/suggested-queries",
            json={"messages": CONVERSATION},
        )
        first_body = await first.json()
        second = await client.post(
            "/api/suggested-queries",
            json={"messages": CONVERSATION},
        )
        second_body = await second.json()

    assert first.status == 200
    assert first_body == {
        "suggestedQueries": GOOD_QUESTIONS,
        "success": True,
        "count": 4,
        "fromCache": False,
        "reliability": "stable",
    }
    assert second_body == {
        "suggestedQueries": GOOD_QUESTIONS,
        "success": True,
        "cached": True,
    }
    assert len(completer.calls) == 1
    prompt = completer.calls[0]["messages"][1]["content"]
    assert "user: My onion leaves have spots" in prompt


@pytest.mark.asyncio
async def test_missing_messages_is_a_bad_request() -> None:
    async with _serve(_backend(FakeCompleter(""))) as client:
        empty = await client.post("/api/suggested-queries", json={"messages": []})
        broken = await client.post(
            "/api/suggested-queries",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert empty.status == 400
        assert await empty.json() == {"error": "No messages provided"}
        assert broken.status == 400


@pytest.mark.asyncio
async def test_rate_limit_applies_per_client() -> None:
    backend = _backend(FakeCompleter(""), api_key=None)
    async with _serve(backend) as client:
        statuses = []
        for _ in range(6):
            response = await client.post(
                "/api/suggested-queries",
                json={"messages": CONVERSATION},
                headers={"X-Forwarded-For": "10.0.0.1, 172.16.0.1"},
            )
            statuses.append(response.status)
        limited_body = await response.json()
        other = await client.post(
            "/api/suggested-queries",
            json={"messages": CONVERSATION},
            headers={"X-Forwarded-For": "10.0.0.2"},
        )

        assert statuses == [200, 200, 200, 200, 200, 429]
        assert limited_body == {"error": server.RATE_LIMIT_MESSAGE}
        assert other.status == 200


@pytest.mark.asyncio
async def test_missing_api_key_serves_heuristic_fallback() -> None:
    completer = FakeCompleter(json.dumps(GOOD_QUESTIONS))
    async with _serve(_backend(completer, api_key=None)) as client:
        response = await client.post(
            "/api/suggested-queries",
            json={"messages": CONVERSATION},
        )
        body = await response.json()

    assert response.status == 200
    assert body["fallback"] is True
    assert body["reason"] == "not_configured"
    assert 3 <= len(body["suggestedQueries"]) <= 4
    assert completer.calls == []


@pytest.mark.asyncio
async def test_exhausted_upstream_rate_limit_maps_to_429() -> None:
    completer = FakeCompleter(RateLimitedError("slow down"))
    async with _serve(_backend(completer, retries=0)) as client:
        response = await client.post(
            "/api/suggested-queries",
            json={"messages": CONVERSATION},
        )

        assert response.status == 429
        assert await response.json() == {"error": "Rate limit exceeded"}


@pytest.mark.asyncio
async def test_upstream_rate_limit_backs_off_exponentially(
    no_sleep: list[float],
) -> None:
    completer = FakeCompleter(RateLimitedError("slow down"))

    with pytest.raises(server.UpstreamRateLimitedError):
        await _backend(completer).suggest(CONVERSATION)

    assert len(completer.calls) == 3
    assert no_sleep == [1.0, 2.0]
    timeouts = [call["options"].timeout for call in completer.calls]
    assert timeouts == [10.0, 13.0, 16.0]


@pytest.mark.asyncio
async def test_upstream_recovers_after_transient_failure(
    no_sleep: list[float],
) -> None:
    completer = FakeCompleter(
        RuntimeError("upstream hiccup"),
        json.dumps(GOOD_QUESTIONS[:2]),
    )

    body = await _backend(completer).suggest(CONVERSATION)

    assert no_sleep == [0.75]
    assert body["suggestedQueries"][:2] == GOOD_QUESTIONS[:2]
    assert body["count"] >= 3
    assert body["reliability"] == "stable"


@pytest.mark.asyncio
async def test_upstream_failure_serves_fallback(no_sleep: list[float]) -> None:
    completer = FakeCompleter(RuntimeError("upstream down"))

    body = await _backend(completer).suggest(CONVERSATION)

    assert no_sleep == [0.75, 1.5]
    assert body["fallback"] is True
    assert body["reason"] == "upstream_error"


@pytest.mark.asyncio
async def test_empty_upstream_output_serves_fallback() -> None:
    body = await _backend(FakeCompleter("")).suggest(CONVERSATION)

    assert body["reason"] == "empty_upstream"
    assert body["suggestedQueries"]


def test_parse_model_output_variants() -> None:
    assert server.parse_model_output('["What is the dose?", 5]') == [
        "What is the dose?",
    ]
    assert server.parse_model_output(
        'Sure! ["Which seed variety is best?"] Hope this helps.',
    ) == ["Which seed variety is best?"]
    free_text = (
        "Here you go:\n"
        "What fertilizer suits rice now?\n"
        "1. A numbered line here?\n"
        "Any other question?\n"
        "Short?"
    )
    assert server.parse_model_output(free_text) == [
        "What fertilizer suits rice now?",
    ]


def test_clean_and_pad_suggestions() -> None:
    cleaned = server.clean_suggestions(
        ["1. How much urea per acre?", "- When to sow?", "What else?", "ok"],
    )

    assert cleaned == ["How much urea per acre?", "When to sow?"]
    assert server.ensure_minimum(
        ["How much urea per acre?"],
        ["Two?", "Another fallback question?", "How much urea per acre?", "Third?!"],
    ) == [
        "How much urea per acre?",
        "Another fallback question?",
        "Third?!",
    ]


def test_repeated_model_questions_are_padded_to_minimum() -> None:
    repeated = ["How much urea per acre?"] * 3
    fallback = ["When should I sow rice?", "How do I stop leaf blight?"]

    cleaned = server.clean_suggestions(repeated)

    assert cleaned == ["How much urea per acre?"]
    assert server.ensure_minimum(cleaned, fallback) == [
        "How much urea per acre?",
        *fallback,
    ]
    assert server.ensure_minimum(repeated, fallback) == [
        "How much urea per acre?",
        *fallback,
    ]


def test_cache_key_depends_on_recent_messages() -> None:
    base = [("user", f"message {index}") for index in range(5)]
    changed_old = [("user", "something else"), *base[1:]]

    assert server.cache_key(base) == server.cache_key(changed_old)
    assert server.cache_key(base) != server.cache_key(base[:-1])


def test_fixed_window_rate_limiter_resets() -> None:
    now = [0.0]
    limiter = server.FixedWindowRateLimiter(2, 60.0, clock=lambda: now[0])

    assert limiter.allow("a")
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")
    now[0] = 61.0
    assert limiter.allow("a")


def test_settings_read_api_key_from_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SARVAM_API_KEY", "env-key")

    settings = server.BackendSettings.from_config({"rate_limit_per_minute": 10})

    assert settings.api_key == "env-key"
    assert settings.max_requests_per_window == 10
    assert settings.provider == "sarvam"
