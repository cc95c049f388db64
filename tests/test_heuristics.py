from __future__ import annotations

import pytest

from farmchat.logic.heuristics import (
    RULES,
    Topic,
    build_heuristic_queries,
    detect_locale,
    detect_topics,
    find_crop,
    heuristic_for_messages,
    last_turn_text,
    profile_queries,
)


@pytest.mark.parametrize(
    ("text", "locale"),
    [
        ("How do I protect wheat from frost?", "en"),
        ("मेरे प्याज में रोग है", "hi"),
        ("ଆଜି ପାଗ କେମିତି?", "or"),
    ],
)
def test_locale_follows_script(text: str, locale: str) -> None:
    assert detect_locale(text) == locale


def test_english_topics_come_before_defaults() -> None:
    queries = build_heuristic_queries("Will rain hurt my Onion? Also the price now?")

    assert queries == [
        RULES["en"].topics[Topic.WEATHER],
        RULES["en"].topics[Topic.PRICE],
        "What mistakes should I avoid with Onion right now?",
        RULES["en"].defaults[0],
    ]


def test_hindi_pest_question_names_the_crop() -> None:
    queries = build_heuristic_queries("मेरे प्याज में रोग लग गया है")

    assert queries[0] == "प्याज में रोग की पहचान कैसे करूं?"
    assert all(query in _all_hindi() for query in queries[1:])


def test_odia_weather_question() -> None:
    queries = build_heuristic_queries("ଆଜି ପାଗ କେମିତି ରହିବ?")

    assert queries[0] == RULES["or"].topics[Topic.WEATHER]
    assert len(queries) == 4


@pytest.mark.parametrize("limit", [0, 1, 2, 4])
@pytest.mark.parametrize(
    "text",
    ["", "weather rain pest disease price fertilizer onion", "खाद और मंडी भाव"],
)
def test_always_between_one_and_limit_unique(text: str, limit: int) -> None:
    queries = build_heuristic_queries(text, limit)

    assert 1 <= len(queries) <= max(limit, 1)
    assert len(set(queries)) == len(queries)


def test_topic_and_crop_detection() -> None:
    assert detect_topics("Best FERTILIZER after rain?") == {
        Topic.FERTILIZER,
        Topic.WEATHER,
    }
    assert find_crop("my Tomato plants") == "Tomato"
    assert find_crop("no crop mentioned") is None


def test_last_turn_text_puts_assistant_first() -> None:
    pairs = [
        ("user", "first"),
        ("assistant", "reply one"),
        ("user", "second"),
        ("assistant", "reply two"),
    ]

    assert last_turn_text(pairs) == "reply two\nsecond"


def test_messages_helper_reads_the_latest_turn() -> None:
    pairs = [("user", "price of wheat"), ("assistant", "Prices are up.")]

    queries = heuristic_for_messages(pairs, limit=1)

    assert queries == [RULES["en"].topics[Topic.PRICE]]


def test_profile_queries_without_details() -> None:
    assert profile_queries(None, None) == [
        "Best current practices for crop (beginner)?",
        "How to prepare for upcoming weather?",
        "Soil or nutrient focus for crop now?",
        "Early pest or disease signs to watch in crop?",
    ]


def _all_hindi() -> set[str]:
    rules = RULES["hi"]
    return {*rules.topics.values(), *rules.defaults}
