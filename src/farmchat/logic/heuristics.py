"""Keyword-driven follow-up questions used when no model output is available.

Both the client engine and the suggestion backend fall back to this generator,
so a conversation with any text in it always yields at least one suggestion.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Literal

from farmchat.core.config.constants import MAX_SUGGESTIONS

Locale = Literal["en", "hi", "or"]

_DEVANAGARI = re.compile(r"[\u0900-\u097F]")
_ODIA = re.compile(r"[\u0B00-\u0B7F]")
_CROP_PATTERN = re.compile(
    r"(pyaaj|प्याज|onion|tomato|टमाटर|wheat|गेहूं|rice|धान|potato|आलू)",
    re.IGNORECASE,
)


class Topic(StrEnum):
    WEATHER = "weather"
    PEST = "pest"
    PRICE = "price"
    FERTILIZER = "fertilizer"


TOPIC_KEYWORDS: Mapping[Topic, tuple[str, ...]] = {
    Topic.WEATHER: ("weather", "rain", "मौसम", "बारिश", "ପାଗ", "ବର୍ଷା"),
    Topic.PEST: ("pest", "disease", "रोग", "कीट", "ରୋଗ", "କୀଟ"),
    Topic.PRICE: ("price", "sell", "मंडी", "बेच", "ଦର", "ବିକି"),
    Topic.FERTILIZER: ("fertilizer", "खाद", "उर्वरक", "ସାର"),
}


@dataclass(frozen=True, slots=True)
class LocaleRules:
    """Suggestion texts for one locale.

    `crop_pest` and `crop_care` may contain a `{crop}` placeholder that is
    filled with the crop name as it appeared in the conversation.
    """

    topics: Mapping[Topic, str]
    crop_pest: str
    crop_care: str | None
    defaults: tuple[str, ...]


RULES: Mapping[Locale, LocaleRules] = {
    "en": LocaleRules(
        topics={
            Topic.WEATHER: "What's the most urgent task based on current weather?",
            Topic.PRICE: "Should I sell now or wait for better prices?",
            Topic.FERTILIZER: (
                "What's the exact application rate for this fertilizer?"
            ),
        },
        crop_pest="How do I identify early signs of disease in {crop}?",
        crop_care="What mistakes should I avoid with {crop} right now?",
        defaults=(
            "How much will it cost to implement this advice?",
            "How long before I see results?",
            "What if the weather changes suddenly?",
            "How do I implement this step by step?",
            "When is the best time to start?",
        ),
    ),
    "hi": LocaleRules(
        topics={
            Topic.WEATHER: "मौसम के हिसाब से अभी सबसे जरूरी काम कौन सा है?",
            Topic.PRICE: "अभी बेचना ठीक है या कुछ दिन और इंतजार करूं?",
            Topic.FERTILIZER: "यह खाद कितनी मात्रा में डालनी चाहिए?",
        },
        crop_pest="{crop} में रोग की पहचान कैसे करूं?",
        crop_care="{crop} की देखभाल में अभी कौन सी गलती न करूं?",
        defaults=(
            "इस सलाह को फॉलो करने में कितना खर्च आएगा?",
            "कितने दिन में नतीजा दिखने लगेगा?",
            "फसल देखभाल का अगला कदम क्या हो सकता है?",
            "मौजूदा परिस्थितियों में जोखिम कैसे कम करूँ?",
        ),
    ),
    "or": LocaleRules(
        topics={
            Topic.WEATHER: "ପାଗ ଅନୁସାରେ ବର୍ତ୍ତମାନ ସବୁଠୁ ଜରୁରୀ କାମ କଣ?",
            Topic.PRICE: "ବର୍ତ୍ତମାନ ବିକିବା ଭଲ ନା ଆଉ କିଛି ଦିନ ଅପେକ୍ଷା କରିବି?",
            Topic.FERTILIZER: "ଏହି ସାର କେତେ ମାତ୍ରାରେ ଦେବି?",
        },
        crop_pest="ଫସଲରେ ରୋଗର ଚିହ୍ନ କେମିତି ଚିହ୍ନିବି?",
        crop_care=None,
        defaults=(
            "ଏହି ପରାମର୍ଶ ଫଲୋ କରିବାକୁ କେତେ ଖର୍ଚ୍ଚ ହେବ?",
            "କେତେ ଦିନରେ ଫଳାଫଳ ଦେଖିବାକୁ ମିଳିବ?",
            "ଏହା କେମିତି ପର୍ଯ୍ୟାୟକ୍ରମେ କରିବି?",
            "ଆରମ୍ଭ କରିବାର ସଠିକ ସମୟ କେବେ?",
        ),
    ),
}


def detect_locale(text: str) -> Locale:
    """Pick the locale from the script the text is written in."""
    if _DEVANAGARI.search(text):
        return "hi"
    if _ODIA.search(text):
        return "or"
    return "en"


def detect_topics(text: str) -> set[Topic]:
    lower = text.lower()
    return {
        topic
        for topic, keywords in TOPIC_KEYWORDS.items()
        if any(keyword in lower for keyword in keywords)
    }


def find_crop(text: str) -> str | None:
    match = _CROP_PATTERN.search(text)
    return match.group(0) if match else None


def last_turn_text(messages: Iterable[tuple[str, str]]) -> str:
    """Join the latest assistant and user contents, assistant first."""
    last_user = ""
    last_assistant = ""
    for role, content in messages:
        if role == "user":
            last_user = content
        elif role == "assistant":
            last_assistant = content
    return f"{last_assistant}\n{last_user}"


def build_heuristic_queries(text: str, limit: int = MAX_SUGGESTIONS) -> list[str]:
    """Deterministic suggestions for `text`; always 1..limit unique strings."""
    limit = max(1, limit)
    rules = RULES[detect_locale(text)]
    topics = detect_topics(text)
    crop = find_crop(text)

    candidates: list[str] = []
    if Topic.WEATHER in topics:
        candidates.append(rules.topics[Topic.WEATHER])
    if Topic.PEST in topics and crop:
        candidates.append(rules.crop_pest.format(crop=crop))
    if Topic.PRICE in topics:
        candidates.append(rules.topics[Topic.PRICE])
    if Topic.FERTILIZER in topics:
        candidates.append(rules.topics[Topic.FERTILIZER])
    if crop and Topic.PEST not in topics and rules.crop_care:
        candidates.append(rules.crop_care.format(crop=crop))
    candidates.extend(rules.defaults)

    return list(dict.fromkeys(candidates))[:limit]


def heuristic_for_messages(
    messages: Iterable[tuple[str, str]],
    limit: int = MAX_SUGGESTIONS,
) -> list[str]:
    return build_heuristic_queries(last_turn_text(messages), limit)


def profile_queries(
    main_crops: str | None,
    experience: str | None,
    location: str | None = None,
) -> list[str]:
    """Starter questions for a farmer who has not chatted yet."""
    crops = [crop.strip() for crop in re.split(r"[;,]", main_crops or "")]
    primary_crop = next((crop for crop in crops if crop), "crop")
    level = experience or "beginner"
    weather = (
        f"Upcoming weather risks for {location}?"
        if location
        else "How to prepare for upcoming weather?"
    )
    return [
        f"Best current practices for {primary_crop} ({level})?",
        weather,
        f"Soil or nutrient focus for {primary_crop} now?",
        f"Early pest or disease signs to watch in {primary_crop}?",
    ]
