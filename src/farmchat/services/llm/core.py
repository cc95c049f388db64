"""Core LLM service operations."""

import logging
from typing import Any

import litellm

from farmchat.services.llm.types import LiteLLMOptions

logger = logging.getLogger(__name__)

SARVAM_BASE_URL = "https://api.sarvam.ai/v1"


def _collect_litellm_exceptions() -> tuple[type[Exception], ...]:
    return tuple(
        dict.fromkeys(
            exception_type
            for exception_type in vars(litellm.exceptions).values()
            if isinstance(exception_type, type)
            and issubclass(exception_type, Exception)
        ),
    )


LITELLM_ERRORS = _collect_litellm_exceptions()


def build_litellm_model_name(provider: str, model: str) -> str:
    """Build the LiteLLM model name with proper provider prefix.

    Args:
        provider: Provider name (e.g., "sarvam", "gemini", "openai")
        model: Model name

    Returns:
        LiteLLM-compatible model string (e.g., "openai/sarvam-m")

    """
    if provider in {"gemini", "mistral", "openrouter"}:
        return f"{provider}/{model}"
    # Sarvam speaks the OpenAI chat completions protocol
    if provider in {"sarvam", "openai"}:
        return f"openai/{model}"
    return model


def prepare_litellm_kwargs(
    provider: str,
    model: str,
    messages: list,
    api_key: str,
    *,
    options: LiteLLMOptions | None = None,
) -> dict[str, Any]:
    """Prepare kwargs for LiteLLM acompletion() with provider configuration.

    Args:
        provider: Provider name (e.g., "sarvam", "gemini")
        model: Model name
        messages: List of OpenAI-format message dicts
        api_key: API key to use
        options: Optional configuration bundle for provider-specific settings

    Returns:
        Dict of kwargs ready to pass to litellm.acompletion()

    """
    options = options or LiteLLMOptions()

    kwargs: dict[str, Any] = {
        "model": build_litellm_model_name(provider, model),
        "messages": messages,
        "api_key": api_key,
    }

    if options.temperature is not None:
        kwargs["temperature"] = options.temperature
    if options.timeout is not None:
        kwargs["timeout"] = options.timeout

    base_url = options.base_url
    if provider == "sarvam":
        base_url = base_url or SARVAM_BASE_URL
        # Sarvam authenticates with its own header alongside the bearer token
        kwargs["extra_headers"] = {"api-subscription-key": api_key}
    if base_url and provider != "gemini":
        kwargs["base_url"] = base_url

    if options.model_parameters:
        for key, value in options.model_parameters.items():
            kwargs.setdefault(key, value)

    # Merge extra headers if provided (after provider-specific headers)
    if options.extra_headers and "extra_headers" not in kwargs:
        kwargs["extra_headers"] = options.extra_headers
    elif options.extra_headers and "extra_headers" in kwargs:
        kwargs["extra_headers"] = {
            **kwargs["extra_headers"],
            **options.extra_headers,
        }

    return kwargs


async def complete_text(
    provider: str,
    model: str,
    messages: list,
    api_key: str,
    *,
    options: LiteLLMOptions | None = None,
) -> str:
    """Run one non-streaming completion and return the assistant text."""
    litellm_kwargs = prepare_litellm_kwargs(
        provider=provider,
        model=model,
        messages=messages,
        api_key=api_key,
        options=options,
    )
    logger.debug("LLM request: model=%s", litellm_kwargs["model"])
    response = await litellm.acompletion(**litellm_kwargs)

    choices = getattr(response, "choices", None) or []
    contents = [
        choice.message.content
        for choice in choices
        if getattr(choice, "message", None) is not None and choice.message.content
    ]
    return "\n".join(contents).strip()
