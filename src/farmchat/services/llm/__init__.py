"""LLM service entrypoints and exports."""

from farmchat.services.llm.core import (
    LITELLM_ERRORS,
    build_litellm_model_name,
    complete_text,
    prepare_litellm_kwargs,
)
from farmchat.services.llm.types import LiteLLMOptions

__all__ = [
    "LITELLM_ERRORS",
    "LiteLLMOptions",
    "build_litellm_model_name",
    "complete_text",
    "prepare_litellm_kwargs",
]
