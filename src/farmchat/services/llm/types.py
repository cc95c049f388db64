from dataclasses import dataclass


@dataclass(slots=True)
class LiteLLMOptions:
    """Optional configuration for building LiteLLM kwargs."""

    base_url: str | None = None
    extra_headers: dict | None = None
    temperature: float | None = None
    timeout: float | None = None
    model_parameters: dict | None = None
