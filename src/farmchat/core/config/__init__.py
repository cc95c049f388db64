"""Configuration loading and constants for farmchat.

This package exposes the split configuration modules as a single interface.
"""

from farmchat.core.config.constants import (
    DEFAULT_THREAD_TITLE,
    MAX_IMAGE_BYTES,
    SUGGESTIONS_STORAGE_KEY,
    THREADS_STORAGE_KEY,
    TITLE_MAX_CHARS,
    USER_PROFILE_STORAGE_KEY,
)
from farmchat.core.config.http import (
    DEFAULT_HEADERS,
    DEFAULT_USER_AGENT,
    HttpxClientOptions,
    get_or_create_httpx_client,
)
from farmchat.core.config.manager import (
    _CONFIG_STATE,
    CONFIG_CACHE_TTL,
    ConfigFileEmptyError,
    ConfigFileNotFoundError,
    _resolve_config_path,
    clear_config_cache,
    get_config,
    get_float,
    get_int,
)

__all__ = [
    "CONFIG_CACHE_TTL",
    "DEFAULT_HEADERS",
    "DEFAULT_THREAD_TITLE",
    "DEFAULT_USER_AGENT",
    "MAX_IMAGE_BYTES",
    "SUGGESTIONS_STORAGE_KEY",
    "THREADS_STORAGE_KEY",
    "TITLE_MAX_CHARS",
    "USER_PROFILE_STORAGE_KEY",
    "_CONFIG_STATE",
    "ConfigFileEmptyError",
    "ConfigFileNotFoundError",
    "HttpxClientOptions",
    "_resolve_config_path",
    "clear_config_cache",
    "get_config",
    "get_float",
    "get_int",
    "get_or_create_httpx_client",
]
