"""Constant definitions for farmchat."""

# Durable store keys
THREADS_STORAGE_KEY = "farm-chat-threads"
SUGGESTIONS_STORAGE_KEY = "suggested-queries"
USER_PROFILE_STORAGE_KEY = "userProfileData"

# Thread titles
TITLE_MAX_CHARS = 50
DEFAULT_THREAD_TITLE = "New Chat"
EXPORT_FILENAME_PREFIX = "farm-chat-backup"

# Image staging
MAX_IMAGE_BYTES = 10 * 1024 * 1024
IMAGE_MIME_PREFIX = "image/"

# Chat
IMAGE_ONLY_CONTENT = "Image message"

# Suggestions (client)
SUGGESTION_COOLDOWN_SECONDS = 8.0
SUGGESTION_STALE_SECONDS = 10 * 60.0
SUGGESTION_TIMEOUT_SECONDS = 15.0
SUGGESTION_RETRIES = 2
CONTEXT_HASH_WINDOW = 8
SUGGESTION_HISTORY_WINDOW = 6
MAX_PER_MESSAGE_CHARS = 1200
MAX_CLIENT_SUGGESTIONS = 4

# Suggestions (server)
MIN_SUGGESTIONS = 3
MAX_SUGGESTIONS = 4
RATE_LIMIT_WINDOW_SECONDS = 60.0
MAX_REQUESTS_PER_WINDOW = 5
CACHE_TTL_SECONDS = 300.0
CACHE_KEY_WINDOW = 4
UPSTREAM_RETRIES = 2
UPSTREAM_BASE_TIMEOUT_SECONDS = 10.0
UPSTREAM_TIMEOUT_STEP_SECONDS = 3.0
