"""Custom exceptions for farmchat."""

IMPORT_ERROR_MESSAGE = "Error importing chat threads. Please check the file format."
NON_IMAGE_MESSAGE = "Please select only image files"
IMAGE_TOO_LARGE_MESSAGE = "Image size should be less than 10MB"
HTTP_TOO_MANY_REQUESTS = 429


class ImageValidationError(ValueError):
    """Raised when a staged attachment is not an acceptable image."""

    def __init__(self, name: str, reason: str) -> None:
        """Initialize the error with the rejected file name and reason."""
        self.name = name
        self.reason = reason
        super().__init__(f"{name}: {reason}")


class ThreadImportError(ValueError):
    """Raised when an imported thread backup cannot be used."""

    def __init__(self, detail: str | None = None) -> None:
        """Initialize the error with the user-facing message."""
        self.detail = detail
        super().__init__(IMPORT_ERROR_MESSAGE)


class StreamDecodeError(ValueError):
    """Raised when a single stream line cannot be decoded."""

    def __init__(self, line: str, reason: str) -> None:
        """Initialize the error with the offending line."""
        self.line = line
        self.reason = reason
        super().__init__(f"Undecodable stream line ({reason}): {line[:120]!r}")


class ChatRequestError(RuntimeError):
    """Raised when the chat backend rejects a turn."""

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        """Initialize the error with an optional HTTP status."""
        self.status_code = status_code
        if message is not None:
            resolved_message = message
        elif status_code is not None:
            resolved_message = f"HTTP error! status: {status_code}"
        else:
            resolved_message = "Chat request failed"
        super().__init__(resolved_message)


class SuggestionRequestError(RuntimeError):
    """Raised when the suggestion backend returns an unusable response."""

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        """Initialize the error with an optional HTTP status."""
        self.status_code = status_code
        if message is not None:
            resolved_message = message
        elif status_code == HTTP_TOO_MANY_REQUESTS:
            resolved_message = (
                "Too many requests. Please wait before generating new suggestions."
            )
        elif status_code is not None:
            resolved_message = f"HTTP error! status: {status_code}"
        else:
            resolved_message = "Malformed suggestions response"
        super().__init__(resolved_message)
