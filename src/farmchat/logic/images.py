"""Staging area for images attached to the next outgoing message."""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import math
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image, UnidentifiedImageError

from farmchat.core.config.constants import IMAGE_MIME_PREFIX, MAX_IMAGE_BYTES
from farmchat.core.error_handling import default_notify, log_exception, safe_notify
from farmchat.core.exceptions import (
    IMAGE_TOO_LARGE_MESSAGE,
    NON_IMAGE_MESSAGE,
    ImageValidationError,
)
from farmchat.core.models import ImageAttachment, make_image_id

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


def validate_image(name: str, mime_type: str | None, size: int) -> None:
    """Raise ImageValidationError unless this is an image of acceptable size."""
    if not mime_type or not mime_type.startswith(IMAGE_MIME_PREFIX):
        raise ImageValidationError(name, NON_IMAGE_MESSAGE)
    if size > MAX_IMAGE_BYTES:
        raise ImageValidationError(name, IMAGE_TOO_LARGE_MESSAGE)


def _gif_to_png(content: bytes) -> bytes | None:
    try:
        with Image.open(io.BytesIO(content)) as img:
            output = io.BytesIO()
            img.save(output, format="PNG")
            return output.getvalue()
    except (OSError, UnidentifiedImageError):
        logger.debug("Failed to convert GIF attachment")
        return None


def format_file_size(size: int) -> str:
    """Render a byte count the way the attachment preview shows it.

    Examples:
        >>> format_file_size(0)
        '0 Bytes'
        >>> format_file_size(1536)
        '1.5 KB'

    """
    if size <= 0:
        return "0 Bytes"
    exponent = min(int(math.log(size, 1024)), len(_SIZE_UNITS) - 1)
    value = round(size / (1024**exponent), 2)
    return f"{value:g} {_SIZE_UNITS[exponent]}"


class ImageStagingArea:
    """Pending attachments for the next message.

    Attachments are single-use: the chat orchestrator snapshots them and
    clears the area when a message is sent.
    """

    def __init__(self, *, notify: Callable[[str], None] = default_notify) -> None:
        self._notify = notify
        self._images: list[ImageAttachment] = []

    @property
    def images(self) -> list[ImageAttachment]:
        return list(self._images)

    def __len__(self) -> int:
        return len(self._images)

    def add(
        self,
        name: str,
        content: bytes,
        mime_type: str | None,
    ) -> ImageAttachment | None:
        """Validate and stage one image; rejected files are reported, not raised."""
        try:
            validate_image(name, mime_type, len(content))
        except ImageValidationError as exc:
            logger.warning("Rejected attachment %s: %s", name, exc.reason)
            safe_notify(self._notify, exc.reason)
            return None

        resolved_type = mime_type or "image/png"
        if resolved_type == "image/gif":
            converted = _gif_to_png(content)
            if converted is not None:
                content = converted
                resolved_type = "image/png"

        attachment = ImageAttachment(
            id=make_image_id(),
            name=name,
            data=base64.b64encode(content).decode("ascii"),
            type=resolved_type,
            size=len(content),
        )
        self._images.append(attachment)
        logger.debug("Staged %s (%s)", name, format_file_size(attachment.size))
        return attachment

    async def add_file(self, path: str | Path) -> ImageAttachment | None:
        """Read a file off the event loop and stage it."""
        file_path = Path(path)
        mime_type, _encoding = mimetypes.guess_type(file_path.name)
        try:
            content = await asyncio.to_thread(file_path.read_bytes)
        except OSError as exc:
            log_exception(
                logger=logger,
                message="Failed to read attachment",
                error=exc,
                context={"path": str(file_path)},
            )
            safe_notify(self._notify, f"Could not read {file_path.name}")
            return None
        return self.add(file_path.name, content, mime_type)

    async def add_files(self, paths: Iterable[str | Path]) -> list[ImageAttachment]:
        added: list[ImageAttachment] = []
        for path in paths:
            attachment = await self.add_file(path)
            if attachment is not None:
                added.append(attachment)
        return added

    def remove(self, image_id: str) -> None:
        self._images = [image for image in self._images if image.id != image_id]

    def clear(self) -> None:
        self._images = []

    def snapshot(self) -> tuple[ImageAttachment, ...]:
        """Capture the staged images by value."""
        return tuple(self._images)
