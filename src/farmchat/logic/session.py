"""Chat session: wires the stores, the orchestrator and suggestions together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from farmchat.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from farmchat.logic.messages import ChatStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

    from farmchat.core.models import ImageAttachment, Message, Thread
    from farmchat.logic.chat import ChatOrchestrator
    from farmchat.logic.images import ImageStagingArea
    from farmchat.logic.messages import MessageStore
    from farmchat.logic.suggestions import SuggestionEngine
    from farmchat.logic.threads import ThreadStore

logger = logging.getLogger(__name__)

SUGGESTION_SETTLE_SECONDS = 0.5


class ChatSession:
    """User-facing chat actions for one client.

    Suggestions are refreshed in the background whenever a streamed turn
    completes.
    """

    def __init__(
        self,
        *,
        threads: ThreadStore,
        messages: MessageStore,
        images: ImageStagingArea,
        orchestrator: ChatOrchestrator,
        suggestions: SuggestionEngine,
        settle_seconds: float = SUGGESTION_SETTLE_SECONDS,
    ) -> None:
        self.threads = threads
        self.messages = messages
        self.images = images
        self.orchestrator = orchestrator
        self.suggestions = suggestions
        self._settle_seconds = settle_seconds
        self._suggestion_task: asyncio.Task[None] | None = None
        self._unsubscribe = messages.subscribe(self._on_status_change)

    def start(self) -> None:
        """Load saved threads and open the most recent one."""
        self.threads.load()
        existing = self.threads.threads
        if existing:
            self.switch_thread(existing[0].id)
        else:
            self.threads.create_pending_thread()

    async def close(self) -> None:
        self._unsubscribe()
        task = self._suggestion_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Suggestion refresh cancelled on close")

    # Thread actions

    def new_chat(self) -> str:
        thread_id = self.threads.create_pending_thread()
        self.messages.clear()
        self.images.clear()
        return thread_id

    def switch_thread(self, thread_id: str) -> Thread | None:
        thread = self.threads.switch_to(thread_id)
        if thread is not None:
            self.messages.replace(thread.messages)
            self.images.clear()
        return thread

    def delete_thread(self, thread_id: str) -> Thread | None:
        was_current = thread_id == self.threads.current_thread_id
        replacement = self.threads.delete_thread(thread_id)
        if replacement is not None:
            self.messages.replace(replacement.messages)
        elif was_current:
            self.messages.clear()
        self.images.clear()
        return replacement

    def clear_current(self) -> None:
        self.threads.clear_current()
        self.messages.clear()
        self.images.clear()

    # Chat

    async def send(
        self,
        text: str,
        images: Sequence[ImageAttachment] | None = None,
    ) -> Message | None:
        return await self.orchestrator.send_message(text, images)

    # Backup

    async def export_to(self, directory: str | Path) -> Path:
        backup = self.threads.export_all()
        target = Path(directory) / backup.filename
        await asyncio.to_thread(target.write_text, backup.content, encoding="utf-8")
        logger.info("Exported %d threads to %s", len(self.threads.threads), target)
        return target

    async def import_from(self, path: str | Path) -> int | None:
        try:
            payload = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as exc:
            log_exception(
                logger=logger,
                message="Failed to read thread backup",
                error=exc,
                context={"path": str(path)},
            )
            return None
        return self.threads.import_merge(payload)

    # Suggestions

    def _on_status_change(self, previous: ChatStatus, current: ChatStatus) -> None:
        if previous != ChatStatus.STREAMING or current != ChatStatus.IDLE:
            return
        thread_id = self.threads.current_thread_id
        if thread_id is None or len(self.messages.messages) < 2:
            return
        if self._suggestion_task is not None and not self._suggestion_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping suggestion refresh")
            return
        self._suggestion_task = loop.create_task(
            self._refresh_suggestions(thread_id),
            name="farmchat-suggestions",
        )

    async def _refresh_suggestions(self, thread_id: str) -> None:
        if self._settle_seconds > 0:
            await asyncio.sleep(self._settle_seconds)
        try:
            await self.suggestions.refresh(self.messages.messages, thread_id)
        except COMMON_HANDLER_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Suggestion refresh failed",
                error=exc,
                context={"thread_id": thread_id},
            )

    async def wait_for_suggestions(self) -> None:
        """Wait for a pending background refresh, if any."""
        task = self._suggestion_task
        if task is not None:
            await task
