"""Entrypoint module for running the suggestion backend."""

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from farmchat.server import start_server

if TYPE_CHECKING:
    from aiohttp.web import AppRunner


@dataclass(slots=True)
class _EntrypointState:
    server_runner: "AppRunner | None" = None


_STATE = _EntrypointState()


async def shutdown() -> None:
    """Best-effort shutdown of long-lived resources.

    This is safe to call multiple times.
    """
    if _STATE.server_runner is not None:
        with contextlib.suppress(Exception):
            await _STATE.server_runner.cleanup()
        _STATE.server_runner = None


async def main() -> None:
    """Start the backend and serve until cancelled."""
    _STATE.server_runner = await start_server()
    try:
        await asyncio.Event().wait()
    finally:
        with contextlib.suppress(Exception):
            await asyncio.shield(shutdown())
