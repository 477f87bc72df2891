"""Detached background tasks whose failures go to the log."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from elvira_shared.logging import get_logger

from ..errors import PersistenceError

logger = get_logger(__name__)


class DetachedTasks:
    """Tracks fire-and-forget tasks so they can be drained on shutdown."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], **context: Any) -> asyncio.Task[Any]:
        """Start ``coro`` without awaiting it.

        Exceptions are logged with ``context`` and never re-raised.
        """
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                error = exc if isinstance(exc, PersistenceError) else PersistenceError(str(exc))
                logger.error(
                    "Detached task failed",
                    error=str(error),
                    error_type=type(exc).__name__,
                    **context,
                )

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
