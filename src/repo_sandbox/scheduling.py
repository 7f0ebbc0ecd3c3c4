"""In-process scheduler that re-invokes driver actions on the event loop.

Suitable for a single-process host: scheduled calls are lost if the process
exits, but persisted state lets an external scheduler (or the
``/actions/{name}`` route) resume any pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, str], Awaitable[Any]]


class AsyncioScheduler:
    """Satisfies the ``Scheduler`` protocol from ``protocols.py``.

    The handler is bound after construction because the driver itself
    depends on the scheduler.
    """

    def __init__(self, handler: ActionHandler | None = None) -> None:
        self._handler = handler
        self._handles: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()

    def bind(self, handler: ActionHandler) -> None:
        self._handler = handler

    @property
    def pending(self) -> int:
        return len(self._handles) + len(self._tasks)

    async def schedule(self, pipeline_id: str, action: str, delay_seconds: float) -> None:
        handler = self._handler
        if handler is None:
            raise RuntimeError("scheduler has no action handler bound")

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def _fire() -> None:
            self._handles.discard(handle)
            task = loop.create_task(self._run(handler, pipeline_id, action))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle = loop.call_later(max(delay_seconds, 0), _fire)
        self._handles.add(handle)

    async def _run(self, handler: ActionHandler, pipeline_id: str, action: str) -> None:
        try:
            await handler(pipeline_id, action)
        except Exception:
            logger.exception(
                "Scheduled action %s failed for pipeline %s",
                action,
                pipeline_id,
                extra={"pipeline_id": pipeline_id, "action": action},
            )

    async def aclose(self) -> None:
        """Cancel pending timers and in-flight actions."""
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
