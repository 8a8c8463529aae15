"""Timer abstraction for the sync coordinator.

``AsyncioTimers`` runs callbacks on the running event loop. Tests swap in a
manual implementation so debounce behaviour is checked without sleeping.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable[None]]


class TimerHandle:
    def __init__(self, handle: Optional[asyncio.TimerHandle] = None):
        self._handle = handle
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()


class AsyncioTimers:
    """Schedules coroutine factories on the current event loop."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, delay: float, factory: CoroFactory) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle()

        def _fire() -> None:
            if handle.cancelled:
                return
            self.spawn(factory)

        handle._handle = loop.call_later(delay, _fire)
        return handle

    def spawn(self, factory: CoroFactory) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(factory())
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
