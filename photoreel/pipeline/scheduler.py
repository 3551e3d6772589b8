"""
Task scheduling on the running event loop.

    spawn(coro)                → run now in the background
    call_later(delay, factory) → run once after a delay
    every(interval, factory)   → run repeatedly, one run at a time

Each call returns a ScheduledTask handle that can be awaited or cancelled.
shutdown() cancels everything still alive.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable]


class ScheduledTask:
    def __init__(self, task: asyncio.Task, name: str):
        self._task = task
        self.name = name

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self):
        self._task.cancel()

    async def wait(self):
        """Wait for the task; re-raises whatever the task raised."""
        return await self._task


class TaskScheduler:
    def __init__(self, sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    async def sleep(self, delay: float):
        await self._sleep(delay)

    def _track(self, coro: Awaitable, name: str) -> ScheduledTask:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name))
        return ScheduledTask(task, name)

    def _on_done(self, task: asyncio.Task, name: str):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task '{name}' crashed: {exc}", exc_info=exc)

    def spawn(self, coro: Awaitable, name: str = "task") -> ScheduledTask:
        return self._track(coro, name)

    def call_later(self, delay: float, factory: CoroFactory, name: str = "delayed") -> ScheduledTask:
        async def _delayed():
            await self._sleep(delay)
            return await factory()

        return self._track(_delayed(), name)

    def every(
        self,
        interval: float,
        factory: CoroFactory,
        name: str = "periodic",
        initial_delay: Optional[float] = None,
    ) -> ScheduledTask:
        async def _loop():
            await self._sleep(interval if initial_delay is None else initial_delay)
            while True:
                try:
                    await factory()
                except Exception as e:
                    # One bad run must not kill the sweep
                    logger.error(f"Periodic task '{name}' failed: {e}", exc_info=True)
                await self._sleep(interval)

        return self._track(_loop(), name)

    async def join(self):
        """Wait until every tracked task (including ones spawned meanwhile) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def shutdown(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Scheduler stopped ({len(tasks)} task(s) cancelled)")
