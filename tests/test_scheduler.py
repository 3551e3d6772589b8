"""Tests for TaskScheduler."""

import asyncio

import pytest

from photoreel.pipeline.scheduler import TaskScheduler


@pytest.fixture
def delays():
    return []


@pytest.fixture
def scheduler(delays):
    async def fake_sleep(delay):
        delays.append(delay)
        await asyncio.sleep(0)

    return TaskScheduler(sleep=fake_sleep)


class TestTaskScheduler:
    async def test_spawn_returns_awaitable_handle(self, scheduler):
        async def work():
            return 42

        handle = scheduler.spawn(work(), name="work")

        assert await handle.wait() == 42
        assert handle.done

    async def test_call_later_waits_for_the_delay(self, scheduler, delays):
        calls = []

        async def work():
            calls.append("ran")

        await scheduler.call_later(7.5, work).wait()

        assert delays == [7.5]
        assert calls == ["ran"]

    async def test_every_repeats_until_cancelled(self, scheduler, delays):
        runs = 0
        reached = asyncio.Event()

        async def tick():
            nonlocal runs
            runs += 1
            if runs == 3:
                reached.set()

        handle = scheduler.every(30, tick, name="sweep")
        await reached.wait()
        handle.cancel()
        await scheduler.join()

        assert runs >= 3
        assert set(delays) == {30}
        assert scheduler.active == 0

    async def test_every_survives_a_failing_run(self, scheduler):
        runs = 0
        reached = asyncio.Event()

        async def tick():
            nonlocal runs
            runs += 1
            if runs == 1:
                raise RuntimeError("store unavailable")
            reached.set()

        scheduler.every(1, tick)
        await reached.wait()
        await scheduler.shutdown()

        assert runs >= 2

    async def test_cancelled_handle_raises_on_wait(self, scheduler):
        handle = scheduler.spawn(asyncio.Event().wait())
        await asyncio.sleep(0)
        handle.cancel()

        with pytest.raises(asyncio.CancelledError):
            await handle.wait()

    async def test_shutdown_cancels_everything(self, scheduler):
        scheduler.spawn(asyncio.Event().wait(), name="forever-1")
        scheduler.spawn(asyncio.Event().wait(), name="forever-2")
        await asyncio.sleep(0)

        await scheduler.shutdown()

        assert scheduler.active == 0
