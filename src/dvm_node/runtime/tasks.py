"""Cancellable background tasks.

Every long-running piece of the engine (listener loop, invoice polling, per-job
orchestration, eviction timers) runs as a :class:`ScheduledTask`: an asyncio task
paired with a :class:`CancellationToken` that the task checks at each sleep.
A :class:`TaskSupervisor` owns a group of such tasks so the engine can cancel
them together and report how many are still alive.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return False if cancelled before or during the sleep."""
        if self._event.is_set():
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return True
        return False

    async def wait(self) -> None:
        await self._event.wait()


class ScheduledTask:
    def __init__(self, name: str, task: asyncio.Task[Any], token: CancellationToken) -> None:
        self.name = name
        self.token = token
        self._task = task

    def cancel(self, *, force: bool = False) -> None:
        """Signal the token; with ``force`` also cancel the underlying asyncio task."""
        self.token.cancel()
        if force and not self._task.done():
            self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Any:
        return await asyncio.shield(self._task)

    def result(self) -> Any:
        return self._task.result()


TaskFactory = Callable[[CancellationToken], Awaitable[Any]]


class TaskSupervisor:
    def __init__(self, name: str = "dvm") -> None:
        self.name = name
        self._tasks: dict[str, ScheduledTask] = {}

    def spawn(self, name: str, factory: TaskFactory) -> ScheduledTask:
        if name in self._tasks and not self._tasks[name].done():
            raise RuntimeError(f"task already running: {name}")
        token = CancellationToken()
        task = asyncio.create_task(factory(token), name=f"{self.name}:{name}")
        scheduled = ScheduledTask(name, task, token)
        self._tasks[name] = scheduled
        task.add_done_callback(lambda _task, key=name, ref=scheduled: self._discard(key, ref))
        return scheduled

    def get(self, name: str) -> ScheduledTask | None:
        task = self._tasks.get(name)
        if task is None or task.done():
            return None
        return task

    def live_names(self) -> list[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    @property
    def live_count(self) -> int:
        return len(self.live_names())

    def cancel(self, name: str, *, force: bool = False) -> bool:
        task = self.get(name)
        if task is None:
            return False
        task.cancel(force=force)
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel(force=True)
        await self._drain(tasks)

    async def shutdown(self, grace_seconds: float) -> None:
        """Wait up to ``grace_seconds`` for live tasks, then force-cancel the rest."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks and grace_seconds > 0:
            await asyncio.wait([task._task for task in tasks], timeout=grace_seconds)
        await self.cancel_all()

    async def _drain(self, tasks: list[ScheduledTask]) -> None:
        pending = [task._task for task in tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _discard(self, name: str, scheduled: ScheduledTask) -> None:
        if self._tasks.get(name) is scheduled:
            del self._tasks[name]
