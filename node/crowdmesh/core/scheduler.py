"""Periodic background work owned by a session.

Each timer is an asyncio task. ``cancel_all`` cancels every task and bumps a
generation counter, so a task that was already past its sleep when the
session ended still does nothing.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

log = structlog.get_logger()


class PeriodicTasks:
    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelled: list[asyncio.Task] = []
        self._generation = 0

    def start(self, name: str, interval_s: float, fn: Callable[[], Awaitable[object]]) -> None:
        """Run ``fn`` every ``interval_s`` seconds until cancelled. Replaces a task of the same name."""
        self.cancel(name)
        task = asyncio.create_task(
            self._loop(name, interval_s, fn, self._generation), name=f"periodic:{name}",
        )
        self._tasks[name] = task

    def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
            self._cancelled.append(task)

    def cancel_all(self) -> None:
        self._generation += 1
        for name in list(self._tasks):
            self.cancel(name)

    async def wait_cancelled(self) -> None:
        """Wait until every cancelled task has actually finished."""
        tasks, self._cancelled = self._cancelled, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def names(self) -> list[str]:
        return sorted(self._tasks)

    async def _loop(self, name: str, interval_s: float, fn: Callable[[], Awaitable[object]], generation: int) -> None:
        log.debug("periodic_task_started", task=name, interval_s=interval_s)
        while True:
            await asyncio.sleep(interval_s)
            if generation != self._generation:
                return
            try:
                await fn()
            except Exception:
                log.error("periodic_task_failed", task=name, exc_info=True)
