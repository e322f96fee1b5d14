from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Tuple

from autofetch.host.interfaces import TaskRunner

logger = logging.getLogger(__name__)

TaskKey = Tuple[str, Tuple[Any, ...]]


class AsyncioTaskRunner(TaskRunner):
    """
    In-process task runner backed by asyncio tasks.

    Tasks with the same name and arguments are not queued twice while one is pending.
    Concurrency is bounded by a semaphore. A failing task is logged and does not affect the
    others.
    """

    def __init__(self, *, concurrency: int) -> None:
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency)))
        self._tasks: Dict[TaskKey, asyncio.Task] = {}

    def pending_count(self, name: str) -> int:
        return sum(1 for (task_name, _), task in self._tasks.items() if task_name == name and not task.done())

    def queue_unique(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        description: str = "",
    ) -> bool:
        key: TaskKey = (name, tuple(args))
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            logger.debug("Task already queued. task=%s args=%s", name, args)
            return False

        task = asyncio.create_task(self._run(func, args), name=name)
        self._tasks[key] = task
        task.add_done_callback(partial(self._on_done, key, description))
        logger.debug("Task queued. task=%s args=%s description=%s", name, args, description)
        return True

    async def _run(self, func: Callable[..., Awaitable[Any]], args: Tuple[Any, ...]) -> Any:
        async with self._semaphore:
            return await func(*args)

    def _on_done(self, key: TaskKey, description: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        try:
            task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception(
                "Background task failed. task=%s args=%s description=%s",
                key[0],
                key[1],
                description,
            )

    async def wait_idle(self) -> None:
        """Wait until every queued task, including ones queued meanwhile, has finished."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
