"""Scheduler: Named, cancellable periodic tasks on the running event loop.

Each job runs in its own asyncio task: wait one interval, run the job, repeat.
A job that raises is logged and keeps its schedule. Cancelling a task (or
:meth:`Scheduler.stop` for all of them) takes effect immediately: the task
is cancelled at its current suspension point, so a job that is mid-flight
never reaches its next statement.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

# A job may be a plain function or return an awaitable
Job = Callable[[], object]


class Scheduler:
    """Owns the periodic tasks of one service.

    :ivar sleep: Coroutine used to wait between runs (seconds).
    """

    def __init__(self, sleep: Callable[[float], Awaitable[object]] = asyncio.sleep) -> None:
        self.sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelled: list[asyncio.Task] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    @property
    def names(self) -> list[str]:
        return list(self._tasks)

    def every(
        self,
        name: str,
        interval_ms: int,
        job: Job,
        *,
        run_immediately: bool = False,
    ) -> asyncio.Task:
        """Start running ``job`` every ``interval_ms``.

        Must be called with an event loop running.

        :param name: Unique task name.
        :param interval_ms: Delay between runs.
        :param job: Sync function or coroutine function with no arguments.
        :param run_immediately: Run once before the first wait.
        :returns: The created task.
        :raises ValueError: On a duplicate name or a non-positive interval.
        """
        if interval_ms <= 0:
            raise ValueError(f"[{name}] interval_ms must be positive")
        if name in self._tasks:
            raise ValueError(f"Task '{name}' is already scheduled")

        task = asyncio.get_running_loop().create_task(
            self._loop(name, interval_ms / 1000, job, run_immediately),
            name=name,
        )
        self._tasks[name] = task
        logger.debug(f"[scheduler] Scheduled {name} every {interval_ms}ms")
        return task

    async def _loop(
        self, name: str, interval_s: float, job: Job, run_immediately: bool
    ) -> None:
        if not run_immediately:
            await self.sleep(interval_s)
        while True:
            try:
                result = job()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"[scheduler] Task {name} failed")
            await self.sleep(interval_s)

    def cancel(self, name: str) -> bool:
        """Cancel one task.

        :returns: False if no task has that name.
        """
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        self._cancelled = [t for t in self._cancelled if not t.done()]
        self._cancelled.append(task)
        logger.debug(f"[scheduler] Cancelled {name}")
        return True

    def stop(self) -> None:
        """Cancel every task. Synchronous; safe to call repeatedly."""
        for name in list(self._tasks):
            self.cancel(name)

    async def aclose(self) -> None:
        """Cancel every task and wait for them to finish unwinding."""
        self.stop()
        cancelled, self._cancelled = self._cancelled, []
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
