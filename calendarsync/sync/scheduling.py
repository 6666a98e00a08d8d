"""Scheduling capability injected into the sync orchestrator.

Recurring runs are owned by whoever owns the scheduler instance (a service
entry point, a test), never by module state.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


@runtime_checkable
class Scheduler(Protocol):
    """Something that can run a coroutine job repeatedly."""

    def schedule(self, name: str, interval: float, job: Job, run_immediately: bool = True) -> str:
        """Register ``job`` to run every ``interval`` seconds; returns a handle."""
        ...

    def cancel(self, handle: str) -> bool:
        """Stop a scheduled job; returns ``False`` for unknown handles."""
        ...

    async def shutdown(self) -> None:
        """Cancel every job and wait for in-flight runs to finish."""
        ...


class AsyncioScheduler:
    """Scheduler running each job as a background task on the current event loop.

    A job that raises is logged and retried at its next interval; one failing
    job never stops the loop.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_events: dict[str, asyncio.Event] = {}

    @property
    def jobs(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def schedule(self, name: str, interval: float, job: Job, run_immediately: bool = True) -> str:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if name in self._tasks and not self._tasks[name].done():
            raise ValueError(f"Job {name!r} is already scheduled")

        stop_event = asyncio.Event()
        self._stop_events[name] = stop_event
        self._tasks[name] = asyncio.create_task(
            self._run_loop(name, interval, job, stop_event, run_immediately),
            name=f"calendarsync-{name}",
        )
        logger.info(f"Scheduled job {name!r} every {interval:.0f}s")
        return name

    def cancel(self, handle: str) -> bool:
        task = self._tasks.pop(handle, None)
        stop_event = self._stop_events.pop(handle, None)
        if task is None:
            return False
        if stop_event is not None:
            stop_event.set()
        task.cancel()
        logger.info(f"Cancelled job {handle!r}")
        return True

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for handle in list(self._tasks):
            self.cancel(handle)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_loop(
        self,
        name: str,
        interval: float,
        job: Job,
        stop_event: asyncio.Event,
        run_immediately: bool,
    ) -> None:
        if run_immediately:
            await self._run_job(name, job)

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self._run_job(name, job)

    @staticmethod
    async def _run_job(name: str, job: Job) -> None:
        logger.debug(f"Running scheduled job {name!r}")
        try:
            await job()
        except Exception:
            logger.exception(f"Scheduled job {name!r} failed")
