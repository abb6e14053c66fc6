"""Cancellable periodic work on the asyncio event loop."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run an async callback every ``interval_seconds`` until stopped.

    Stopping sets a cancellation event: no further runs are triggered, but
    a run that is already in flight completes.
    """

    def __init__(self, interval_seconds: float, callback: Callable[[], Awaitable[object]],
                 name: str = "periodic"):
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.name = name
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop.

        A loop that was stopped but has not exited yet is not reused.
        """
        if self.running and self._stop_event is not None:
            return self._task

        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._stop_event))
        logger.info(f"Started {self.name} every {self.interval_seconds}s")
        return self._task

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()
            logger.info(f"Stopped {self.name}")
        self._stop_event = None

    async def wait_stopped(self):
        """Wait for the loop to exit after ``stop``."""
        if self._task is not None:
            await self._task

    async def _run(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

            if stop_event.is_set():
                break

            await self._run_once()

    async def _run_once(self):
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"{self.name} run failed: {e}")
