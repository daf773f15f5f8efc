"""Base class for background jobs that tick on a fixed interval."""
from __future__ import annotations

import abc
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicMonitor(abc.ABC):
    """Run ``tick`` every ``interval_s`` seconds until stopped."""

    def __init__(self, interval_s: float, *, run_immediately: bool = False) -> None:
        self.interval_s = interval_s
        self.run_immediately = run_immediately
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def start(self) -> None:
        """Start the monitor's background loop."""
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._runner = asyncio.create_task(self._run_safe())

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        if self._runner is None:
            return
        self._stop_event.set()
        await self._runner
        self._runner = None

    async def _run_safe(self) -> None:
        if self.run_immediately:
            await self._tick_safe()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                await self._tick_safe()

    async def _tick_safe(self) -> None:
        try:
            result = self.tick()
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("%s tick failed", type(self).__name__)

    @abc.abstractmethod
    def tick(self) -> Any:
        """Work performed once per interval."""


class IntervalTask(PeriodicMonitor):
    """Periodic wrapper around a plain callback."""

    def __init__(self, interval_s: float, callback: Callable[[], Any], *, run_immediately: bool = False) -> None:
        super().__init__(interval_s, run_immediately=run_immediately)
        self._callback = callback

    def tick(self) -> Any:
        return self._callback()
