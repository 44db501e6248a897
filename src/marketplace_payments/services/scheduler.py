from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs an async job every `interval_seconds` on the current event loop.

    A failing run is logged and the loop keeps going; `stop()` cancels the
    loop and waits for it to finish.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_on_start: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self._job = job
        self._interval = interval_seconds
        self._run_on_start = run_on_start
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("Scheduled %s every %.0f seconds", self.name, self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped %s", self.name)

    async def run_once(self) -> Any:
        self.runs += 1
        try:
            return await self._job()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Periodic task %s failed", self.name)
            return None

    async def _loop(self) -> None:
        if self._run_on_start:
            await self.run_once()
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()
