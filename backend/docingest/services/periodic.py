"""
Periodic asyncio loop shared by the queue scheduler and the sweeper.

run_once() is called immediately on start() and then every `interval`
seconds until stop(). An exception inside one run is logged and the loop
keeps going; a single bad document must not stop the whole pipeline.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class PeriodicService(ABC):
    name: str = "periodic"

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @abstractmethod
    async def run_once(self) -> object:
        ...

    async def _run_loop(self) -> None:
        logger.info("%s started | interval=%.1fs", self.name, self._interval)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s run failed", self.name)
            await asyncio.sleep(self._interval)

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._run_loop(), name=self.name)
        assert self._task is not None
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("%s stopped", self.name)
