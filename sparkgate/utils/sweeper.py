"""
SparkGate -- Periodic reaper for in-process state.

Rate windows and dedup records are created per caller / per key and would
grow without bound.  A single background task calls each registered
``sweep()`` on a fixed interval.  Sweeps are synchronous and short, so they
never interleave with request handling mid-mutation.

Usage::

    sweeper = PeriodicSweeper(interval=60.0)
    sweeper.register("rate_limiter", limiter.sweep)
    sweeper.register("dedup", dedup.sweep)
    sweeper.start()
    ...
    await sweeper.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Owns one asyncio task that runs registered sweep callables."""

    def __init__(self, interval: float = 60.0) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.interval = interval
        self._sweeps: dict[str, Callable[[], int]] = {}
        self._task: asyncio.Task[None] | None = None
        self.total_runs: int = 0

    def register(self, name: str, sweep: Callable[[], int]) -> None:
        self._sweeps[name] = sweep

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> dict[str, int]:
        """Run every sweep now.  A failing sweep is logged and skipped."""
        removed: dict[str, int] = {}
        for name, sweep in self._sweeps.items():
            try:
                removed[name] = sweep()
            except Exception as exc:
                logger.error("sweeper.failed: %s: %s", name, exc)
        self.total_runs += 1
        return removed

    async def _run(self) -> None:
        logger.info("Starting periodic sweeps every %.1fs", self.interval)
        while True:
            try:
                await asyncio.sleep(self.interval)
                removed = self.sweep_once()
                if any(removed.values()):
                    logger.debug("sweeper.completed", extra={"removed": removed})
            except asyncio.CancelledError:
                logger.info("Periodic sweep task cancelled")
                raise

    def start(self) -> asyncio.Task[None]:
        """Start the background task (idempotent) and return it."""
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="sparkgate-sweeper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
