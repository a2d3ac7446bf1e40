"""Scheduler module — periodic mana decay."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import ManaConfig
    from .pouch import PouchManager


class Scheduler:
    """Runs the decay sweep every ``decay.sweep_interval_minutes``."""

    def __init__(
        self,
        config: ManaConfig,
        pouches: PouchManager,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._pouches = pouches
        self._logger = logger or logging.getLogger("mana.scheduler")
        self._tasks: list[asyncio.Task] = []
        self.units_decayed: int = 0

    async def start(self) -> None:
        """Start all scheduled tasks."""
        if self._config.decay.enabled:
            self._tasks.append(asyncio.create_task(self._decay_loop()))
            self._logger.info(
                "Decay sweep task started (interval: %d min, rot time: %.1f days)",
                self._config.decay.sweep_interval_minutes,
                self._config.decay.rot_time_days,
            )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _decay_loop(self) -> None:
        while True:
            try:
                await self._execute_decay()
            except Exception:
                self._logger.exception("Decay sweep failed")
            await asyncio.sleep(max(self._config.decay.sweep_interval_minutes, 1) * 60)

    async def _execute_decay(self) -> int:
        removed = await self._pouches.decay_sweep()
        self.units_decayed += removed
        return removed
