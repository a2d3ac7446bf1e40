"""Tests for the periodic decay task."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from kryten_mana.config import ManaConfig
from kryten_mana.pouch import PouchManager
from kryten_mana.scheduler import Scheduler
from kryten_mana.utils import now_utc

from tests.conftest import T0, make_config_dict


class TestScheduler:

    async def test_execute_decay_counts(self, sample_config: ManaConfig, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(4, T0 - timedelta(days=400), uuid.uuid4())
        await pouch.add_unit(6, now_utc(), uuid.uuid4())

        sched = Scheduler(sample_config, pouches, logging.getLogger("test"))
        assert await sched._execute_decay() == 1
        assert sched.units_decayed == 1
        assert [c for _, c in await pouch.load()] == [6]

    async def test_loop_survives_errors(self, sample_config: ManaConfig):
        pouches = MagicMock()
        pouches.decay_sweep = AsyncMock(side_effect=RuntimeError("boom"))
        sched = Scheduler(sample_config, pouches, logging.getLogger("test"))

        await sched.start()
        await asyncio.sleep(0.05)
        await sched.stop()

        pouches.decay_sweep.assert_awaited()
        assert sched.units_decayed == 0

    async def test_disabled_starts_nothing(self, pouches: PouchManager):
        config = ManaConfig(**make_config_dict(decay={"enabled": False}))
        sched = Scheduler(config, pouches, logging.getLogger("test"))
        await sched.start()
        assert sched._tasks == []
        await sched.stop()

    async def test_stop_cancels_tasks(self, sample_config: ManaConfig, pouches: PouchManager):
        sched = Scheduler(sample_config, pouches, logging.getLogger("test"))
        await sched.start()
        task = sched._tasks[0]
        await sched.stop()
        assert task.cancelled() or task.done()
        assert sched._tasks == []
