"""Login streaks and the rewards they earn.

A streak is evaluated at most once per UTC day per owner:

* already credited today (or the clock went backwards) → nothing happens;
* last credited yesterday → the streak grows by one;
* anything else, including a brand-new owner → the streak restarts at 1.

The advanced stat is written before the reward is handed back, so a crash
can lose a reward but never pay one twice.
"""

from __future__ import annotations

import bisect
import logging
from datetime import datetime
from typing import Callable

from .config import RewardsConfig
from .database import ManaDatabase
from .models import ManaGainStat, RewardGranted
from .utils import OwnerLocks, epoch_day, now_utc

RewardPolicy = Callable[[int], int]


class TableRewardPolicy:
    """Reward looked up from a ``{streak_day: amount}`` table.

    The entry for the highest day not above the streak applies; below the
    first entry nothing is paid. With an empty table the reward is the
    streak itself, capped at ``max_reward``.
    """

    def __init__(self, table: dict[int, int] | None = None, max_reward: int = 10) -> None:
        self._days = sorted(table or {})
        self._amounts = [table[d] for d in self._days] if table else []
        self._max_reward = max_reward

    @classmethod
    def from_config(cls, config: RewardsConfig) -> TableRewardPolicy:
        return cls(config.streak_rewards, config.max_reward)

    def __call__(self, streak: int) -> int:
        if not self._days:
            return max(0, min(streak, self._max_reward))
        idx = bisect.bisect_right(self._days, streak)
        return self._amounts[idx - 1] if idx else 0


def advance(stat: ManaGainStat, today: int) -> ManaGainStat | None:
    """Next stat for a login on ``today``, or None if nothing changes.

    A zero streak means the owner was never credited, whatever ``last_day``
    holds.
    """
    if stat.streak == 0:
        return ManaGainStat(stat.owner_id, 1, today)
    if stat.last_day >= today:
        return None
    if stat.last_day == today - 1:
        return ManaGainStat(stat.owner_id, stat.streak + 1, today)
    return ManaGainStat(stat.owner_id, 1, today)


class StreakTracker:
    """Per-owner login streak state, persisted through the database."""

    def __init__(
        self,
        database: ManaDatabase,
        reward_for_streak: RewardPolicy,
        locks: OwnerLocks | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = database
        self._reward_for_streak = reward_for_streak
        self._locks = locks if locks is not None else OwnerLocks()
        self._logger = logger or logging.getLogger("mana.streaks")

    async def get(self, owner_id: int) -> ManaGainStat:
        return await self._db.get_or_create_gain_stat(owner_id)

    async def load_all(self) -> dict[int, ManaGainStat]:
        return await self._db.load_gain_stats()

    async def update(self, owner_id: int, now: datetime | None = None) -> RewardGranted | None:
        """Evaluate one login. Returns the reward only when one was triggered."""
        today = epoch_day(now or now_utc())
        async with self._locks.get(owner_id):
            stat = await self._db.get_or_create_gain_stat(owner_id)
            updated = advance(stat, today)
            if updated is None:
                return None
            await self._db.put_gain_stat(updated)

        amount = self._reward_for_streak(updated.streak)
        self._logger.debug(
            "Owner %d streak %d -> %d (reward %d)",
            owner_id, stat.streak, updated.streak, amount,
        )
        return RewardGranted(streak=updated.streak, amount=amount)
