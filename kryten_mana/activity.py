"""Player activity — turns logins into streak rewards.

This is the boundary between the ledger and the chat host: it decides
whether a player may receive the reward their streak earned. A restrained
player still advances their streak but gets nothing, and a reward that
cannot be stored after the streak moved is reported as lost rather than
silently dropped.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from .config import ManaConfig
from .errors import ManaError
from .host import KrytenHost
from .models import OwnerType, RewardGranted
from .owners import IdentityInterner, OwnerRegistry
from .pouch import PouchManager
from .streaks import StreakTracker
from .utils import now_utc


class ActivityManager:
    """Evaluates login events for chat users."""

    def __init__(
        self,
        config: ManaConfig,
        registry: OwnerRegistry,
        interner: IdentityInterner,
        pouches: PouchManager,
        streaks: StreakTracker,
        host: KrytenHost,
        logger: logging.Logger | None = None,
    ) -> None:
        self._registry = registry
        self._interner = interner
        self._pouches = pouches
        self._streaks = streaks
        self._host = host
        self._logger = logger or logging.getLogger("mana.activity")
        self.update_config(config)

        # Counters (for metrics)
        self.logins_processed: int = 0
        self.rewards_granted: int = 0
        self.rewards_withheld: int = 0
        self.rewards_lost: int = 0
        self.mana_granted: int = 0

    def update_config(self, config: ManaConfig) -> None:
        """Hot-swap the config reference."""
        self._config = config
        self._ignored_users: set[str] = {u.lower() for u in config.ignored_users}

    async def owner_for(self, channel: str, username: str) -> int:
        """Owner id of a chat user, registering them on first sight."""
        _, owner_id = await self._resolve_player(channel, username)
        return owner_id

    async def _resolve_player(self, channel: str, username: str) -> tuple[UUID, int]:
        player = self._host.remember(channel, username)
        foreign_id = await self._interner.intern(player)
        return player, await self._registry.resolve(foreign_id, OwnerType.PLAYER)

    async def handle_login(
        self, channel: str, username: str, now: datetime | None = None
    ) -> RewardGranted | None:
        """Evaluate a login. Returns the reward if one was delivered."""
        if username.lower() in self._ignored_users:
            return None
        if not self._config.rewards.enabled:
            return None

        now = now or now_utc()
        player, owner_id = await self._resolve_player(channel, username)
        self.logins_processed += 1

        grant = await self._streaks.update(owner_id, now)
        if grant is None or grant.amount <= 0:
            return None

        currency = self._config.currency.name
        if not await self._host.is_eligible_for_reward(player):
            self.rewards_withheld += 1
            self._logger.info(
                "Withheld day %d login reward from restrained user %s", grant.streak, username,
            )
            await self._host.notify(
                player, self._config.rewards.withheld_message.format(currency=currency),
            )
            return None

        try:
            await self._pouches.pouch(owner_id).add_unit(grant.amount, now, player)
        except ManaError:
            self.rewards_lost += 1
            self._logger.exception(
                "Login reward of %d mana for %s lost; streak already advanced to %d",
                grant.amount, username, grant.streak,
            )
            await self._host.notify(
                player, self._config.rewards.lost_message.format(currency=currency),
            )
            return None

        self.rewards_granted += 1
        self.mana_granted += grant.amount
        await self._host.notify(
            player,
            self._config.rewards.granted_message.format(
                amount=grant.amount, currency=currency, streak=grant.streak,
            ),
        )
        return grant
