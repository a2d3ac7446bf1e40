"""Chat-host bridge: reward eligibility and best-effort notifications.

Players are known to the ledger only by a UUID derived from channel and
username. The bridge remembers which chat user each UUID belongs to so that
notifications can be delivered as PMs through kryten-py.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

from .utils import user_uuid

if TYPE_CHECKING:
    from kryten import KrytenClient

    from .config import ManaConfig


class RewardHost(Protocol):
    async def is_eligible_for_reward(self, external_id: UUID) -> bool: ...

    async def notify(self, external_id: UUID, message: str) -> None: ...


class KrytenHost:
    """RewardHost backed by a kryten-py client."""

    def __init__(
        self,
        config: ManaConfig,
        client: KrytenClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger("mana.host")
        self._users: dict[UUID, tuple[str, str]] = {}
        self.update_config(config)

    def update_config(self, config: ManaConfig) -> None:
        """Hot-swap the config reference."""
        self._config = config
        self._restrained: set[str] = {u.lower() for u in config.rewards.restrained_users}

    def attach_client(self, client: KrytenClient) -> None:
        """Route notifications through ``client`` from now on."""
        self._client = client

    def remember(self, channel: str, username: str) -> UUID:
        """Return the user's UUID and remember where to reach them."""
        external_id = user_uuid(channel, username)
        self._users[external_id] = (channel, username)
        return external_id

    async def is_eligible_for_reward(self, external_id: UUID) -> bool:
        user = self._users.get(external_id)
        if user is None:
            return True
        return user[1].lower() not in self._restrained

    async def notify(self, external_id: UUID, message: str) -> None:
        """Send a PM; failures are logged and dropped."""
        user = self._users.get(external_id)
        if user is None or self._client is None:
            self._logger.debug("No route to notify %s", external_id)
            return
        channel, username = user
        try:
            await self._client.send_pm(channel, username, message)
        except Exception:
            self._logger.debug("Failed to send PM to %s", username)
