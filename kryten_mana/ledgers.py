"""Audit logs for mana transfers and mana use."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from .database import ManaDatabase
from .models import TransferLogEntry, UseLogEntry
from .owners import IdentityInterner
from .utils import EPOCH, ensure_utc, now_utc


class TransferLedger:
    """Owner-to-owner transfers, accumulated per time bucket."""

    def __init__(
        self,
        database: ManaDatabase,
        bucket: timedelta = timedelta(seconds=1),
        logger: logging.Logger | None = None,
    ) -> None:
        if bucket <= timedelta(0):
            raise ValueError("Transfer log bucket must be positive")
        self._db = database
        self._bucket = bucket
        self._logger = logger or logging.getLogger("mana.ledger")

    def bucket_start(self, when: datetime) -> datetime:
        when = ensure_utc(when)
        return EPOCH + ((when - EPOCH) // self._bucket) * self._bucket

    async def log_transfer(
        self, from_owner_id: int, to_owner_id: int, amount: int, now: datetime | None = None
    ) -> None:
        """Add ``amount`` to the entry for this pair in the current bucket."""
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")
        log_time = self.bucket_start(now or now_utc())
        await self._db.log_transfer(log_time, from_owner_id, to_owner_id, amount)
        self._logger.debug("Logged transfer of %d mana from %d to %d", amount, from_owner_id, to_owner_id)

    async def recent_transfers(self, owner_id: int, limit: int = 50) -> list[TransferLogEntry]:
        return await self._db.get_transfers(owner_id, limit)


class UseLedger:
    """One row per mana use event."""

    def __init__(
        self,
        database: ManaDatabase,
        interner: IdentityInterner,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = database
        self._interner = interner
        self._logger = logger or logging.getLogger("mana.ledger")

    async def log_use(
        self,
        creator: UUID,
        user: UUID,
        pearled: UUID,
        amount: int,
        is_upgrade: bool,
        now: datetime | None = None,
    ) -> None:
        creator_id = await self._interner.intern(creator)
        user_id = await self._interner.intern(user)
        pearled_id = await self._interner.intern(pearled)
        await self._db.log_use(now or now_utc(), creator_id, user_id, pearled_id, is_upgrade, amount)
        self._logger.debug("Logged use of %d mana by %s on %s", amount, user, pearled)

    async def recent_uses(self, limit: int = 50) -> list[UseLogEntry]:
        return await self._db.get_uses(limit)
