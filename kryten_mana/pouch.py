"""Mana pouches — the units held by one owner — and the global decay sweep.

Every pouch mutation runs under the owner's lock from a shared
:class:`~kryten_mana.utils.OwnerLocks` table, on top of the atomic upserts in
the database layer. The decay sweep takes no owner lock; a unit merged into
while a sweep deletes it simply loses to whichever write lands last.

When the manager is given audit ledgers, transfers between owners and uses
of mana are recorded there after the units have moved.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from uuid import UUID

from .database import ManaDatabase
from .errors import NotFound
from .ledgers import TransferLedger, UseLedger
from .owners import IdentityInterner
from .utils import OwnerLocks, now_utc


class ManaPouch:
    """Operations scoped to a single owner id."""

    def __init__(self, owner_id: int, manager: PouchManager) -> None:
        self.owner_id = owner_id
        self._manager = manager
        self._db = manager.database

    def __repr__(self) -> str:
        return f"ManaPouch(owner_id={self.owner_id})"

    @property
    def _lock(self) -> asyncio.Lock:
        return self._manager.locks.get(self.owner_id)

    async def add_unit(self, content: int, gain_time: datetime, creator: UUID) -> None:
        """Merge ``content`` into the unit at ``gain_time``.

        A new unit is created if none exists; otherwise contents add and the
        existing creator is kept.
        """
        if content <= 0:
            raise ValueError(f"Mana content must be positive, got {content}")
        creator_id = await self._manager.interner.intern(creator)
        async with self._lock:
            await self._db.add_mana_unit(self.owner_id, gain_time, content, creator_id)

    async def remove_unit(self, gain_time: datetime) -> None:
        async with self._lock:
            await self._db.delete_mana_unit(self.owner_id, gain_time)

    async def set_unit_content(self, gain_time: datetime, new_content: int) -> None:
        if new_content < 0:
            raise ValueError(f"Mana content must not be negative, got {new_content}")
        async with self._lock:
            await self._db.set_mana_unit_content(self.owner_id, gain_time, new_content)

    async def transfer_until(
        self, to_owner_id: int, cutoff: datetime, now: datetime | None = None
    ) -> int:
        """Hand every unit gained at or before ``cutoff`` to another owner.

        Used when one identity is retired into another. Returns how many
        units left this pouch; the mana they held goes to the transfer log.
        """
        if to_owner_id == self.owner_id:
            return 0
        # Lock both owners in id order so two opposite transfers cannot deadlock
        first, second = sorted((self.owner_id, to_owner_id))
        async with self._manager.locks.get(first), self._manager.locks.get(second):
            moved, content = await self._db.transfer_units_until(self.owner_id, to_owner_id, cutoff)
        self._manager.logger.info(
            "Transferred %d mana units (%d mana) from owner %d to %d (until %s)",
            moved, content, self.owner_id, to_owner_id, cutoff.isoformat(),
        )
        ledger = self._manager.transfer_ledger
        if content > 0 and ledger is not None:
            await ledger.log_transfer(self.owner_id, to_owner_id, content, now)
        return moved

    async def delete_until(self, cutoff: datetime) -> int:
        async with self._lock:
            return await self._db.delete_units_until(self.owner_id, cutoff)

    async def load(self) -> list[tuple[datetime, int]]:
        """(gain_time, content) pairs, oldest first."""
        return await self._db.load_mana_units(self.owner_id)

    async def creator_of(self, gain_time: datetime) -> UUID:
        creator = await self._db.get_unit_creator(self.owner_id, gain_time)
        if creator is None:
            raise NotFound(f"Owner {self.owner_id} has no mana unit at {gain_time.isoformat()}")
        return creator

    async def content(self, now: datetime | None = None) -> int:
        """Mana that has not rotted yet."""
        return await self._db.get_mana_content(self.owner_id, since=self._manager.rot_cutoff(now))

    async def spend(self, amount: int, now: datetime | None = None) -> bool:
        """Consume ``amount`` from the oldest unrotted units first.

        Returns False, changing nothing, if the pouch holds less.
        """
        return await self._consume(amount, now) is not None

    async def use(
        self,
        amount: int,
        user: UUID,
        pearled: UUID,
        is_upgrade: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Spend ``amount`` on a pearled target and record it in the use log.

        One use row is written per creator whose mana was consumed. Returns
        False, changing and logging nothing, if the pouch holds less.
        """
        now = now or now_utc()
        taken = await self._consume(amount, now)
        if taken is None:
            return False
        ledger = self._manager.use_ledger
        if ledger is not None:
            for creator_id, portion in taken.items():
                creator = await self._manager.interner.lookup(creator_id)
                await ledger.log_use(creator, user, pearled, portion, is_upgrade, now)
        return True

    async def _consume(self, amount: int, now: datetime | None) -> dict[int, int] | None:
        if amount <= 0:
            raise ValueError(f"Spend amount must be positive, got {amount}")
        async with self._lock:
            taken = await self._db.consume_oldest(
                self.owner_id, amount, since=self._manager.rot_cutoff(now),
            )
        if taken is None:
            self._manager.logger.debug("Owner %d cannot afford %d mana", self.owner_id, amount)
        return taken


class PouchManager:
    """Hands out pouches and runs the global decay sweep."""

    def __init__(
        self,
        database: ManaDatabase,
        interner: IdentityInterner,
        rot_time: timedelta,
        locks: OwnerLocks | None = None,
        logger: logging.Logger | None = None,
        transfer_ledger: TransferLedger | None = None,
        use_ledger: UseLedger | None = None,
    ) -> None:
        self.database = database
        self.interner = interner
        self.rot_time = rot_time
        self.locks = locks if locks is not None else OwnerLocks()
        self.logger = logger or logging.getLogger("mana.pouch")
        self.transfer_ledger = transfer_ledger
        self.use_ledger = use_ledger

    def pouch(self, owner_id: int) -> ManaPouch:
        return ManaPouch(owner_id, self)

    def rot_cutoff(self, now: datetime | None = None) -> datetime:
        """Units gained strictly before this instant have rotted."""
        return (now or now_utc()) - self.rot_time

    async def decay_sweep(self, now: datetime | None = None) -> int:
        """Delete every rotted unit across all owners. Returns the count."""
        cutoff = self.rot_cutoff(now)
        removed = await self.database.delete_units_older_than(cutoff)
        if removed:
            self.logger.info("Decay sweep removed %d mana units older than %s", removed, cutoff.isoformat())
        return removed
