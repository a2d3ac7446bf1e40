"""Tests for kryten_mana.pouch — per-owner mana operations."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta

import pytest

from kryten_mana.database import ManaDatabase
from kryten_mana.errors import ConstraintViolation, NotFound
from kryten_mana.ledgers import TransferLedger, UseLedger
from kryten_mana.owners import IdentityInterner
from kryten_mana.pouch import PouchManager
from kryten_mana.utils import OwnerLocks

from tests.conftest import EPOCH_PLUS_1S, ROT_TIME, T0


def at(seconds: int):
    return T0 + timedelta(seconds=seconds)


class TestAddUnit:
    """Merge-add semantics."""

    async def test_fresh_owner_scenario(self, pouches: PouchManager, owner: int):
        """add → load → add again at the same instant merges, creator kept."""
        creator_x, creator_y = uuid.uuid4(), uuid.uuid4()
        pouch = pouches.pouch(owner)

        await pouch.add_unit(100, EPOCH_PLUS_1S, creator_x)
        assert await pouch.load() == [(EPOCH_PLUS_1S, 100)]

        await pouch.add_unit(50, EPOCH_PLUS_1S, creator_y)
        assert await pouch.load() == [(EPOCH_PLUS_1S, 150)]
        assert await pouch.creator_of(EPOCH_PLUS_1S) == creator_x

    async def test_distinct_instants_stay_separate(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        creator = uuid.uuid4()
        await pouch.add_unit(1, at(0), creator)
        await pouch.add_unit(2, at(0) + timedelta(milliseconds=1), creator)
        assert len(await pouch.load()) == 2

    async def test_same_instant_different_owners(self, pouches: PouchManager, owner: int, other_owner: int):
        creator = uuid.uuid4()
        await pouches.pouch(owner).add_unit(3, at(0), creator)
        await pouches.pouch(other_owner).add_unit(4, at(0), creator)
        assert await pouches.pouch(owner).load() == [(at(0), 3)]
        assert await pouches.pouch(other_owner).load() == [(at(0), 4)]

    @pytest.mark.parametrize("content", [0, -5])
    async def test_non_positive_content_rejected(self, pouches: PouchManager, owner: int, content: int):
        with pytest.raises(ValueError):
            await pouches.pouch(owner).add_unit(content, at(0), uuid.uuid4())

    async def test_unknown_owner(self, pouches: PouchManager):
        with pytest.raises(ConstraintViolation):
            await pouches.pouch(4242).add_unit(5, at(0), uuid.uuid4())

    async def test_concurrent_merges_not_lost(self, pouches: PouchManager, owner: int):
        """Many callers adding to the same unit never lose an increment."""
        pouch = pouches.pouch(owner)
        creators = [uuid.uuid4() for _ in range(25)]
        await asyncio.gather(*(pouch.add_unit(2, at(0), c) for c in creators))
        assert await pouch.load() == [(at(0), 50)]
        assert await pouch.creator_of(at(0)) in creators


class TestPointOperations:
    """Snipe and adjust."""

    async def test_remove_unit(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(5, at(0), uuid.uuid4())
        await pouch.add_unit(6, at(1), uuid.uuid4())
        await pouch.remove_unit(at(0))
        assert await pouch.load() == [(at(1), 6)]

    async def test_remove_absent_is_noop(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.remove_unit(at(0))
        await pouch.remove_unit(at(0))
        assert await pouch.load() == []

    async def test_set_unit_content(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(5, at(0), uuid.uuid4())
        await pouch.set_unit_content(at(0), 2)
        assert await pouch.load() == [(at(0), 2)]
        await pouch.set_unit_content(at(0), 0)
        assert await pouch.load() == [(at(0), 0)]

    async def test_set_absent_is_noop(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.set_unit_content(at(0), 9)
        assert await pouch.load() == []

    async def test_set_negative_rejected(self, pouches: PouchManager, owner: int):
        with pytest.raises(ValueError):
            await pouches.pouch(owner).set_unit_content(at(0), -1)

    async def test_creator_of_missing_unit(self, pouches: PouchManager, owner: int):
        with pytest.raises(NotFound):
            await pouches.pouch(owner).creator_of(at(0))


class TestRangeOperations:
    """transfer_until and delete_until."""

    async def test_transfer_until(self, pouches: PouchManager, owner: int, other_owner: int):
        """A{1,2,3,4} → transfer_until(B, 3) leaves A{4} and gives B{1,2,3}."""
        a, b = pouches.pouch(owner), pouches.pouch(other_owner)
        creator = uuid.uuid4()
        for s in (1, 2, 3, 4):
            await a.add_unit(s * 10, at(s), creator)
        await b.add_unit(99, at(10), creator)

        moved = await a.transfer_until(other_owner, at(3))

        assert moved == 3
        assert await a.load() == [(at(4), 40)]
        assert await b.load() == [(at(1), 10), (at(2), 20), (at(3), 30), (at(10), 99)]

    async def test_transfer_keeps_creator(self, pouches: PouchManager, owner: int, other_owner: int):
        creator = uuid.uuid4()
        await pouches.pouch(owner).add_unit(5, at(1), creator)
        await pouches.pouch(owner).transfer_until(other_owner, at(1))
        assert await pouches.pouch(other_owner).creator_of(at(1)) == creator

    async def test_transfer_merges_collisions(self, pouches: PouchManager, owner: int, other_owner: int):
        """Receiver already holding a unit at the same instant gets the sum."""
        b_creator = uuid.uuid4()
        await pouches.pouch(owner).add_unit(5, at(1), uuid.uuid4())
        await pouches.pouch(owner).add_unit(6, at(2), uuid.uuid4())
        await pouches.pouch(other_owner).add_unit(7, at(1), b_creator)

        await pouches.pouch(owner).transfer_until(other_owner, at(5))

        assert await pouches.pouch(owner).load() == []
        assert await pouches.pouch(other_owner).load() == [(at(1), 12), (at(2), 6)]
        assert await pouches.pouch(other_owner).creator_of(at(1)) == b_creator

    async def test_transfer_to_self_is_noop(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(5, at(1), uuid.uuid4())
        assert await pouch.transfer_until(owner, at(5)) == 0
        assert await pouch.load() == [(at(1), 5)]

    async def test_delete_until_inclusive(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        for s in (1, 2, 3):
            await pouch.add_unit(1, at(s), uuid.uuid4())
        assert await pouch.delete_until(at(2)) == 2
        assert await pouch.load() == [(at(3), 1)]

    async def test_load_ordered(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        for s in (3, 1, 2):
            await pouch.add_unit(s, at(s), uuid.uuid4())
        assert [t for t, _ in await pouch.load()] == [at(1), at(2), at(3)]


class TestSpending:
    """Content and oldest-first spending."""

    async def test_content_ignores_rotted_units(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        now = at(0)
        await pouch.add_unit(5, now - pouches.rot_time - timedelta(seconds=1), uuid.uuid4())
        await pouch.add_unit(7, now - timedelta(hours=1), uuid.uuid4())
        assert await pouch.content(now) == 7

    async def test_spend_oldest_first(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(10, at(1), uuid.uuid4())
        await pouch.add_unit(20, at(2), uuid.uuid4())

        assert await pouch.spend(15, now=at(3)) is True
        assert await pouch.load() == [(at(2), 15)]

    async def test_spend_exact(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(10, at(1), uuid.uuid4())
        assert await pouch.spend(10, now=at(3)) is True
        assert await pouch.load() == []

    async def test_spend_insufficient_changes_nothing(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(10, at(1), uuid.uuid4())
        assert await pouch.spend(11, now=at(3)) is False
        assert await pouch.load() == [(at(1), 10)]

    async def test_rotted_mana_not_spendable(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        now = at(0)
        await pouch.add_unit(10, now - pouches.rot_time - timedelta(seconds=1), uuid.uuid4())
        assert await pouch.spend(5, now=now) is False

    async def test_concurrent_spends_never_overdraw(self, pouches: PouchManager, owner: int):
        pouch = pouches.pouch(owner)
        await pouch.add_unit(10, at(1), uuid.uuid4())
        results = await asyncio.gather(*(pouch.spend(4, now=at(2)) for _ in range(5)))
        assert results.count(True) == 2
        assert await pouch.content(at(2)) == 2

    async def test_spend_rejects_non_positive(self, pouches: PouchManager, owner: int):
        with pytest.raises(ValueError):
            await pouches.pouch(owner).spend(0, now=at(0))


@pytest.fixture
def audited(database: ManaDatabase, interner: IdentityInterner, locks: OwnerLocks) -> PouchManager:
    """Pouch manager wired to both audit ledgers."""
    log = logging.getLogger("test")
    return PouchManager(
        database, interner, ROT_TIME, locks=locks, logger=log,
        transfer_ledger=TransferLedger(database, logger=log),
        use_ledger=UseLedger(database, interner, log),
    )


class TestAuditTrail:
    """Ledger-changing operations leave audit rows."""

    async def test_transfer_is_logged(self, audited: PouchManager, owner: int, other_owner: int):
        creator = uuid.uuid4()
        for s in (1, 2, 3):
            await audited.pouch(owner).add_unit(s * 10, at(s), creator)

        await audited.pouch(owner).transfer_until(other_owner, at(2), now=at(5))

        entries = await audited.transfer_ledger.recent_transfers(owner)
        assert len(entries) == 1
        assert (entries[0].from_owner, entries[0].to_owner, entries[0].amount) == (owner, other_owner, 30)
        assert entries[0].log_time == at(5)

    async def test_empty_transfer_not_logged(self, audited: PouchManager, owner: int, other_owner: int):
        assert await audited.pouch(owner).transfer_until(other_owner, at(2), now=at(5)) == 0
        assert await audited.transfer_ledger.recent_transfers(owner) == []

    async def test_self_transfer_not_logged(self, audited: PouchManager, owner: int):
        await audited.pouch(owner).add_unit(5, at(1), uuid.uuid4())
        await audited.pouch(owner).transfer_until(owner, at(2), now=at(5))
        assert await audited.transfer_ledger.recent_transfers(owner) == []

    async def test_use_logs_per_creator(self, audited: PouchManager, owner: int):
        first, second = uuid.uuid4(), uuid.uuid4()
        user, target = uuid.uuid4(), uuid.uuid4()
        pouch = audited.pouch(owner)
        await pouch.add_unit(4, at(1), first)
        await pouch.add_unit(10, at(2), second)

        assert await pouch.use(6, user, target, is_upgrade=True, now=at(3)) is True

        uses = await audited.use_ledger.recent_uses()
        assert sorted((u.creator, u.amount) for u in uses) == sorted([(first, 4), (second, 2)])
        assert all(u.user == user and u.pearled_target == target and u.is_upgrade for u in uses)
        assert await pouch.content(at(3)) == 8

    async def test_failed_use_logs_nothing(self, audited: PouchManager, owner: int):
        pouch = audited.pouch(owner)
        await pouch.add_unit(4, at(1), uuid.uuid4())
        assert await pouch.use(5, uuid.uuid4(), uuid.uuid4(), now=at(3)) is False
        assert await audited.use_ledger.recent_uses() == []
        assert await pouch.content(at(3)) == 4
