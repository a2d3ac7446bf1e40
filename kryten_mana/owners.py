"""Owner identity: the owner registry and the identity interner.

Both are resolve-or-create lookups backed by ``INSERT OR IGNORE`` upserts, so
concurrent first use of the same key converges on one row. Results are
cached in memory; the cache is only ever filled from storage, never ahead
of it.
"""

from __future__ import annotations

import logging
from uuid import UUID

from .database import ManaDatabase
from .errors import NotFound
from .models import OwnerType, owner_type_label


class IdentityInterner:
    """Maps external UUIDs (creators, users, pearled targets) to small ints."""

    def __init__(self, database: ManaDatabase, logger: logging.Logger | None = None) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("mana.identities")
        self._ids: dict[UUID, int] = {}
        self._uuids: dict[int, UUID] = {}

    def _remember(self, external_id: UUID, internal_id: int) -> None:
        self._ids[external_id] = internal_id
        self._uuids[internal_id] = external_id

    async def intern(self, external_id: UUID) -> int:
        internal_id = self._ids.get(external_id)
        if internal_id is None:
            internal_id = await self._db.intern_identity(external_id)
            self._remember(external_id, internal_id)
        return internal_id

    async def lookup(self, internal_id: int) -> UUID:
        """Reverse lookup. Raises NotFound for an unknown id."""
        external_id = self._uuids.get(internal_id)
        if external_id is not None:
            return external_id
        external_id = await self._db.get_identity(internal_id)
        if external_id is None:
            raise NotFound(f"No identity with id {internal_id}")
        self._remember(external_id, internal_id)
        return external_id

    async def warm(self) -> int:
        """Load every known identity into the cache. Returns the count."""
        for external_id, internal_id in (await self._db.load_identities()).items():
            self._remember(external_id, internal_id)
        return len(self._ids)


class OwnerRegistry:
    """Maps (foreign_id, foreign_type) to the permanent internal owner id."""

    def __init__(self, database: ManaDatabase, logger: logging.Logger | None = None) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("mana.owners")
        self._owners: dict[OwnerType, dict[int, int]] = {t: {} for t in OwnerType}

    async def resolve(self, foreign_id: int, foreign_type: OwnerType) -> int:
        foreign_type = OwnerType(foreign_type)
        cached = self._owners[foreign_type].get(foreign_id)
        if cached is not None:
            return cached
        owner_id = await self._db.resolve_owner(foreign_id, foreign_type)
        self._owners[foreign_type][foreign_id] = owner_id
        self._logger.debug(
            "Resolved %s %d to mana owner %d",
            owner_type_label(foreign_type), foreign_id, owner_id,
        )
        return owner_id

    async def load_all(self) -> dict[OwnerType, dict[int, int]]:
        """Snapshot of every owner, grouped by type. Also refreshes the cache."""
        owners: dict[OwnerType, dict[int, int]] = {t: {} for t in OwnerType}
        for record in await self._db.load_owners():
            owners[record.foreign_type][record.foreign_id] = record.id
        for owner_type, mapping in owners.items():
            self._owners[owner_type].update(mapping)
        self._logger.info(
            "Loaded mana owners: %s",
            ", ".join(f"{len(m)} {owner_type_label(t)}" for t, m in owners.items()),
        )
        return owners
