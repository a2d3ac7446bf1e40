"""Ledger records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from uuid import UUID


class OwnerType(IntEnum):
    """Kind of entity a mana owner stands for. Stored as its integer value."""

    PLAYER = 0
    GROUP = 1


def owner_type_label(owner_type: OwnerType) -> str:
    """Lower-case label used in logs and metrics."""
    if owner_type is OwnerType.PLAYER:
        return "player"
    elif owner_type is OwnerType.GROUP:
        return "group"
    raise ValueError(f"Unknown owner type: {owner_type!r}")


@dataclass(frozen=True)
class OwnerRecord:
    id: int
    foreign_id: int
    foreign_type: OwnerType


@dataclass(frozen=True)
class ManaUnit:
    """One time-stamped unit of mana, keyed by (owner_id, gain_time)."""

    content: int
    gain_time: datetime
    owner_id: int
    creator_id: int


@dataclass(frozen=True)
class ManaGainStat:
    """Login-streak state. ``last_day`` is an epoch day number."""

    owner_id: int
    streak: int = 0
    last_day: int = 0


@dataclass(frozen=True)
class TransferLogEntry:
    log_time: datetime
    from_owner: int
    to_owner: int
    amount: int


@dataclass(frozen=True)
class UseLogEntry:
    log_time: datetime
    creator: UUID
    user: UUID
    pearled_target: UUID
    is_upgrade: bool
    amount: int


@dataclass(frozen=True)
class RewardGranted:
    """Returned by the streak tracker when a login earned a reward."""

    streak: int
    amount: int
