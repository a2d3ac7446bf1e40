"""Shared utility helpers for kryten-mana."""

from __future__ import annotations

import asyncio
import uuid
import weakref
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)
_ONE_DAY = timedelta(days=1)

# Namespace for deriving stable player UUIDs from chat usernames
USER_NAMESPACE = uuid.UUID("6f0c4a3e-9b1d-5c2a-8e47-1d2b3c4d5e6f")


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_millis(dt: datetime) -> int:
    """Epoch milliseconds, truncating anything finer."""
    return (ensure_utc(dt) - EPOCH) // _ONE_MS


def ceil_millis(dt: datetime) -> int:
    """Epoch milliseconds, rounding any finer remainder up.

    ``stored < ceil_millis(t)`` is exactly ``stored < t`` for millisecond
    timestamps.
    """
    return -((EPOCH - ensure_utc(dt)) // _ONE_MS)


def from_millis(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def epoch_day(dt: datetime) -> int:
    """Whole UTC days since 1970-01-01."""
    return (ensure_utc(dt) - EPOCH) // _ONE_DAY


def user_uuid(channel: str, username: str) -> uuid.UUID:
    """Stable external identity for a chat user. Case-insensitive."""
    return uuid.uuid5(USER_NAMESPACE, f"{channel.lower()}:{username.lower()}")


class OwnerLocks:
    """Per-owner ``asyncio.Lock`` table.

    Locks are weakly held: an owner nobody is waiting on drops out of the
    table on its own.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, owner_id: int) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
