"""Typed failures raised by the mana ledger.

Storage errors are translated once, in the database layer, and propagate to
the caller unchanged. Nothing in the ledger retries on its own.
"""

from __future__ import annotations


class ManaError(Exception):
    """Base class for ledger failures."""


class StorageUnavailable(ManaError):
    """Transient storage failure (locked, busy, cannot open, timed out)."""


class ConstraintViolation(ManaError):
    """A uniqueness or foreign-key constraint was violated.

    The upsert contracts make this unreachable in correct use, so it signals
    a programming error (e.g. a unit for an unregistered owner).
    """


class NotFound(ManaError):
    """A point lookup found nothing."""
