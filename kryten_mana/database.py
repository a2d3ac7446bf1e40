"""SQLite storage gateway for kryten-mana.

Each public method is async and hands a synchronous body to
``asyncio.run_in_executor(None, ...)``. A new connection is opened per call
(WAL mode, busy timeout, foreign keys on, Row factory) and closed on every
exit path. ``sqlite3`` errors are translated into :mod:`kryten_mana.errors`
here and nowhere else.

Timestamps are stored as integer epoch milliseconds.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Callable, TypeVar
from uuid import UUID

from .errors import ConstraintViolation, ManaError, StorageUnavailable
from .models import ManaGainStat, OwnerRecord, OwnerType, TransferLogEntry, UseLogEntry
from .utils import ceil_millis, from_millis, to_millis

T = TypeVar("T")


class ManaDatabase:
    """SQLite-backed persistence for the mana ledger."""

    def __init__(
        self,
        db_path: str,
        logger: logging.Logger | None = None,
        busy_timeout: float = 30.0,
    ) -> None:
        self._db_path = db_path
        self._logger = logger or logging.getLogger("mana.db")
        self._busy_timeout = busy_timeout

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def _translate(self, action: str, exc: sqlite3.Error) -> ManaError:
        self._logger.warning("Problem %s: %s", action, exc)
        if isinstance(exc, sqlite3.IntegrityError):
            return ConstraintViolation(f"{action}: {exc}")
        return StorageUnavailable(f"{action}: {exc}")

    async def _run(self, action: str, body: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``body`` on a fresh connection in the executor, then commit.

        Any failure rolls the whole call back.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> T:
            try:
                conn = self._get_connection()
            except sqlite3.Error as exc:
                raise self._translate(action, exc) from exc
            try:
                result = body(conn)
                conn.commit()
                return result
            except sqlite3.Error as exc:
                conn.rollback()
                raise self._translate(action, exc) from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run("creating tables", self._create_tables)

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS mana_owners (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                foreign_id INTEGER NOT NULL,
                foreign_type INTEGER NOT NULL,
                UNIQUE(foreign_id, foreign_type)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS mana_identities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT NOT NULL UNIQUE
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS mana_units (
                owner_id INTEGER NOT NULL REFERENCES mana_owners(id),
                gain_time INTEGER NOT NULL,
                content INTEGER NOT NULL CHECK (content >= 0),
                creator_id INTEGER NOT NULL REFERENCES mana_identities(id),
                PRIMARY KEY (owner_id, gain_time)
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_mana_units_gain_time ON mana_units(gain_time)"
        )

        conn.execute("""
            CREATE TABLE IF NOT EXISTS mana_stats (
                owner_id INTEGER PRIMARY KEY REFERENCES mana_owners(id),
                streak INTEGER NOT NULL,
                last_day INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS mana_transfer_log (
                log_time INTEGER NOT NULL,
                from_id INTEGER NOT NULL REFERENCES mana_owners(id),
                to_id INTEGER NOT NULL REFERENCES mana_owners(id),
                amount INTEGER NOT NULL,
                PRIMARY KEY (log_time, from_id, to_id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS mana_use_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                log_time INTEGER NOT NULL,
                creator_id INTEGER NOT NULL REFERENCES mana_identities(id),
                user_id INTEGER NOT NULL REFERENCES mana_identities(id),
                pearled_id INTEGER NOT NULL REFERENCES mana_identities(id),
                is_upgrade BOOLEAN NOT NULL,
                amount INTEGER NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_mana_use_log_time ON mana_use_log(log_time)"
        )
        self._logger.info("Database tables created/verified")

    # ══════════════════════════════════════════════════════════
    #  Owners & Identities
    # ══════════════════════════════════════════════════════════

    async def resolve_owner(self, foreign_id: int, foreign_type: OwnerType) -> int:
        """Return the owner id for a foreign reference, creating it if absent."""

        def _sync(conn: sqlite3.Connection) -> int:
            conn.execute(
                "INSERT OR IGNORE INTO mana_owners (foreign_id, foreign_type) VALUES (?, ?)",
                (foreign_id, int(foreign_type)),
            )
            row = conn.execute(
                "SELECT id FROM mana_owners WHERE foreign_id = ? AND foreign_type = ?",
                (foreign_id, int(foreign_type)),
            ).fetchone()
            return row["id"]

        return await self._run("registering mana owner", _sync)

    async def load_owners(self) -> list[OwnerRecord]:
        def _sync(conn: sqlite3.Connection) -> list[OwnerRecord]:
            rows = conn.execute(
                "SELECT id, foreign_id, foreign_type FROM mana_owners ORDER BY id"
            ).fetchall()
            return [
                OwnerRecord(r["id"], r["foreign_id"], OwnerType(r["foreign_type"]))
                for r in rows
            ]

        return await self._run("loading mana owners", _sync)

    async def intern_identity(self, external_id: UUID) -> int:
        """Return the internal id for an external UUID, creating it if absent."""

        def _sync(conn: sqlite3.Connection) -> int:
            conn.execute(
                "INSERT OR IGNORE INTO mana_identities (external_id) VALUES (?)",
                (str(external_id),),
            )
            row = conn.execute(
                "SELECT id FROM mana_identities WHERE external_id = ?",
                (str(external_id),),
            ).fetchone()
            return row["id"]

        return await self._run("registering identity", _sync)

    async def get_identity(self, internal_id: int) -> UUID | None:
        def _sync(conn: sqlite3.Connection) -> UUID | None:
            row = conn.execute(
                "SELECT external_id FROM mana_identities WHERE id = ?", (internal_id,)
            ).fetchone()
            return UUID(row["external_id"]) if row else None

        return await self._run("getting identity", _sync)

    async def load_identities(self) -> dict[UUID, int]:
        def _sync(conn: sqlite3.Connection) -> dict[UUID, int]:
            rows = conn.execute("SELECT id, external_id FROM mana_identities").fetchall()
            return {UUID(r["external_id"]): r["id"] for r in rows}

        return await self._run("loading identities", _sync)

    # ══════════════════════════════════════════════════════════
    #  Mana Units
    # ══════════════════════════════════════════════════════════

    async def add_mana_unit(
        self, owner_id: int, gain_time: datetime, content: int, creator_id: int
    ) -> None:
        """Insert a unit; on duplicate (owner_id, gain_time) add the contents.

        The existing row keeps its creator.
        """

        def _sync(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO mana_units (owner_id, gain_time, content, creator_id) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(owner_id, gain_time) DO UPDATE SET content = content + excluded.content",
                (owner_id, to_millis(gain_time), content, creator_id),
            )

        await self._run("adding mana unit", _sync)

    async def delete_mana_unit(self, owner_id: int, gain_time: datetime) -> bool:
        """Delete one unit. Returns False if it was not there."""

        def _sync(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "DELETE FROM mana_units WHERE owner_id = ? AND gain_time = ?",
                (owner_id, to_millis(gain_time)),
            )
            return cursor.rowcount > 0

        return await self._run("sniping mana unit", _sync)

    async def set_mana_unit_content(self, owner_id: int, gain_time: datetime, content: int) -> bool:
        """Replace a unit's content. Returns False if it was not there."""

        def _sync(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE mana_units SET content = ? WHERE owner_id = ? AND gain_time = ?",
                (content, owner_id, to_millis(gain_time)),
            )
            return cursor.rowcount > 0

        return await self._run("adjusting mana unit content", _sync)

    async def transfer_units_until(
        self, from_owner: int, to_owner: int, cutoff: datetime
    ) -> tuple[int, int]:
        """Move every unit with gain_time <= cutoff to another owner.

        Units move in place. Where the receiver already holds a unit at the
        same instant, the contents are merged into the receiver's row. All or
        nothing; returns (units that left ``from_owner``, mana they held).
        """
        cutoff_ms = to_millis(cutoff)

        def _sync(conn: sqlite3.Connection) -> tuple[int, int]:
            if from_owner == to_owner:
                return 0, 0
            conn.execute("BEGIN IMMEDIATE")
            content = conn.execute(
                "SELECT COALESCE(SUM(content), 0) FROM mana_units WHERE owner_id = ? AND gain_time <= ?",
                (from_owner, cutoff_ms),
            ).fetchone()[0]
            conn.execute(
                "UPDATE mana_units SET content = content + ("
                "  SELECT a.content FROM mana_units a"
                "  WHERE a.owner_id = ? AND a.gain_time = mana_units.gain_time"
                ") WHERE owner_id = ? AND gain_time <= ? AND gain_time IN ("
                "  SELECT gain_time FROM mana_units WHERE owner_id = ? AND gain_time <= ?"
                ")",
                (from_owner, to_owner, cutoff_ms, from_owner, cutoff_ms),
            )
            merged = conn.execute(
                "DELETE FROM mana_units WHERE owner_id = ? AND gain_time <= ? AND gain_time IN ("
                "  SELECT gain_time FROM mana_units WHERE owner_id = ?"
                ")",
                (from_owner, cutoff_ms, to_owner),
            ).rowcount
            moved = conn.execute(
                "UPDATE mana_units SET owner_id = ? WHERE owner_id = ? AND gain_time <= ?",
                (to_owner, from_owner, cutoff_ms),
            ).rowcount
            return merged + moved, content

        return await self._run("transferring mana units until specific timestamp", _sync)

    async def delete_units_until(self, owner_id: int, cutoff: datetime) -> int:
        def _sync(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "DELETE FROM mana_units WHERE owner_id = ? AND gain_time <= ?",
                (owner_id, to_millis(cutoff)),
            )
            return cursor.rowcount

        return await self._run("deleting mana units until specific timestamp", _sync)

    async def delete_units_older_than(self, cutoff: datetime) -> int:
        """Delete units of every owner with gain_time strictly before cutoff."""

        def _sync(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "DELETE FROM mana_units WHERE gain_time < ?", (ceil_millis(cutoff),)
            )
            return cursor.rowcount

        return await self._run("cleansing mana units", _sync)

    async def load_mana_units(self, owner_id: int) -> list[tuple[datetime, int]]:
        """Return (gain_time, content) pairs ordered by gain_time."""

        def _sync(conn: sqlite3.Connection) -> list[tuple[datetime, int]]:
            rows = conn.execute(
                "SELECT gain_time, content FROM mana_units WHERE owner_id = ? ORDER BY gain_time",
                (owner_id,),
            ).fetchall()
            return [(from_millis(r["gain_time"]), r["content"]) for r in rows]

        return await self._run("loading a mana pouch", _sync)

    async def get_unit_creator(self, owner_id: int, gain_time: datetime) -> UUID | None:
        def _sync(conn: sqlite3.Connection) -> UUID | None:
            row = conn.execute(
                "SELECT i.external_id FROM mana_units u "
                "JOIN mana_identities i ON i.id = u.creator_id "
                "WHERE u.owner_id = ? AND u.gain_time = ?",
                (owner_id, to_millis(gain_time)),
            ).fetchone()
            return UUID(row["external_id"]) if row else None

        return await self._run("getting creator UUID", _sync)

    async def get_mana_content(self, owner_id: int, since: datetime | None = None) -> int:
        """Sum of unit contents, optionally only units gained at or after ``since``."""
        since_ms = ceil_millis(since) if since is not None else None

        def _sync(conn: sqlite3.Connection) -> int:
            if since_ms is None:
                row = conn.execute(
                    "SELECT COALESCE(SUM(content), 0) AS total FROM mana_units WHERE owner_id = ?",
                    (owner_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COALESCE(SUM(content), 0) AS total FROM mana_units "
                    "WHERE owner_id = ? AND gain_time >= ?",
                    (owner_id, since_ms),
                ).fetchone()
            return row["total"]

        return await self._run("summing mana content", _sync)

    async def consume_oldest(
        self, owner_id: int, amount: int, since: datetime | None = None
    ) -> dict[int, int] | None:
        """Take ``amount`` from the owner's oldest units, in one transaction.

        Units gained before ``since`` are not spendable. Returns how much was
        taken per creator id, or None (pouch untouched) when there is not
        enough.
        """
        since_ms = ceil_millis(since) if since is not None else None

        def _sync(conn: sqlite3.Connection) -> dict[int, int] | None:
            conn.execute("BEGIN IMMEDIATE")
            if since_ms is None:
                rows = conn.execute(
                    "SELECT gain_time, content, creator_id FROM mana_units "
                    "WHERE owner_id = ? ORDER BY gain_time",
                    (owner_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT gain_time, content, creator_id FROM mana_units "
                    "WHERE owner_id = ? AND gain_time >= ? ORDER BY gain_time",
                    (owner_id, since_ms),
                ).fetchall()
            if sum(r["content"] for r in rows) < amount:
                return None

            taken: dict[int, int] = {}
            remaining = amount
            for r in rows:
                if remaining == 0:
                    break
                if r["content"] <= remaining:
                    conn.execute(
                        "DELETE FROM mana_units WHERE owner_id = ? AND gain_time = ?",
                        (owner_id, r["gain_time"]),
                    )
                    portion = r["content"]
                else:
                    conn.execute(
                        "UPDATE mana_units SET content = content - ? WHERE owner_id = ? AND gain_time = ?",
                        (remaining, owner_id, r["gain_time"]),
                    )
                    portion = remaining
                if portion:
                    taken[r["creator_id"]] = taken.get(r["creator_id"], 0) + portion
                remaining -= portion
            return taken

        return await self._run("consuming mana", _sync)

    # ══════════════════════════════════════════════════════════
    #  Gain Stats (login streaks)
    # ══════════════════════════════════════════════════════════

    async def get_or_create_gain_stat(self, owner_id: int) -> ManaGainStat:
        """Return the stat row, persisting a zeroed one first if absent."""

        def _sync(conn: sqlite3.Connection) -> ManaGainStat:
            conn.execute(
                "INSERT OR IGNORE INTO mana_stats (owner_id, streak, last_day) VALUES (?, 0, 0)",
                (owner_id,),
            )
            row = conn.execute(
                "SELECT owner_id, streak, last_day FROM mana_stats WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
            return ManaGainStat(row["owner_id"], row["streak"], row["last_day"])

        return await self._run("getting mana stat", _sync)

    async def put_gain_stat(self, stat: ManaGainStat) -> None:
        """Full replace of the stat row."""

        def _sync(conn: sqlite3.Connection) -> None:
            conn.execute(
                "REPLACE INTO mana_stats (owner_id, streak, last_day) VALUES (?, ?, ?)",
                (stat.owner_id, stat.streak, stat.last_day),
            )

        await self._run("updating mana stat", _sync)

    async def load_gain_stats(self) -> dict[int, ManaGainStat]:
        def _sync(conn: sqlite3.Connection) -> dict[int, ManaGainStat]:
            rows = conn.execute("SELECT owner_id, streak, last_day FROM mana_stats").fetchall()
            return {
                r["owner_id"]: ManaGainStat(r["owner_id"], r["streak"], r["last_day"])
                for r in rows
            }

        return await self._run("getting mana stats", _sync)

    # ══════════════════════════════════════════════════════════
    #  Audit Logs
    # ══════════════════════════════════════════════════════════

    async def log_transfer(
        self, log_time: datetime, from_owner: int, to_owner: int, amount: int
    ) -> None:
        """Accumulate ``amount`` into the (log_time, from, to) row."""

        def _sync(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO mana_transfer_log (log_time, from_id, to_id, amount) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(log_time, from_id, to_id) DO UPDATE SET amount = amount + excluded.amount",
                (to_millis(log_time), from_owner, to_owner, amount),
            )

        await self._run("logging mana transfer", _sync)

    async def log_use(
        self,
        log_time: datetime,
        creator_id: int,
        user_id: int,
        pearled_id: int,
        is_upgrade: bool,
        amount: int,
    ) -> None:
        def _sync(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO mana_use_log (log_time, creator_id, user_id, pearled_id, is_upgrade, amount) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (to_millis(log_time), creator_id, user_id, pearled_id, is_upgrade, amount),
            )

        await self._run("logging mana use", _sync)

    async def get_transfers(self, owner_id: int, limit: int = 50) -> list[TransferLogEntry]:
        """Transfers from or to an owner, newest first."""

        def _sync(conn: sqlite3.Connection) -> list[TransferLogEntry]:
            rows = conn.execute(
                "SELECT log_time, from_id, to_id, amount FROM mana_transfer_log "
                "WHERE from_id = ? OR to_id = ? ORDER BY log_time DESC LIMIT ?",
                (owner_id, owner_id, limit),
            ).fetchall()
            return [
                TransferLogEntry(from_millis(r["log_time"]), r["from_id"], r["to_id"], r["amount"])
                for r in rows
            ]

        return await self._run("getting mana transfers", _sync)

    async def get_uses(self, limit: int = 50) -> list[UseLogEntry]:
        """Use events newest first, identities resolved back to UUIDs."""

        def _sync(conn: sqlite3.Connection) -> list[UseLogEntry]:
            rows = conn.execute(
                "SELECT l.log_time, c.external_id AS creator, u.external_id AS user, "
                "p.external_id AS pearled, l.is_upgrade, l.amount "
                "FROM mana_use_log l "
                "JOIN mana_identities c ON c.id = l.creator_id "
                "JOIN mana_identities u ON u.id = l.user_id "
                "JOIN mana_identities p ON p.id = l.pearled_id "
                "ORDER BY l.log_time DESC, l.id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [
                UseLogEntry(
                    from_millis(r["log_time"]),
                    UUID(r["creator"]),
                    UUID(r["user"]),
                    UUID(r["pearled"]),
                    bool(r["is_upgrade"]),
                    r["amount"],
                )
                for r in rows
            ]

        return await self._run("getting mana uses", _sync)

    # ══════════════════════════════════════════════════════════
    #  Reporting
    # ══════════════════════════════════════════════════════════

    async def get_totals(self) -> dict[str, int]:
        """Row counts and mana in circulation, for metrics."""

        def _sync(conn: sqlite3.Connection) -> dict[str, int]:
            return {
                "owners": conn.execute("SELECT COUNT(*) FROM mana_owners").fetchone()[0],
                "units": conn.execute("SELECT COUNT(*) FROM mana_units").fetchone()[0],
                "mana": conn.execute(
                    "SELECT COALESCE(SUM(content), 0) FROM mana_units"
                ).fetchone()[0],
                "transfers": conn.execute("SELECT COUNT(*) FROM mana_transfer_log").fetchone()[0],
                "uses": conn.execute("SELECT COUNT(*) FROM mana_use_log").fetchone()[0],
                "active_streaks": conn.execute(
                    "SELECT COUNT(*) FROM mana_stats WHERE streak > 0"
                ).fetchone()[0],
            }

        return await self._run("getting ledger totals", _sync)
