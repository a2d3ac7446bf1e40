"""Shared test fixtures for kryten-mana."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from kryten_mana.activity import ActivityManager
from kryten_mana.config import ManaConfig
from kryten_mana.database import ManaDatabase
from kryten_mana.host import KrytenHost
from kryten_mana.models import OwnerType
from kryten_mana.owners import IdentityInterner, OwnerRegistry
from kryten_mana.pouch import PouchManager
from kryten_mana.streaks import StreakTracker, TableRewardPolicy
from kryten_mana.utils import EPOCH, OwnerLocks

# Fixed clock for deterministic tests
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
EPOCH_PLUS_1S = EPOCH + timedelta(milliseconds=1000)
ROT_TIME = timedelta(days=14)


# ── Minimal config dict matching ManaConfig schema ───────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "nats": {"servers": ["nats://localhost:4222"]},
        "channels": [{"domain": "cytu.be", "channel": "testchannel"}],
        "service": {"name": "mana"},
        "database": {"path": ":memory:"},
        "currency": {"name": "Mana", "symbol": "M"},
        "ignored_users": ["IgnoredBot"],
        "decay": {"enabled": True, "rot_time_days": 14, "sweep_interval_minutes": 5},
        "rewards": {
            "enabled": True,
            "streak_rewards": {},
            "max_reward": 10,
            "restrained_users": ["Pearled"],
        },
        "audit": {"transfer_bucket_seconds": 1},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> ManaConfig:
    """Return a parsed ManaConfig."""
    return ManaConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_mana.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[ManaDatabase, None]:
    """Provide an initialized database with temp file."""
    db = ManaDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def locks() -> OwnerLocks:
    return OwnerLocks()


@pytest.fixture
def interner(database: ManaDatabase) -> IdentityInterner:
    return IdentityInterner(database, logging.getLogger("test"))


@pytest.fixture
def registry(database: ManaDatabase) -> OwnerRegistry:
    return OwnerRegistry(database, logging.getLogger("test"))


@pytest.fixture
def pouches(database: ManaDatabase, interner: IdentityInterner, locks: OwnerLocks) -> PouchManager:
    return PouchManager(database, interner, ROT_TIME, locks=locks, logger=logging.getLogger("test"))


@pytest.fixture
def streaks(database: ManaDatabase, locks: OwnerLocks) -> StreakTracker:
    return StreakTracker(database, TableRewardPolicy(), locks=locks, logger=logging.getLogger("test"))


@pytest_asyncio.fixture
async def owner(registry: OwnerRegistry) -> int:
    """A registered player owner."""
    return await registry.resolve(1, OwnerType.PLAYER)


@pytest_asyncio.fixture
async def other_owner(registry: OwnerRegistry) -> int:
    """A second registered player owner."""
    return await registry.resolve(2, OwnerType.PLAYER)


@pytest.fixture
def mock_client() -> MagicMock:
    """Return a mock KrytenClient with async methods."""
    client = MagicMock()
    client.send_pm = AsyncMock(return_value="corr-id-123")
    client.send_chat = AsyncMock(return_value="corr-id-456")
    client.connect = AsyncMock()
    client.run = AsyncMock()
    client.stop = AsyncMock()
    client.subscribe = AsyncMock()
    return client


@pytest.fixture
def host(sample_config: ManaConfig, mock_client: MagicMock) -> KrytenHost:
    return KrytenHost(sample_config, client=mock_client, logger=logging.getLogger("test"))


@pytest.fixture
def activity(
    sample_config: ManaConfig,
    registry: OwnerRegistry,
    interner: IdentityInterner,
    pouches: PouchManager,
    streaks: StreakTracker,
    host: KrytenHost,
) -> ActivityManager:
    return ActivityManager(
        sample_config, registry, interner, pouches, streaks, host,
        logger=logging.getLogger("test"),
    )


class MockKrytenClient:
    """Mock kryten-py client for integration testing.

    Records sent PMs and registered handlers for assertion.
    """

    def __init__(self) -> None:
        self.sent_pms: list[tuple[str, str, str]] = []
        self._handlers: dict[str, list] = {}

    async def send_pm(
        self, channel: str, username: str, message: str, *, domain: str | None = None,
    ) -> str:
        self.sent_pms.append((channel, username, message))
        return "mock-corr-id"

    def on(self, event_name: str):
        def decorator(func):
            self._handlers.setdefault(event_name, []).append(func)
            return func
        return decorator

    async def fire(self, event_name: str, event: Any) -> None:
        for handler in self._handlers.get(event_name, []):
            await handler(event)

    async def connect(self) -> None:
        pass

    async def run(self) -> None:
        pass

    async def stop(self) -> None:
        pass
