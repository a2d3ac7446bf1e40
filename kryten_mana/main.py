"""Service orchestrator — ManaApp.

Follows the canonical kryten-py microservice pattern:
config → DB init → components → register handlers → connect → metrics → run.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from pathlib import Path

from kryten import KrytenClient

from . import __version__
from .activity import ActivityManager
from .config import ManaConfig, load_config
from .database import ManaDatabase
from .host import KrytenHost
from .ledgers import TransferLedger, UseLedger
from .metrics_server import ManaMetricsServer
from .owners import IdentityInterner, OwnerRegistry
from .pouch import PouchManager
from .scheduler import Scheduler
from .streaks import StreakTracker, TableRewardPolicy
from .utils import OwnerLocks


class ManaApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("mana")

        # Components (initialized in start())
        self.config: ManaConfig | None = None
        self.client: KrytenClient | None = None
        self.db: ManaDatabase | None = None
        self.interner: IdentityInterner | None = None
        self.registry: OwnerRegistry | None = None
        self.pouches: PouchManager | None = None
        self.streaks: StreakTracker | None = None
        self.transfer_ledger: TransferLedger | None = None
        self.use_ledger: UseLedger | None = None
        self.host: KrytenHost | None = None
        self.activity: ActivityManager | None = None
        self.scheduler: Scheduler | None = None
        self.metrics_server: ManaMetricsServer | None = None

        # State
        self._running = False
        self._start_time: float | None = None

        # Counters (for metrics)
        self.events_processed: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def build(self, config: ManaConfig) -> None:
        """Create the database and ledger components. No network."""
        self.config = config

        self.db = ManaDatabase(
            config.database.path,
            logging.getLogger("mana.db"),
            busy_timeout=config.database.busy_timeout_seconds,
        )
        await self.db.initialize()
        self.logger.info("Database initialized: %s", config.database.path)

        locks = OwnerLocks()
        self.interner = IdentityInterner(self.db)
        self.registry = OwnerRegistry(self.db)
        self.transfer_ledger = TransferLedger(
            self.db, bucket=timedelta(seconds=config.audit.transfer_bucket_seconds),
        )
        self.use_ledger = UseLedger(self.db, self.interner)
        self.pouches = PouchManager(
            self.db,
            self.interner,
            rot_time=timedelta(days=config.decay.rot_time_days),
            locks=locks,
            transfer_ledger=self.transfer_ledger,
            use_ledger=self.use_ledger,
        )
        self.streaks = StreakTracker(
            self.db,
            TableRewardPolicy.from_config(config.rewards),
            locks=locks,
        )
        self.host = KrytenHost(config, client=self.client)
        self.activity = ActivityManager(
            config, self.registry, self.interner, self.pouches, self.streaks, self.host,
        )
        self.scheduler = Scheduler(config, self.pouches)

        # Warm caches
        identities = await self.interner.warm()
        await self.registry.load_all()
        self.logger.info("Identity cache warmed: %d identities", identities)

    async def start(self) -> None:
        """Start the mana service — canonical kryten-py sequence."""
        self.logger.info("Starting kryten-mana...")
        self._start_time = time.time()

        # 1. Load and validate config
        config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d channel(s)", len(config.channels))

        # 2. Database and ledger components
        await self.build(config)

        # 3. Create KrytenClient and wire it into the host bridge
        self.client = KrytenClient(self.config)
        self.host.attach_client(self.client)

        # 4. Register event handlers BEFORE connect
        @self.client.on("adduser")
        async def handle_join(event):
            try:
                self.events_processed += 1
                await self.activity.handle_login(event.channel, event.username)
            except Exception:
                self.logger.exception("adduser handler error for %s", getattr(event, "username", "?"))

        # 5. Connect to NATS
        await self.client.connect()
        self.logger.info("Connected to NATS")

        # 6. Start metrics server
        metrics_port = self.config.metrics.port if self.config.metrics else 28287
        self.metrics_server = ManaMetricsServer(self, port=metrics_port)
        await self.metrics_server.start()
        self.logger.info("Metrics server started on port %d", metrics_port)

        # 7. Start scheduler (decay sweep)
        await self.scheduler.start()

        # 8. Mark running
        self._running = True
        self.logger.info("kryten-mana started successfully (v%s)", __version__)

        # 9. Block on client event loop
        await self.client.run()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            return
        self.logger.info("Shutting down kryten-mana...")
        self._running = False

        if self.scheduler:
            await self.scheduler.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.client:
            await self.client.stop()

        self.logger.info("kryten-mana stopped.")
