"""CLI entry point for kryten-mana."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .main import ManaApp

CONFIG_CANDIDATES = (
    "/etc/kryten/kryten-mana/config.yaml",
    "./config.yaml",
)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kryten Mana — Decaying Mana Ledger Service")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    mode.add_argument("--sweep", action="store_true", help="Run one decay sweep against the database and exit")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    for candidate in CONFIG_CANDIDATES:
        if Path(candidate).exists():
            return candidate
    return None


async def sweep_once(config_path: str, logger: logging.Logger) -> int:
    """Build the ledger without connecting to NATS and decay it once."""
    from .config import load_config

    app = ManaApp(config_path)
    await app.build(load_config(config_path))
    removed = await app.pouches.decay_sweep()
    logger.info("Swept %d rotten mana units", removed)
    return removed


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("mana")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    if args.validate_config:
        from .config import load_config

        try:
            cfg = load_config(config_path)
        except Exception as e:
            logger.error("Config validation failed: %s", e)
            sys.exit(1)
        logger.info(
            "Config is valid: %d channel(s), rot time %.1f days, database %s",
            len(cfg.channels), cfg.decay.rot_time_days, cfg.database.path,
        )
        return

    if args.sweep:
        await sweep_once(config_path, logger)
        return

    app = ManaApp(config_path)

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
