"""CLI entry point for twitch-soundbot."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .main import SoundBotApp


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Twitch SoundBot — chat and channel-points sound effects")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    parser.add_argument("--import-vip", type=str, metavar="JSON", help="Import VIP records from a JSON file and exit")
    parser.add_argument("--export-vip", type=str, metavar="JSON", help="Export VIP records to a JSON file and exit")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    for candidate in [
        "/etc/twitch-soundbot/config.yaml",
        "./config.yaml",
    ]:
        if Path(candidate).exists():
            return candidate
    return None


async def run_vip_transfer(config_path: str, args: argparse.Namespace, logger: logging.Logger) -> None:
    from .config import load_config
    from .database import BotDatabase

    config = load_config(config_path)
    db = BotDatabase(config.database.path, logger)
    await db.initialize()
    if args.import_vip:
        records = await db.import_vip_json(args.import_vip)
        logger.info("Imported %d VIP record(s)", len(records))
    if args.export_vip:
        count = await db.export_vip_json(args.export_vip)
        logger.info("Exported %d VIP record(s) to %s", count, args.export_vip)


async def main_async() -> None:
    args = parse_args()
    setup_logging(args.log_level)
    logger = logging.getLogger("soundbot")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    if args.validate_config:
        from .config import load_config

        try:
            load_config(config_path)
            logger.info("Config is valid.")
        except Exception as e:
            logger.error("Config validation failed: %s", e)
            sys.exit(1)
        return

    if args.import_vip or args.export_vip:
        try:
            await run_vip_transfer(config_path, args, logger)
        except Exception as e:
            logger.error("VIP transfer failed: %s", e)
            sys.exit(1)
        return

    app = SoundBotApp(config_path)

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))
        loop.add_signal_handler(signal.SIGHUP, lambda: asyncio.ensure_future(app.reload()))

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
