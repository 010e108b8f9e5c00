"""Service orchestrator — SoundBotApp.

Startup sequence:
config → DB init → ledger restore → catalog → Helix → chat → reconcile
rewards → mapping → open redemptions → EventSub → scheduler → metrics → run.
The now-playing tracker starts with the renderer when enabled.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from pathlib import Path

from . import __version__
from .announcer import ChatAnnouncer
from .catalog import CommandCatalog, read_catalog_file
from .chat_client import TwitchChatClient
from .config import SoundBotConfig, load_config
from .cooldowns import CooldownTracker
from .database import BotDatabase
from .dispatcher import Dispatcher
from .eventsub_client import EventSubClient
from .helix_client import REQUIRED_SCOPES, HelixClient, describe_error
from .metrics_server import SoundBotMetricsServer
from .music_tracker import MusicTracker
from .reward_mapping import RewardMappingTable
from .reward_reconciler import (
    ReconcileReport,
    RewardReconciler,
    RewardSpec,
    specs_from_commands,
    specs_from_vip,
)
from .scheduler import Scheduler
from .sound_renderer import SoundRenderer, missing_sound_files
from .statistics import BotStatistics
from .vip_ledger import VipLedger


def catalog_entries(config: SoundBotConfig, logger: logging.Logger | None = None) -> list:
    """Declared commands: YAML ``sound_commands`` first, then the pipe file."""
    entries: list = list(config.sound_commands)
    if config.catalog.path:
        entries.extend(read_catalog_file(config.catalog.path, logger))
    return entries


def title_index(specs: list[RewardSpec]) -> dict[str, str]:
    return {spec.title: spec.command_key for spec in specs}


class SoundBotApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str, rng: random.Random | None = None) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("soundbot")
        self._rng = rng or random.Random()

        # Always-present core state
        self.catalog = CommandCatalog(logger=self.logger)
        self.cooldowns = CooldownTracker(self.logger)
        self.mapping = RewardMappingTable(self.logger)
        self.ledger = VipLedger(rng=self._rng, logger=self.logger)
        self.statistics = BotStatistics()

        # Components (initialized in start())
        self.config: SoundBotConfig | None = None
        self.db: BotDatabase | None = None
        self.helix: HelixClient | None = None
        self.reconciler: RewardReconciler | None = None
        self.announcer: ChatAnnouncer | None = None
        self.renderer: SoundRenderer | None = None
        self.dispatcher: Dispatcher | None = None
        self.chat: TwitchChatClient | None = None
        self.eventsub: EventSubClient | None = None
        self.scheduler: Scheduler | None = None
        self.metrics_server: SoundBotMetricsServer | None = None
        self.music: MusicTracker | None = None

        # State
        self.running = False
        self.rewards_status = "not reconciled"
        self.last_report: ReconcileReport | None = None
        self._start_time: float | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ══════════════════════════════════════════════════════════
    #  Startup
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start every component, then block until ``stop()``."""
        self.logger.info("Starting twitch-soundbot...")
        self._start_time = time.time()

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        cfg = self.config
        self.logger.info("Config loaded for channel #%s", cfg.twitch.channel)

        # 2. Database + VIP ledger
        self.db = BotDatabase(cfg.database.path, self.logger)
        await self.db.initialize()
        self.ledger.configure(cfg.vip.renew_on_repurchase)
        self.ledger.load(await self.db.load_vip_records())
        self.logger.info("Database initialized: %s", cfg.database.path)

        # 3. Catalog
        self.catalog.configure(cfg.sounds.directory, cfg.cooldowns.default_seconds)
        self.catalog.reload(catalog_entries(cfg, self.logger))
        missing = missing_sound_files(self.catalog.all())
        if missing:
            self.logger.warning("%d sound file(s) missing: %s", len(missing), ", ".join(missing))

        # 4. Helix
        self.helix = HelixClient(cfg.twitch, self.logger)
        await self.helix.start()
        await self._check_token()
        await self.helix.resolve_broadcaster(cfg.twitch.channel)
        self.reconciler = RewardReconciler(self.helix, cfg.rewards, self.logger)

        # 5. Output side: renderer, music tracker, chat, announcer
        self.renderer = SoundRenderer(cfg.sounds, self.logger)
        await self.renderer.start()

        if cfg.music.enabled:
            self.music = MusicTracker(cfg.music.host, cfg.music.port, self.logger)
            try:
                await self.music.start()
            except OSError as e:
                self.logger.error("Music tracker could not listen on port %d: %s", cfg.music.port, e)

        self.dispatcher = Dispatcher(
            config=cfg,
            catalog=self.catalog,
            cooldowns=self.cooldowns,
            mapping=self.mapping,
            ledger=self.ledger,
            renderer=self.renderer,
            announcer=None,
            moderation=self.helix,
            statistics=self.statistics,
            database=self.db,
            music=self.music,
            logger=self.logger,
        )
        self.chat = TwitchChatClient(cfg.twitch, self.dispatcher.submit_chat, self.logger)
        self.announcer = ChatAnnouncer(cfg, self.chat, self.logger, rng=self._rng)
        self.dispatcher.set_announcer(self.announcer)
        await self.announcer.start()
        self._dispatch_task = asyncio.create_task(self.dispatcher.run())
        await self.chat.start()

        # 6. Rewards: reconcile, build mapping, open the redemption path
        if cfg.rewards.enabled:
            await self.reconcile_rewards()
            self.eventsub = EventSubClient(cfg.twitch, self.helix, self.dispatcher.submit_redemption, self.logger)
            await self.eventsub.start()

        # 7. Scheduler
        self.scheduler = Scheduler(cfg, self.ledger, self.db, self.logger)
        await self.scheduler.start()

        # 8. Metrics
        if cfg.metrics.enabled:
            self.metrics_server = SoundBotMetricsServer(self, cfg.metrics.host, cfg.metrics.port)
            await self.metrics_server.start()

        # 9. Mark running
        self.running = True
        self.logger.info("twitch-soundbot started successfully (v%s)", __version__)

        # 10. Block until stopped
        await self._stop_event.wait()

    async def _check_token(self) -> None:
        try:
            info = await self.helix.validate_token()
        except Exception as e:
            self.logger.error("Token validation failed: %s", describe_error(e))
            return
        self.logger.info("Authenticated as %s", info.login)
        for feature, scopes in REQUIRED_SCOPES.items():
            absent = [s for s in scopes if s not in info.scopes]
            if absent:
                self.logger.warning("Token lacks %s for %s", ", ".join(absent), feature)

    def desired_rewards(self) -> list[RewardSpec]:
        cfg = self.config
        return (
            specs_from_commands(self.catalog.reward_enabled(), cfg.rewards.background_color)
            + specs_from_vip(cfg.vip)
        )

    async def reconcile_rewards(self) -> ReconcileReport:
        """Converge remote rewards, rebuild the mapping, release held redemptions."""
        desired = self.desired_rewards()
        self.dispatcher.mark_rewards_pending()
        report = await self.reconciler.reconcile(desired)
        self.last_report = report
        self.mapping.rebuild(report.id_map, title_index(desired))
        if report.success:
            self.rewards_status = f"ok ({report.summary()})"
        else:
            self.rewards_status = f"degraded: {report.error}"
            self.logger.warning("Rewards not fully reconciled: %s", report.error)
        self.dispatcher.mark_rewards_ready()
        return report

    # ══════════════════════════════════════════════════════════
    #  Hot reload
    # ══════════════════════════════════════════════════════════

    async def reload(self) -> str:
        """Re-read config.yaml, swap it into every component and reconcile again."""
        try:
            new_config = load_config(str(self.config_path))
        except Exception as e:
            self.logger.error("Config reload failed: %s", e)
            return f"Config reload failed: {e}"

        self.config = new_config
        self.catalog.configure(new_config.sounds.directory, new_config.cooldowns.default_seconds)
        result = self.catalog.reload(catalog_entries(new_config, self.logger))
        self.ledger.configure(new_config.vip.renew_on_repurchase)
        if self.dispatcher:
            self.dispatcher.update_config(new_config)
        if self.announcer:
            self.announcer.update_config(new_config)
        if self.renderer:
            self.renderer.update_config(new_config.sounds)
        if self.scheduler:
            self.scheduler.update_config(new_config)
        if self.reconciler:
            self.reconciler.update_config(new_config.rewards)

        message = f"Config reloaded: {result.loaded} command(s), {result.skipped} skipped"
        if self.reconciler and new_config.rewards.enabled:
            report = await self.reconcile_rewards()
            message += f"; rewards {report.summary()}"
        self.logger.info(message)
        return message

    # ══════════════════════════════════════════════════════════
    #  Shutdown
    # ══════════════════════════════════════════════════════════

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if self._stop_event.is_set():
            return
        self.logger.info("Shutting down twitch-soundbot...")
        self.running = False

        if self.metrics_server:
            await self.metrics_server.stop()
        if self.music:
            await self.music.stop()
        if self.scheduler:
            await self.scheduler.stop()
        if self.eventsub:
            await self.eventsub.stop()
        if (
            self.reconciler
            and self.config
            and self.config.rewards.enabled
            and self.config.rewards.disable_on_shutdown
        ):
            await self.reconciler.disable_all()
        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        if self.announcer:
            await self.announcer.stop()
        if self.chat:
            await self.chat.stop()
        if self.renderer:
            await self.renderer.stop()
        if self.helix:
            await self.helix.stop()
        if self.db:
            await self.db.save_vip_records(self.ledger.snapshot())

        self._stop_event.set()
        self.logger.info("twitch-soundbot stopped.")
