"""Dispatcher — single event loop for chat commands and reward redemptions.

Both transports push events onto one queue; ``run()`` drains it and calls
``on_chat_event`` / ``on_redemption_event``. Chat is served immediately,
while redemptions that arrive before reward reconciliation has finished are
held back. ``mark_rewards_ready()`` puts them back at the head of the queue
so the same loop replays them in arrival order.

Users are identified by their login name; the display name only shows up
in chat text.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, Union

from .catalog import COMMAND_PREFIX
from .cooldowns import TriggerChannel
from .helix_client import describe_error
from .reward_reconciler import VIP_PURCHASE_KEY, VIP_STEAL_KEY
from .utils import normalize_username, now_utc
from .vip_ledger import PurchaseStatus

if TYPE_CHECKING:
    from .announcer import ChatAnnouncer
    from .catalog import CommandCatalog, SoundCommand
    from .config import SoundBotConfig
    from .cooldowns import CooldownTracker
    from .database import BotDatabase
    from .helix_client import HelixClient
    from .music_tracker import MusicTracker
    from .reward_mapping import RewardMappingTable
    from .sound_renderer import SoundRenderer
    from .statistics import BotStatistics
    from .vip_ledger import VipLedger


# ═══════════════════════════════════════════════════════════════
#  Events & outcomes
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ChatEvent:
    username: str
    text: str
    received_at: datetime = field(default_factory=now_utc)
    display_name: str = ""


@dataclass(frozen=True)
class RedemptionEvent:
    reward_id: str
    reward_title: str
    username: str
    received_at: datetime = field(default_factory=now_utc)
    display_name: str = ""


BotEvent = Union[ChatEvent, RedemptionEvent]


class DispatchOutcome(Enum):
    PLAYED = "played"
    COOLDOWN = "cooldown"
    UNKNOWN = "unknown"
    DISABLED = "disabled"
    IGNORED = "ignored"
    DEFERRED = "deferred"
    LISTED = "listed"
    NOW_PLAYING = "now_playing"
    VIP_GRANTED = "vip_granted"
    VIP_DENIED = "vip_denied"
    STEAL_SUCCESS = "steal_success"
    STEAL_FAILED = "steal_failed"


# ═══════════════════════════════════════════════════════════════
#  Dispatcher
# ═══════════════════════════════════════════════════════════════


class Dispatcher:
    """Routes trigger events to sounds or the VIP ledger."""

    def __init__(
        self,
        config: SoundBotConfig,
        catalog: CommandCatalog,
        cooldowns: CooldownTracker,
        mapping: RewardMappingTable,
        ledger: VipLedger,
        renderer: SoundRenderer,
        announcer: ChatAnnouncer,
        moderation: HelixClient | None,
        statistics: BotStatistics,
        database: BotDatabase | None = None,
        music: MusicTracker | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._cooldowns = cooldowns
        self._mapping = mapping
        self._ledger = ledger
        self._renderer = renderer
        self._announcer = announcer
        self._moderation = moderation
        self._stats = statistics
        self._db = database
        self._music = music
        self._logger = logger or logging.getLogger("soundbot.dispatcher")
        self._clock = clock

        self._ignored_users: set[str] = {normalize_username(u) for u in config.ignored_users}
        self._queue: asyncio.Queue[BotEvent] = asyncio.Queue()
        self._backlog: list[RedemptionEvent] = []
        self._rewards_ready = False
        self.events_processed = 0

    def update_config(self, new_config: SoundBotConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config
        self._ignored_users = {normalize_username(u) for u in new_config.ignored_users}

    def set_announcer(self, announcer: ChatAnnouncer) -> None:
        """Wire the announcer after construction (it needs the chat client)."""
        self._announcer = announcer

    # ══════════════════════════════════════════════════════════
    #  Queue intake
    # ══════════════════════════════════════════════════════════

    def submit_chat(self, username: str, text: str, display_name: str = "") -> None:
        self._queue.put_nowait(ChatEvent(username, text, self._clock(), display_name))

    def submit_redemption(self, reward_id: str, reward_title: str, username: str, display_name: str = "") -> None:
        self._queue.put_nowait(
            RedemptionEvent(reward_id, reward_title, username, self._clock(), display_name),
        )

    @property
    def rewards_ready(self) -> bool:
        return self._rewards_ready

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    def mark_rewards_ready(self) -> int:
        """Open the redemption path and requeue anything held back.

        Held redemptions go ahead of events queued since, so ``run()``
        handles them first and nothing runs outside the dispatch loop.
        """
        self._rewards_ready = True
        pending, self._backlog = self._backlog, []
        if not pending:
            return 0
        newer: list[BotEvent] = []
        while not self._queue.empty():
            newer.append(self._queue.get_nowait())
            self._queue.task_done()
        for event in pending + newer:
            self._queue.put_nowait(event)
        self._logger.info("Requeued %d held redemption(s)", len(pending))
        return len(pending)

    def mark_rewards_pending(self) -> None:
        """Hold new redemptions (used while a reload reconciles)."""
        self._rewards_ready = False

    async def run(self) -> None:
        """Consume events until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except Exception:
                self._logger.exception("Dispatch failed for %s", event)
            finally:
                self._queue.task_done()

    async def _handle(self, event: BotEvent) -> DispatchOutcome:
        self.events_processed += 1
        if isinstance(event, ChatEvent):
            return await self.on_chat_event(
                event.username, event.text, event.received_at, display_name=event.display_name,
            )
        return await self.on_redemption_event(
            event.reward_id, event.reward_title, event.username, event.received_at,
            display_name=event.display_name,
        )

    # ══════════════════════════════════════════════════════════
    #  Chat
    # ══════════════════════════════════════════════════════════

    async def on_chat_event(
        self,
        username: str,
        text: str,
        now: datetime | None = None,
        display_name: str = "",
    ) -> DispatchOutcome:
        if not self._config.chat.enabled:
            return DispatchOutcome.DISABLED
        if self._is_ignored(username):
            return DispatchOutcome.IGNORED

        message = text.strip().lower()
        music = self._config.music
        if music.enabled and self._music is not None and message in (k.lower() for k in music.keywords):
            await self._send_now_playing(display_name or username)
            return DispatchOutcome.NOW_PLAYING

        if not message.startswith(COMMAND_PREFIX):
            return DispatchOutcome.IGNORED

        if message in (k.lower() for k in self._config.chat.list_commands):
            await self._send_sound_list()
            return DispatchOutcome.LISTED

        command = self._catalog.lookup(message)
        if command is None:
            return DispatchOutcome.UNKNOWN
        if not command.chat_enabled:
            return DispatchOutcome.DISABLED

        now = now or self._clock()
        if not self._cooldowns.try_activate(TriggerChannel.CHAT, command.key, username, command.cooldown, now):
            self._stats.cooldown_rejections += 1
            self._logger.debug(
                "Chat cooldown for %s by %s (%.0fs left)", command.key, username,
                self._cooldowns.remaining(TriggerChannel.CHAT, command.key, username, command.cooldown, now),
            )
            return DispatchOutcome.COOLDOWN

        self._logger.debug("Chat command %s by %s", command.key, username)
        await self._play(command, username, TriggerChannel.CHAT, cost=0)
        return DispatchOutcome.PLAYED

    async def _send_sound_list(self) -> None:
        commands = sorted(c.key for c in self._catalog.chat_enabled())
        if not commands:
            return
        await self._announcer.announce(
            "sound_list", {"commands": ", ".join(commands)},
        )

    async def _send_now_playing(self, name: str) -> None:
        track = self._music.current
        if track.is_playing:
            await self._announcer.announce(
                "music_playing",
                {"name": name, "track": track.name, "link": track.link},
                fallback="{name}, now playing: {track} {link}",
            )
        else:
            await self._announcer.announce(
                "music_idle", {"name": name}, fallback="{name}, nothing is playing right now",
            )

    # ══════════════════════════════════════════════════════════
    #  Redemptions
    # ══════════════════════════════════════════════════════════

    async def on_redemption_event(
        self,
        reward_id: str,
        reward_title: str,
        username: str,
        now: datetime | None = None,
        display_name: str = "",
    ) -> DispatchOutcome:
        if not self._config.rewards.enabled:
            return DispatchOutcome.DISABLED
        if not self._rewards_ready:
            self._backlog.append(
                RedemptionEvent(reward_id, reward_title, username, now or self._clock(), display_name),
            )
            self._logger.debug("Holding redemption '%s' by %s until rewards are ready", reward_title, username)
            return DispatchOutcome.DEFERRED

        key = self._mapping.resolve_or_heal(reward_id, reward_title)
        if key is None:
            self._stats.unmapped_redemptions += 1
            self._logger.debug("Ignoring unrelated reward '%s' (%s)", reward_title, reward_id)
            return DispatchOutcome.UNKNOWN

        now = now or self._clock()
        if key == VIP_PURCHASE_KEY:
            return await self._handle_vip_purchase(username, now, display_name or username)
        if key == VIP_STEAL_KEY:
            return await self._handle_vip_steal(username, now, display_name or username)

        command = self._catalog.lookup(key)
        if command is None or not command.reward_enabled:
            self._logger.warning("Reward '%s' maps to %s which is no longer a reward command", reward_title, key)
            return DispatchOutcome.UNKNOWN

        if not self._cooldowns.try_activate(
            TriggerChannel.REDEMPTION, command.key, username, command.cooldown, now,
        ):
            self._stats.cooldown_rejections += 1
            self._logger.debug(
                "Redemption cooldown for %s by %s (%.0fs left)", command.key, username,
                self._cooldowns.remaining(TriggerChannel.REDEMPTION, command.key, username, command.cooldown, now),
            )
            return DispatchOutcome.COOLDOWN

        self._logger.debug("Reward %s redeemed by %s", command.key, username)
        await self._play(command, username, TriggerChannel.REDEMPTION, cost=command.cost)
        return DispatchOutcome.PLAYED

    # ══════════════════════════════════════════════════════════
    #  VIP
    # ══════════════════════════════════════════════════════════

    async def _handle_vip_purchase(self, username: str, now: datetime, display_name: str) -> DispatchOutcome:
        vip = self._config.vip
        if not vip.purchase_enabled:
            return DispatchOutcome.DISABLED

        result = self._ledger.purchase(username, vip.duration_days, vip.capacity, now)
        variables = {"name": display_name, "days": vip.duration_days}
        if not result.success:
            self._stats.vip_denied += 1
            await self._announcer.announce("vip_denied", variables)
            return DispatchOutcome.VIP_DENIED

        renewed = result.status is PurchaseStatus.RENEWED
        self._stats.record_vip_purchase(username, renewed=renewed)
        await self._persist_vip("renew" if renewed else "purchase", username)
        await self._announcer.announce("vip_renewed" if renewed else "vip_purchased", variables)
        return DispatchOutcome.VIP_GRANTED

    async def _handle_vip_steal(self, thief: str, now: datetime, display_name: str) -> DispatchOutcome:
        vip = self._config.vip
        if not vip.steal_enabled:
            return DispatchOutcome.DISABLED

        result = self._ledger.steal(thief, vip.steal_chance_percent, vip.duration_days, now)
        self._stats.record_steal(thief, result.success, result.victim)

        if result.success:
            await self._persist_vip("steal", thief, related_user=result.victim)
            await self._announcer.announce(
                "steal_success",
                {"thief": display_name, "prey": result.victim, "name": display_name},
                fallback="{thief} stole VIP from {prey}!",
            )
            return DispatchOutcome.STEAL_SUCCESS

        if self._db is not None:
            try:
                await self._db.log_vip_event("steal_failed", thief)
            except Exception:
                self._logger.exception("Failed to log steal attempt by %s", thief)
        # Suspend before announcing
        await self._suspend(thief, vip.steal_ban_minutes * 60)
        await self._announcer.announce(
            "steal_failed",
            {"thief": display_name, "name": display_name},
            fallback="{thief} tried to steal VIP and got punished!",
        )
        return DispatchOutcome.STEAL_FAILED

    async def _suspend(self, username: str, duration_seconds: int) -> None:
        if self._moderation is None or duration_seconds <= 0:
            return
        try:
            await self._moderation.suspend(username, duration_seconds, self._config.messages.steal_ban_reason)
        except Exception as e:
            self._logger.error("Could not suspend %s: %s", username, describe_error(e))

    async def _persist_vip(self, event: str, username: str, related_user: str | None = None) -> None:
        if self._db is None:
            return
        try:
            await self._db.save_vip_records(self._ledger.snapshot())
            await self._db.log_vip_event(event, username, related_user)
        except Exception:
            self._logger.exception("Failed to persist VIP ledger after %s by %s", event, username)

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    def _is_ignored(self, username: str) -> bool:
        lowered = normalize_username(username)
        return lowered in self._ignored_users or lowered == normalize_username(self._config.twitch.bot_username)

    async def _play(self, command: SoundCommand, username: str, source: TriggerChannel, cost: int) -> None:
        self._renderer.play(command.sound_file, requested_by=username, command=command.key)
        self._stats.record_sound(username, command.key, source.value, cost)
        if self._db is not None:
            try:
                await self._db.record_activation(username, command.key, source.value, cost)
            except Exception:
                self._logger.exception("Failed to record activation of %s", command.key)
