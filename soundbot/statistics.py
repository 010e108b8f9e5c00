"""Session statistics — sound activations, VIP purchases and steal attempts."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from .utils import now_utc


@dataclass
class BotStatistics:
    sound_activations: int = 0
    chat_activations: int = 0
    redemption_activations: int = 0
    points_spent: int = 0
    command_usage: Counter = field(default_factory=Counter)
    last_activator: str | None = None
    last_command: str | None = None
    last_activation_at: datetime | None = None

    vip_purchases: int = 0
    vip_renewals: int = 0
    vip_denied: int = 0
    last_vip_purchaser: str | None = None
    last_vip_purchase_at: datetime | None = None

    steal_attempts: int = 0
    steal_successes: int = 0
    last_thief: str | None = None
    last_victim: str | None = None
    last_failed_thief: str | None = None
    last_steal_at: datetime | None = None

    cooldown_rejections: int = 0
    unmapped_redemptions: int = 0

    def record_sound(self, username: str, command: str, source: str, cost: int = 0) -> None:
        self.sound_activations += 1
        if source == "chat":
            self.chat_activations += 1
        else:
            self.redemption_activations += 1
        self.points_spent += cost
        self.command_usage[command] += 1
        self.last_activator = username
        self.last_command = command
        self.last_activation_at = now_utc()

    def record_vip_purchase(self, username: str, renewed: bool = False) -> None:
        if renewed:
            self.vip_renewals += 1
        else:
            self.vip_purchases += 1
        self.last_vip_purchaser = username
        self.last_vip_purchase_at = now_utc()

    def record_steal(self, thief: str, success: bool, victim: str | None = None) -> None:
        self.steal_attempts += 1
        if success:
            self.steal_successes += 1
            self.last_thief = thief
            self.last_victim = victim
        else:
            self.last_failed_thief = thief
        self.last_steal_at = now_utc()

    def top_commands(self, limit: int = 10) -> list[tuple[str, int]]:
        return self.command_usage.most_common(limit)

    def as_dict(self) -> dict:
        return {
            "sound_activations": self.sound_activations,
            "chat_activations": self.chat_activations,
            "redemption_activations": self.redemption_activations,
            "points_spent": self.points_spent,
            "top_commands": dict(self.top_commands()),
            "last_activator": self.last_activator,
            "last_command": self.last_command,
            "vip_purchases": self.vip_purchases,
            "vip_renewals": self.vip_renewals,
            "vip_denied": self.vip_denied,
            "steal_attempts": self.steal_attempts,
            "steal_successes": self.steal_successes,
            "last_thief": self.last_thief,
            "last_victim": self.last_victim,
            "last_failed_thief": self.last_failed_thief,
            "cooldown_rejections": self.cooldown_rejections,
            "unmapped_redemptions": self.unmapped_redemptions,
        }
