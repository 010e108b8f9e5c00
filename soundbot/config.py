"""Configuration system for twitch-soundbot.

All Pydantic models are defined here with sensible defaults so a minimal
config.yaml only needs the Twitch credentials and a channel name.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Connection
# ═══════════════════════════════════════════════════════════════

class TwitchConfig(BaseModel):
    client_id: str = ""
    oauth_token: str = ""
    bot_username: str = "SoundBot"
    channel: str = ""
    broadcaster_id: str = Field(default="", description="Resolved from channel when empty")
    api_base_url: str = "https://api.twitch.tv/helix"
    auth_base_url: str = "https://id.twitch.tv/oauth2"
    chat_url: str = "wss://irc-ws.chat.twitch.tv:443"
    eventsub_url: str = "wss://eventsub.wss.twitch.tv/ws"
    request_timeout_seconds: float = 10.0

    @property
    def bearer_token(self) -> str:
        """Token without the IRC ``oauth:`` prefix."""
        token = self.oauth_token.strip()
        return token[6:] if token.startswith("oauth:") else token

    @property
    def irc_token(self) -> str:
        return f"oauth:{self.bearer_token}"


class DatabaseConfig(BaseModel):
    path: str = "soundbot.db"


# ═══════════════════════════════════════════════════════════════
#  Sounds & Catalog
# ═══════════════════════════════════════════════════════════════

class SoundsConfig(BaseModel):
    directory: str = "sounds"
    volume: int = Field(default=50, ge=0, le=100)
    player_command: list[str] = Field(
        default=["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet", "-volume", "{volume}", "{path}"],
        description="Argv for the external player; {path} and {volume} are substituted",
    )
    max_queue: int = 10
    play_timeout_seconds: float = 60.0


class SoundCommandConfig(BaseModel):
    """One declared sound command, as written in config.yaml."""
    command: str
    sound: str
    reward_title: str = ""
    cost: int = 0
    cooldown: int | None = None
    chat_enabled: bool = True
    reward_enabled: bool = False


class CatalogConfig(BaseModel):
    path: str = Field(default="", description="Optional pipe-delimited command file")


class CooldownsConfig(BaseModel):
    default_seconds: int = 30


# ═══════════════════════════════════════════════════════════════
#  Channel Points Rewards
# ═══════════════════════════════════════════════════════════════

class RewardsConfig(BaseModel):
    enabled: bool = True
    max_rewards: int = 50
    request_delay_seconds: float = 0.5
    disable_delay_seconds: float = 0.2
    background_color: str = "#00FF00"
    disable_on_shutdown: bool = True
    # How long a reward listing may be reused before disabling rewards
    cache_ttl_seconds: int = 300


# ═══════════════════════════════════════════════════════════════
#  VIP Economy
# ═══════════════════════════════════════════════════════════════

class VipConfig(BaseModel):
    purchase_enabled: bool = False
    purchase_title: str = "Buy VIP"
    purchase_cost: int = 150000
    purchase_cooldown_minutes: int = 10
    purchase_color: str = "#FFD700"
    duration_days: int = 30
    capacity: int = 5
    renew_on_repurchase: bool = True

    steal_enabled: bool = False
    steal_title: str = "Steal VIP"
    steal_cost: int = 50000
    steal_cooldown_minutes: int = 10
    steal_color: str = "#FF0000"
    steal_chance_percent: int = Field(default=5, ge=0, le=100)
    steal_ban_minutes: int = 180

    sweep_interval_minutes: int = 60


# ═══════════════════════════════════════════════════════════════
#  Chat & Messages
# ═══════════════════════════════════════════════════════════════

class MessagesConfig(BaseModel):
    vip_purchased: str = "🎉 Congratulations, {name}! You are now VIP for {days} days!"
    vip_renewed: str = "🔁 {name}, your VIP has been extended for {days} days!"
    vip_denied: str = "❌ {name}, VIP can't be granted right now. No free slots, or you're already VIP."
    steal_success: list[str] = Field(default_factory=lambda: [
        "{thief} sneakily stole VIP from {prey}!",
        "VIP passed from {prey} to {thief} in a daring heist!",
        "{thief} snatched VIP right from under {prey}'s nose!",
        "Unbelievable! {thief} stole VIP status from {prey}!",
    ])
    steal_failed: list[str] = Field(default_factory=lambda: [
        "{thief} tried to steal VIP but got caught!",
        "{thief}'s VIP heist failed!",
        "{thief} couldn't steal VIP and will be punished!",
        "Busted! {thief} was spotted trying to steal VIP!",
    ])
    steal_ban_reason: str = "Failed VIP steal attempt"
    sound_list: str = "🔊 Sounds: {commands}"
    music_playing: str = "{name}, now playing: {track} {link}"
    music_idle: str = "{name}, nothing is playing right now"


class ChatConfig(BaseModel):
    enabled: bool = True
    list_commands: list[str] = Field(default_factory=lambda: ["!sounds"])
    max_messages_per_minute: int = 20
    send_interval_seconds: float = 1.0
    dedup_window_seconds: float = 5.0
    max_message_length: int = 480


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 28290


class MusicConfig(BaseModel):
    """Now-playing endpoint fed by a browser userscript or player plugin."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    keywords: list[str] = Field(default_factory=lambda: ["!music", "!song", "!track"])


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class SoundBotConfig(BaseModel):
    """Full bot config."""

    twitch: TwitchConfig = Field(default_factory=TwitchConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sounds: SoundsConfig = Field(default_factory=SoundsConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    sound_commands: list[SoundCommandConfig] = Field(default_factory=list)
    cooldowns: CooldownsConfig = Field(default_factory=CooldownsConfig)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    vip: VipConfig = Field(default_factory=VipConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    ignored_users: list[str] = Field(default_factory=list)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    music: MusicConfig = Field(default_factory=MusicConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> SoundBotConfig:
    """Load and validate YAML config file into SoundBotConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return SoundBotConfig(**raw)
