"""Shared test fixtures for twitch-soundbot."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from soundbot.catalog import CommandCatalog
from soundbot.config import SoundBotConfig
from soundbot.cooldowns import CooldownTracker
from soundbot.database import BotDatabase
from soundbot.dispatcher import Dispatcher
from soundbot.helix_client import ApiErrorKind, HelixError, RewardDescriptor
from soundbot.reward_mapping import RewardMappingTable
from soundbot.statistics import BotStatistics
from soundbot.vip_ledger import VipLedger


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Minimal config dict matching SoundBotConfig schema ───────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "twitch": {
            "client_id": "test-client",
            "oauth_token": "oauth:test-token",
            "bot_username": "TestBot",
            "channel": "testchannel",
            "broadcaster_id": "1000",
        },
        "database": {"path": ":memory:"},
        "sounds": {"directory": "", "volume": 50},
        "sound_commands": [
            {"command": "!hello", "sound": "hello.mp3", "cooldown": 30},
            {
                "command": "!airhorn", "sound": "airhorn.wav", "cooldown": 60,
                "reward_title": "Airhorn", "cost": 500, "reward_enabled": True,
            },
        ],
        "cooldowns": {"default_seconds": 30},
        "rewards": {
            "enabled": True,
            "max_rewards": 50,
            "request_delay_seconds": 0,
            "disable_delay_seconds": 0,
        },
        "vip": {
            "purchase_enabled": True,
            "purchase_cost": 1000,
            "duration_days": 30,
            "capacity": 5,
            "steal_enabled": True,
            "steal_cost": 500,
            "steal_chance_percent": 5,
            "steal_ban_minutes": 180,
        },
        "chat": {"dedup_window_seconds": 0, "send_interval_seconds": 0},
        "ignored_users": ["IgnoredBot"],
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> SoundBotConfig:
    """Return a parsed SoundBotConfig."""
    return SoundBotConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_soundbot.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[BotDatabase, None]:
    """Provide an initialized database with temp file."""
    db = BotDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Fake Reward Directory ────────────────────────────────────

class FakeRewardDirectory:
    """In-memory stand-in for the Helix reward endpoints.

    Every remote call is appended to ``calls`` as ``(method, detail)``.
    ``fail_titles`` / ``fail_ids`` make the matching create/update raise.
    """

    def __init__(self, rewards: list[RewardDescriptor] | None = None) -> None:
        self.rewards: list[RewardDescriptor] = list(rewards or [])
        self.calls: list[tuple[str, Any]] = []
        self.fail_titles: set[str] = set()
        self.fail_ids: set[str] = set()
        self.list_error: Exception | None = None
        self._next_id = 1

    def add(self, title: str, cost: int = 100, cooldown: int = 60, enabled: bool = True) -> RewardDescriptor:
        reward = RewardDescriptor(
            id=f"existing-{len(self.rewards) + 1}",
            title=title,
            cost=cost,
            is_enabled=enabled,
            global_cooldown_seconds=cooldown,
            is_global_cooldown_enabled=True,
        )
        self.rewards.append(reward)
        return reward

    def by_title(self, title: str) -> RewardDescriptor | None:
        for reward in self.rewards:
            if reward.title.lower() == title.lower():
                return reward
        return None

    async def list_rewards(self, ids=None, only_manageable=False, max_age=0) -> list[RewardDescriptor]:
        self.calls.append(("list", max_age))
        if self.list_error:
            raise self.list_error
        return list(self.rewards)

    async def create_reward(self, title, cost, cooldown_seconds=0, enabled=True, background_color=None):
        self.calls.append(("create", title))
        if title in self.fail_titles:
            raise HelixError(ApiErrorKind.GENERIC, 400, "CREATE_CUSTOM_REWARD_DUPLICATE_REWARD")
        reward = RewardDescriptor(
            id=f"new-{self._next_id}",
            title=title,
            cost=cost,
            is_enabled=enabled,
            global_cooldown_seconds=cooldown_seconds,
            is_global_cooldown_enabled=cooldown_seconds > 0,
            background_color=background_color or "",
        )
        self._next_id += 1
        self.rewards.append(reward)
        return reward

    async def update_reward(self, reward_id, **fields):
        self.calls.append(("update", reward_id))
        if reward_id in self.fail_ids:
            raise HelixError(ApiErrorKind.SCOPE, 403, "missing scope channel:manage:redemptions")
        for i, reward in enumerate(self.rewards):
            if reward.id == reward_id:
                updated = RewardDescriptor(
                    id=reward.id,
                    title=fields.get("title", reward.title),
                    cost=fields.get("cost", reward.cost),
                    is_enabled=fields.get("is_enabled", reward.is_enabled),
                    global_cooldown_seconds=fields.get(
                        "global_cooldown_seconds", reward.global_cooldown_seconds,
                    ),
                    is_global_cooldown_enabled=fields.get(
                        "is_global_cooldown_enabled", reward.is_global_cooldown_enabled,
                    ),
                    background_color=reward.background_color,
                )
                self.rewards[i] = updated
                return updated
        raise HelixError(ApiErrorKind.NOT_FOUND, 404, "reward not found")

    def mutating_calls(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] != "list"]


@pytest.fixture
def reward_directory() -> FakeRewardDirectory:
    return FakeRewardDirectory()


async def no_sleep(_seconds: float) -> None:
    return None


# ── Mocks ────────────────────────────────────────────────────

@pytest.fixture
def mock_renderer() -> MagicMock:
    renderer = MagicMock()
    renderer.play = MagicMock(return_value=True)
    return renderer


@pytest.fixture
def mock_announcer() -> MagicMock:
    announcer = MagicMock()
    announcer.announce = AsyncMock(return_value="")
    announcer.announce_raw = AsyncMock()
    return announcer


@pytest.fixture
def mock_moderation() -> MagicMock:
    moderation = MagicMock()
    moderation.suspend = AsyncMock()
    return moderation


@pytest.fixture
def mock_client() -> MagicMock:
    """Mock chat client with an async send()."""
    client = MagicMock()
    client.send = AsyncMock()
    return client


# ── Core components ─────────────────────────────────────────

@pytest.fixture
def catalog(sample_config: SoundBotConfig) -> CommandCatalog:
    cat = CommandCatalog(
        sample_config.sounds.directory,
        sample_config.cooldowns.default_seconds,
        logging.getLogger("test"),
    )
    cat.reload(sample_config.sound_commands)
    return cat


@pytest.fixture
def ledger() -> VipLedger:
    return VipLedger(rng=random.Random(42), logger=logging.getLogger("test"))


@pytest.fixture
def mapping() -> RewardMappingTable:
    return RewardMappingTable(logging.getLogger("test"))


@pytest_asyncio.fixture
async def dispatcher(
    sample_config: SoundBotConfig,
    catalog: CommandCatalog,
    mapping: RewardMappingTable,
    ledger: VipLedger,
    mock_renderer: MagicMock,
    mock_announcer: MagicMock,
    mock_moderation: MagicMock,
    database: BotDatabase,
) -> Dispatcher:
    """Dispatcher with mocked outputs, ready for redemptions."""
    d = Dispatcher(
        config=sample_config,
        catalog=catalog,
        cooldowns=CooldownTracker(logging.getLogger("test")),
        mapping=mapping,
        ledger=ledger,
        renderer=mock_renderer,
        announcer=mock_announcer,
        moderation=mock_moderation,
        statistics=BotStatistics(),
        database=database,
        logger=logging.getLogger("test"),
        clock=lambda: NOW,
    )
    d.mark_rewards_ready()
    return d
