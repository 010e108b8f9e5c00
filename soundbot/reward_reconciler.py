"""Reward reconciler — converge remote channel-points rewards to the catalog.

One listing call, then one create/update per reward that is missing or
drifted. Calls are strictly sequential with a fixed pause between them.
A reward that already matches costs no network call, so running the
reconciler twice in a row issues nothing the second time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from .helix_client import RewardDescriptor, describe_error

if TYPE_CHECKING:
    from .catalog import SoundCommand
    from .config import RewardsConfig, VipConfig
    from .helix_client import HelixClient


VIP_PURCHASE_KEY = "vip:purchase"
VIP_STEAL_KEY = "vip:steal"
VIP_KEYS = frozenset({VIP_PURCHASE_KEY, VIP_STEAL_KEY})

MIN_COOLDOWN_MINUTES = 1
MAX_COOLDOWN_MINUTES = 180


def remote_cooldown_seconds(cooldown_seconds: int) -> int:
    """Twitch-side global cooldown: whole minutes, clamped to 1..180."""
    minutes = cooldown_seconds // 60
    return max(MIN_COOLDOWN_MINUTES, min(MAX_COOLDOWN_MINUTES, minutes)) * 60


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RewardSpec:
    """Desired remote state for one reward."""

    title: str
    cost: int
    cooldown_seconds: int
    command_key: str
    background_color: str = ""


class ReconcileAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    CONVERGED = "converged"
    FAILED = "failed"
    CAPACITY = "capacity"


@dataclass
class RewardOutcome:
    title: str
    command_key: str
    action: ReconcileAction
    reward_id: str | None = None
    detail: str = ""


@dataclass
class ReconcileReport:
    outcomes: list[RewardOutcome] = field(default_factory=list)
    id_map: dict[str, str] = field(default_factory=dict)
    retired: list[str] = field(default_factory=list)
    error: str = ""

    @property
    def success(self) -> bool:
        return not self.error and all(
            o.action not in (ReconcileAction.FAILED, ReconcileAction.CAPACITY)
            for o in self.outcomes
        )

    def count(self, action: ReconcileAction) -> int:
        return sum(1 for o in self.outcomes if o.action is action)

    def summary(self) -> str:
        text = (
            f"created {self.count(ReconcileAction.CREATED)}, "
            f"updated {self.count(ReconcileAction.UPDATED)}, "
            f"unchanged {self.count(ReconcileAction.CONVERGED)}, "
            f"failed {self.count(ReconcileAction.FAILED) + self.count(ReconcileAction.CAPACITY)}"
        )
        if self.retired:
            text += f", retired {len(self.retired)}"
        return text


# ═══════════════════════════════════════════════════════════════
#  Desired-state builders
# ═══════════════════════════════════════════════════════════════


def specs_from_commands(
    commands: Iterable[SoundCommand], background_color: str = "",
) -> list[RewardSpec]:
    return [
        RewardSpec(
            title=cmd.reward_title,
            cost=cmd.cost,
            cooldown_seconds=cmd.cooldown,
            command_key=cmd.key,
            background_color=background_color,
        )
        for cmd in commands
        if cmd.reward_enabled and cmd.reward_title
    ]


def specs_from_vip(vip: VipConfig) -> list[RewardSpec]:
    specs: list[RewardSpec] = []
    if vip.purchase_enabled:
        specs.append(RewardSpec(
            title=vip.purchase_title,
            cost=vip.purchase_cost,
            cooldown_seconds=vip.purchase_cooldown_minutes * 60,
            command_key=VIP_PURCHASE_KEY,
            background_color=vip.purchase_color,
        ))
    if vip.steal_enabled:
        specs.append(RewardSpec(
            title=vip.steal_title,
            cost=vip.steal_cost,
            cooldown_seconds=vip.steal_cooldown_minutes * 60,
            command_key=VIP_STEAL_KEY,
            background_color=vip.steal_color,
        ))
    return specs


# ═══════════════════════════════════════════════════════════════
#  Reconciler
# ═══════════════════════════════════════════════════════════════


class RewardReconciler:
    """Drives the Reward Directory towards the declared reward set."""

    def __init__(
        self,
        directory: HelixClient,
        config: RewardsConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._directory = directory
        self._config = config
        self._logger = logger or logging.getLogger("soundbot.reconciler")
        self._sleep = sleep
        self._calls_made = 0
        self.managed_ids: list[str] = []

    def update_config(self, config: RewardsConfig) -> None:
        self._config = config

    async def _pace(self, delay: float) -> None:
        """Pause between remote calls (not before the first)."""
        if self._calls_made and delay > 0:
            await self._sleep(delay)
        self._calls_made += 1

    @staticmethod
    def _needs_update(existing: RewardDescriptor, spec: RewardSpec) -> list[str]:
        reasons: list[str] = []
        if existing.cost != spec.cost:
            reasons.append(f"cost {existing.cost} → {spec.cost}")
        expected = remote_cooldown_seconds(spec.cooldown_seconds)
        if existing.global_cooldown_seconds != expected or not existing.is_global_cooldown_enabled:
            reasons.append(f"cooldown {existing.global_cooldown_seconds} → {expected}")
        if not existing.is_enabled:
            reasons.append("enable")
        return reasons

    async def reconcile(self, desired: Iterable[RewardSpec]) -> ReconcileReport:
        """Create or update remote rewards so they match ``desired``."""
        report = ReconcileReport()
        self._calls_made = 0

        specs: list[RewardSpec] = []
        seen_titles: set[str] = set()
        for spec in desired:
            folded = spec.title.strip().lower()
            if folded in seen_titles:
                self._logger.warning(
                    "Reward title '%s' declared twice — %s ignored", spec.title, spec.command_key,
                )
                report.outcomes.append(RewardOutcome(
                    spec.title, spec.command_key, ReconcileAction.FAILED,
                    detail="duplicate reward title",
                ))
                continue
            seen_titles.add(folded)
            specs.append(spec)

        try:
            await self._pace(self._config.request_delay_seconds)
            existing = await self._directory.list_rewards()
        except Exception as e:
            report.error = f"Could not list existing rewards: {describe_error(e)}"
            self._logger.error(report.error)
            for spec in specs:
                report.outcomes.append(RewardOutcome(
                    spec.title, spec.command_key, ReconcileAction.FAILED, detail=report.error,
                ))
            return report

        self._logger.debug("Found %d existing reward(s)", len(existing))
        by_title: dict[str, RewardDescriptor] = {}
        for reward in existing:
            by_title.setdefault(reward.title.strip().lower(), reward)

        to_create = [s for s in specs if s.title.strip().lower() not in by_title]
        available = self._config.max_rewards - len(existing)
        capacity_blocked = len(to_create) > available
        capacity_error = ""
        if capacity_blocked:
            capacity_error = (
                f"Not enough reward slots: available {max(0, available)}, "
                f"needed {len(to_create)}. Remove unused rewards on Twitch "
                f"or disable some rewards in the bot."
            )
            self._logger.error(capacity_error)

        for spec in specs:
            match = by_title.get(spec.title.strip().lower())
            if match is not None:
                outcome = await self._converge_existing(match, spec)
            elif capacity_blocked:
                outcome = RewardOutcome(
                    spec.title, spec.command_key, ReconcileAction.CAPACITY, detail=capacity_error,
                )
            else:
                outcome = await self._create(spec)
            report.outcomes.append(outcome)
            if outcome.reward_id:
                report.id_map[outcome.reward_id] = spec.command_key

        failures = [
            o for o in report.outcomes
            if o.action in (ReconcileAction.FAILED, ReconcileAction.CAPACITY)
        ]
        if capacity_blocked:
            report.error = capacity_error
        elif failures:
            report.error = f"{len(failures)} reward(s) failed: " + "; ".join(
                f"'{o.title}': {o.detail}" for o in failures
            )

        # Rewards we managed last time that nothing maps to any more
        still_enabled = {r.id for r in existing if r.is_enabled}
        stale = [i for i in self.managed_ids if i not in report.id_map and i in still_enabled]
        unretired: list[str] = []
        for reward_id in stale:
            await self._pace(self._config.request_delay_seconds)
            try:
                await self._directory.update_reward(reward_id, is_enabled=False)
            except Exception as e:
                self._logger.warning("Failed to retire reward %s: %s", reward_id, describe_error(e))
                unretired.append(reward_id)
                continue
            report.retired.append(reward_id)
            self._logger.info("Retired reward %s (no longer declared)", reward_id)

        self.managed_ids = list(report.id_map) + unretired
        self._logger.info("Reward reconciliation: %s", report.summary())
        return report

    async def _converge_existing(self, existing: RewardDescriptor, spec: RewardSpec) -> RewardOutcome:
        reasons = self._needs_update(existing, spec)
        if not reasons:
            self._logger.debug("Reward '%s' already up to date", spec.title)
            return RewardOutcome(
                spec.title, spec.command_key, ReconcileAction.CONVERGED, reward_id=existing.id,
            )

        await self._pace(self._config.request_delay_seconds)
        try:
            await self._directory.update_reward(
                existing.id,
                cost=spec.cost,
                is_enabled=True,
                is_global_cooldown_enabled=True,
                global_cooldown_seconds=remote_cooldown_seconds(spec.cooldown_seconds),
            )
        except Exception as e:
            detail = describe_error(e)
            self._logger.error("Failed to update reward '%s': %s", spec.title, detail)
            # The reward exists, so redemptions can still be routed to it
            return RewardOutcome(
                spec.title, spec.command_key, ReconcileAction.FAILED,
                reward_id=existing.id, detail=detail,
            )

        self._logger.info("Updated reward '%s' (%s)", spec.title, ", ".join(reasons))
        return RewardOutcome(
            spec.title, spec.command_key, ReconcileAction.UPDATED,
            reward_id=existing.id, detail=", ".join(reasons),
        )

    async def _create(self, spec: RewardSpec) -> RewardOutcome:
        await self._pace(self._config.request_delay_seconds)
        try:
            created = await self._directory.create_reward(
                title=spec.title,
                cost=spec.cost,
                cooldown_seconds=remote_cooldown_seconds(spec.cooldown_seconds),
                enabled=True,
                background_color=spec.background_color or None,
            )
        except Exception as e:
            detail = describe_error(e)
            self._logger.error("Failed to create reward '%s': %s", spec.title, detail)
            return RewardOutcome(spec.title, spec.command_key, ReconcileAction.FAILED, detail=detail)

        self._logger.info("Created reward '%s' (%s)", spec.title, created.id)
        return RewardOutcome(
            spec.title, spec.command_key, ReconcileAction.CREATED, reward_id=created.id,
        )

    async def disable_all(self, ids: Iterable[str] | None = None) -> int:
        """Disable every given (default: last reconciled) reward. Best effort.

        A listing no older than ``cache_ttl_seconds`` is consulted first so
        rewards that are already disabled or gone cost no update call.
        """
        targets = list(self.managed_ids if ids is None else ids)
        if not targets:
            return 0
        try:
            snapshot = await self._directory.list_rewards(max_age=self._config.cache_ttl_seconds)
        except Exception as e:
            self._logger.warning("Could not list rewards before disabling: %s", describe_error(e))
        else:
            enabled = {r.id for r in snapshot if r.is_enabled}
            skipped = len(targets)
            targets = [i for i in targets if i in enabled]
            skipped -= len(targets)
            if skipped:
                self._logger.debug("%d reward(s) already disabled or deleted", skipped)

        disabled = 0
        for i, reward_id in enumerate(targets):
            if i and self._config.disable_delay_seconds > 0:
                await self._sleep(self._config.disable_delay_seconds)
            try:
                await self._directory.update_reward(reward_id, is_enabled=False)
                disabled += 1
            except Exception as e:
                self._logger.warning("Failed to disable reward %s: %s", reward_id, describe_error(e))
        if targets:
            self._logger.info("Disabled %d/%d reward(s)", disabled, len(targets))
        return disabled
