"""Scheduler module — periodic VIP expiry sweep."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import SoundBotConfig
    from .database import BotDatabase
    from .vip_ledger import VipLedger


class Scheduler:
    """Central module for periodic tasks."""

    def __init__(
        self,
        config: SoundBotConfig,
        ledger: VipLedger,
        database: BotDatabase,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._db = database
        self._logger = logger or logging.getLogger("soundbot.scheduler")
        self._tasks: list[asyncio.Task] = []

    def update_config(self, new_config: SoundBotConfig) -> None:
        self._config = new_config

    async def start(self) -> None:
        """Start all scheduled tasks."""
        if self._config.vip.purchase_enabled or self._config.vip.steal_enabled:
            self._tasks.append(asyncio.create_task(self._vip_sweep_loop()))
            self._logger.info(
                "VIP sweep task started (interval: %d min)", self._config.vip.sweep_interval_minutes,
            )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ══════════════════════════════════════════════════════════
    #  VIP Expiry
    # ══════════════════════════════════════════════════════════

    async def _vip_sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(max(self._config.vip.sweep_interval_minutes, 1) * 60)
            try:
                await self.sweep_vip()
            except Exception:
                self._logger.exception("VIP sweep failed")

    async def sweep_vip(self) -> int:
        """Drop expired VIP records and persist when anything changed."""
        expired = self._ledger.sweep()
        if not expired:
            return 0
        await self._db.save_vip_records(self._ledger.snapshot())
        for record in expired:
            await self._db.log_vip_event("expired", record.username)
        return len(expired)
