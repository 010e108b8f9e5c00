"""Per-user, per-command cooldowns for the chat and redemption channels.

The two channels keep separate bookkeeping: burning a chat cooldown never
blocks a redemption of the same command, and vice versa.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from enum import Enum

from .utils import now_utc


class TriggerChannel(str, Enum):
    CHAT = "chat"
    REDEMPTION = "redemption"


class CooldownTracker:
    """Check-and-set cooldown table guarded by a single lock."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("soundbot.cooldowns")
        self._lock = threading.Lock()
        # (channel, command_key, username_lower) → last successful activation
        self._last_use: dict[tuple[str, str, str], datetime] = {}

    @staticmethod
    def _key(channel: TriggerChannel | str, command_key: str, username: str) -> tuple[str, str, str]:
        return (TriggerChannel(channel).value, command_key.lower(), username.lower())

    def try_activate(
        self,
        channel: TriggerChannel | str,
        command_key: str,
        username: str,
        cooldown_seconds: int | float,
        now: datetime | None = None,
    ) -> bool:
        """Return True and stamp ``now`` if the subject is off cooldown.

        Elapsed time equal to the cooldown is allowed.
        """
        now = now or now_utc()
        key = self._key(channel, command_key, username)
        with self._lock:
            last = self._last_use.get(key)
            if last is not None:
                elapsed = (now - last).total_seconds()
                if elapsed < cooldown_seconds:
                    self._logger.debug(
                        "Cooldown %s %s for %s: %.1fs remaining",
                        key[0], key[1], username, cooldown_seconds - elapsed,
                    )
                    return False
            self._last_use[key] = now
            return True

    def remaining(
        self,
        channel: TriggerChannel | str,
        command_key: str,
        username: str,
        cooldown_seconds: int | float,
        now: datetime | None = None,
    ) -> float:
        """Seconds until the subject may activate again (0 if ready)."""
        now = now or now_utc()
        with self._lock:
            last = self._last_use.get(self._key(channel, command_key, username))
        if last is None:
            return 0.0
        return max(0.0, cooldown_seconds - (now - last).total_seconds())

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_use)
