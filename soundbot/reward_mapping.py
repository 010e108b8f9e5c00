"""Remote reward id → local command key lookup.

Filled by reconciliation and patched at dispatch time: a redemption carrying
an unknown id is resolved by its title and the id is remembered.
"""

from __future__ import annotations

import logging
import threading


class RewardMappingTable:
    """Reward id and title indexes. No remote calls."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("soundbot.mapping")
        self._lock = threading.Lock()
        self._by_id: dict[str, str] = {}
        self._by_title: dict[str, str] = {}

    def rebuild(self, id_map: dict[str, str], title_index: dict[str, str]) -> None:
        """Replace both indexes (called after each reconciliation)."""
        titles = {t.strip().lower(): key for t, key in title_index.items()}
        with self._lock:
            self._by_id = dict(id_map)
            self._by_title = titles

    def resolve(self, remote_id: str) -> str | None:
        with self._lock:
            return self._by_id.get(remote_id)

    def resolve_by_title(self, title: str) -> str | None:
        with self._lock:
            return self._by_title.get(title.strip().lower())

    def insert(self, remote_id: str, command_key: str) -> None:
        with self._lock:
            self._by_id[remote_id] = command_key

    def resolve_or_heal(self, remote_id: str, title: str) -> str | None:
        """Resolve by id, falling back to title and caching the result."""
        key = self.resolve(remote_id)
        if key is not None:
            return key
        key = self.resolve_by_title(title)
        if key is None:
            self._logger.debug("No command for reward '%s' (%s)", title, remote_id)
            return None
        self.insert(remote_id, key)
        self._logger.info("Mapped reward '%s' (%s) → %s by title", title, remote_id, key)
        return key

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._by_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
