"""Command catalog — the declared set of sound commands.

Commands come from config.yaml (``sound_commands``) and/or a pipe-delimited
command file. A reload builds a brand-new table and swaps it in under a lock,
so readers see either the old catalog or the new one, never a mix.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from .config import SoundCommandConfig

COMMAND_PREFIX = "!"

# chat|reward|command|title|file|cost|cooldown
_PIPE_FIELDS = (
    "chat_enabled",
    "reward_enabled",
    "command",
    "reward_title",
    "sound",
    "cost",
    "cooldown",
)


class CatalogEntryError(ValueError):
    """A declared command entry could not be turned into a SoundCommand."""


@dataclass(frozen=True)
class SoundCommand:
    key: str
    sound_file: str
    cost: int
    cooldown: int
    reward_title: str
    chat_enabled: bool
    reward_enabled: bool


@dataclass(frozen=True)
class CatalogLoadResult:
    loaded: int
    skipped: int


def normalize_command_key(key: str) -> str:
    """Lowercase a command key and make sure it carries the ``!`` prefix."""
    key = key.strip().lower()
    if not key.startswith(COMMAND_PREFIX):
        key = COMMAND_PREFIX + key
    return key


def parse_catalog_lines(
    lines: Iterable[str], logger: logging.Logger | None = None,
) -> list[dict[str, str]]:
    """Split pipe-delimited declaration lines into raw field dicts.

    Blank lines and ``#`` comments are ignored. Lines with fewer than seven
    fields are logged and skipped.
    """
    log = logger or logging.getLogger("soundbot.catalog")
    entries: list[dict[str, str]] = []
    for lineno, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        parts = [p.strip() for p in stripped.split("|")]
        if len(parts) < len(_PIPE_FIELDS):
            log.warning("Skipping malformed catalog line %d: %s", lineno, stripped)
            continue
        entries.append(dict(zip(_PIPE_FIELDS, parts)))
    return entries


def read_catalog_file(path: str, logger: logging.Logger | None = None) -> list[dict[str, str]]:
    """Read a pipe-delimited command file. Missing file → empty list."""
    file_path = Path(path)
    if not file_path.exists():
        (logger or logging.getLogger("soundbot.catalog")).warning(
            "Catalog file not found: %s", path,
        )
        return []
    with open(file_path, "r", encoding="utf-8") as f:
        return parse_catalog_lines(f.readlines(), logger)


def build_command(
    entry: SoundCommandConfig | dict[str, Any],
    sounds_directory: str = "",
    default_cooldown: int = 30,
) -> SoundCommand:
    """Validate one declared entry. Raises CatalogEntryError when invalid."""
    if not isinstance(entry, SoundCommandConfig):
        try:
            entry = SoundCommandConfig(**entry)
        except ValidationError as e:
            raise CatalogEntryError(f"invalid fields: {e.errors()}") from e

    if not entry.command.strip().lstrip(COMMAND_PREFIX):
        raise CatalogEntryError("empty command key")
    if not entry.sound.strip():
        raise CatalogEntryError(f"{entry.command}: no sound file")
    if entry.cost < 0:
        raise CatalogEntryError(f"{entry.command}: negative cost {entry.cost}")

    cooldown = default_cooldown if entry.cooldown is None else entry.cooldown
    if cooldown < 0:
        raise CatalogEntryError(f"{entry.command}: negative cooldown {cooldown}")

    title = entry.reward_title.strip()
    if entry.reward_enabled and not title:
        raise CatalogEntryError(f"{entry.command}: reward enabled without a reward title")

    sound = entry.sound.strip()
    if sounds_directory and not os.path.isabs(sound):
        sound = os.path.join(sounds_directory, sound)

    return SoundCommand(
        key=normalize_command_key(entry.command),
        sound_file=sound,
        cost=entry.cost,
        cooldown=cooldown,
        reward_title=title,
        chat_enabled=entry.chat_enabled,
        reward_enabled=entry.reward_enabled,
    )


class CommandCatalog:
    """Thread-safe, atomically reloadable command table."""

    def __init__(
        self,
        sounds_directory: str = "",
        default_cooldown: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self._sounds_directory = sounds_directory
        self._default_cooldown = default_cooldown
        self._logger = logger or logging.getLogger("soundbot.catalog")
        self._lock = threading.Lock()
        self._commands: dict[str, SoundCommand] = {}

    def configure(self, sounds_directory: str, default_cooldown: int) -> None:
        """Change the defaults used by the next reload."""
        self._sounds_directory = sounds_directory
        self._default_cooldown = default_cooldown

    # ══════════════════════════════════════════════════════════
    #  Reload
    # ══════════════════════════════════════════════════════════

    def reload(self, entries: Iterable[SoundCommandConfig | dict[str, Any]]) -> CatalogLoadResult:
        """Replace the whole table. Bad entries are logged and skipped."""
        table: dict[str, SoundCommand] = {}
        skipped = 0
        for entry in entries:
            try:
                cmd = build_command(entry, self._sounds_directory, self._default_cooldown)
            except CatalogEntryError as e:
                skipped += 1
                self._logger.warning("Skipping catalog entry: %s", e)
                continue
            if cmd.key in table:
                self._logger.warning("Duplicate command %s — later declaration wins", cmd.key)
            table[cmd.key] = cmd

        with self._lock:
            self._commands = table

        self._logger.info(
            "Catalog loaded: %d command(s), %d skipped (%d chat, %d reward)",
            len(table), skipped,
            sum(1 for c in table.values() if c.chat_enabled),
            sum(1 for c in table.values() if c.reward_enabled),
        )
        return CatalogLoadResult(loaded=len(table), skipped=skipped)

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    def lookup(self, key: str) -> SoundCommand | None:
        if not key or not key.strip():
            return None
        with self._lock:
            return self._commands.get(normalize_command_key(key))

    def all(self) -> list[SoundCommand]:
        with self._lock:
            return list(self._commands.values())

    def chat_enabled(self) -> list[SoundCommand]:
        return [c for c in self.all() if c.chat_enabled]

    def reward_enabled(self) -> list[SoundCommand]:
        return [c for c in self.all() if c.reward_enabled]

    def __len__(self) -> int:
        with self._lock:
            return len(self._commands)

    def __contains__(self, key: str) -> bool:
        return self.lookup(key) is not None
