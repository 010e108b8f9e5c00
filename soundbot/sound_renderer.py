"""Sound renderer — plays one sound at a time through an external player.

Activations are queued fire-and-forget; a single worker renders them in
order. When the queue is full, new requests are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .catalog import SoundCommand
    from .config import SoundsConfig


@dataclass(frozen=True)
class PlayRequest:
    path: str
    volume: int
    requested_by: str = ""
    command: str = ""


def missing_sound_files(commands: Iterable[SoundCommand]) -> list[str]:
    """Sound files referenced by the catalog that do not exist on disk."""
    return sorted({c.sound_file for c in commands if not os.path.isfile(c.sound_file)})


class SoundRenderer:
    """Serialized playback queue."""

    def __init__(self, config: SoundsConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("soundbot.sound")
        self._queue: asyncio.Queue[PlayRequest] = asyncio.Queue(maxsize=max(1, config.max_queue))
        self._worker_task: asyncio.Task | None = None
        self.played_total = 0
        self.dropped_total = 0

    def update_config(self, config: SoundsConfig) -> None:
        self._config = config

    @property
    def volume(self) -> int:
        return self._config.volume

    async def start(self) -> None:
        if not shutil.which(self._config.player_command[0]):
            self._logger.warning(
                "Sound player '%s' not found on PATH — playback will fail",
                self._config.player_command[0],
            )
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())

    async def stop(self) -> None:
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

    def play(self, path: str, volume: int | None = None, requested_by: str = "", command: str = "") -> bool:
        """Queue a sound. Returns False when it was dropped."""
        request = PlayRequest(
            path=path,
            volume=self._config.volume if volume is None else volume,
            requested_by=requested_by,
            command=command,
        )
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            self.dropped_total += 1
            self._logger.warning("Sound queue full, dropping %s for %s", command or path, requested_by)
            return False
        return True

    def build_argv(self, request: PlayRequest) -> list[str]:
        return [
            arg.replace("{path}", request.path).replace("{volume}", str(request.volume))
            for arg in self._config.player_command
        ]

    async def _worker(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self._render(request)
            except Exception:
                self._logger.exception("Playback failed for %s", request.path)
            finally:
                self._queue.task_done()

    async def _render(self, request: PlayRequest) -> None:
        if not os.path.isfile(request.path):
            self._logger.error("Sound file not found: %s", request.path)
            return

        proc = await asyncio.create_subprocess_exec(
            *self.build_argv(request),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.play_timeout_seconds)
        except asyncio.TimeoutError:
            self._logger.warning("Playback of %s timed out, killing player", request.path)
            proc.kill()
            await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        self.played_total += 1
        self._logger.debug("Played %s for %s", request.command or request.path, request.requested_by)
