"""Outbound chat announcer — templated, deduplicated, rate-limited.

Every bot message goes through here instead of calling the chat client
directly:
- Template rendering from ``config.messages`` (``str.format`` placeholders)
- Random pick when a template key holds a list of variants
- Deduplication of identical messages inside a short window
- Rate limiting (max messages/minute) and a pause between sends
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import TYPE_CHECKING, Any

from .utils import now_utc, truncate

if TYPE_CHECKING:
    from .config import SoundBotConfig


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute ``{name}``-style placeholders. Raises KeyError, IndexError or ValueError."""
    return template.format(**variables)


class ChatAnnouncer:
    """Queue and pace outgoing chat messages."""

    def __init__(
        self,
        config: SoundBotConfig,
        client: object,
        logger: logging.Logger | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._logger = logger or logging.getLogger("soundbot.announcer")
        self._rng = rng or random.Random()

        # Dedup ring buffer: (message_hash, timestamp)
        self._recent: deque[tuple[int, float]] = deque(maxlen=100)
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._flush_task: asyncio.Task | None = None
        self.sent_total = 0
        self.dropped_total = 0

    def update_config(self, new_config: SoundBotConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

    # ── Public API ───────────────────────────────────────────

    def render(self, template_key: str, variables: dict[str, Any], fallback: str = "") -> str:
        """Render a message template; list templates pick a random variant."""
        template = getattr(self._config.messages, template_key, None)
        if isinstance(template, list):
            template = self._rng.choice(template) if template else None
        if not template:
            template = fallback
        if not template:
            return ""
        try:
            return render_template(template, variables).strip()
        except (KeyError, IndexError, ValueError) as exc:
            self._logger.warning("Template render failed for '%s': %s", template_key, exc)
            if fallback and fallback != template:
                try:
                    return render_template(fallback, variables).strip()
                except (KeyError, IndexError, ValueError):
                    pass
            return ""

    async def announce(
        self,
        template_key: str,
        variables: dict[str, Any],
        fallback: str = "",
    ) -> str:
        """Render and queue a templated message. Returns the rendered text."""
        message = self.render(template_key, variables, fallback)
        if message:
            await self.announce_raw(message)
        return message

    async def announce_raw(self, message: str) -> None:
        """Queue a raw message (no template, still deduplicated)."""
        message = truncate(message, self._config.chat.max_message_length)
        if self._is_duplicate(message):
            self._logger.debug("Deduped announcement: %s", message[:60])
            return
        await self._queue.put(message)

    # ── Internal ─────────────────────────────────────────────

    def _is_duplicate(self, message: str) -> bool:
        window = self._config.chat.dedup_window_seconds
        if window <= 0:
            return False
        msg_hash = hash(message)
        now = now_utc().timestamp()
        if any(h == msg_hash and now - t < window for h, t in self._recent):
            return True
        self._recent.append((msg_hash, now))
        return False

    async def _flush_loop(self) -> None:
        """Drain the queue with rate limiting."""
        sent_this_minute = 0
        minute_start = now_utc().timestamp()

        while True:
            message = await self._queue.get()
            now = now_utc().timestamp()

            if now - minute_start >= 60:
                sent_this_minute = 0
                minute_start = now

            if sent_this_minute >= self._config.chat.max_messages_per_minute:
                self.dropped_total += 1
                self._logger.warning("Chat rate limit hit, dropping: %s", message[:60])
                continue

            try:
                await self._client.send(message)
                sent_this_minute += 1
                self.sent_total += 1
            except Exception as exc:
                self._logger.error("Chat send failed: %s", exc)

            await asyncio.sleep(self._config.chat.send_interval_seconds)
