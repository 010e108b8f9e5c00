"""Twitch chat client — IRC over an aiohttp websocket.

Joins one channel, answers PINGs, forwards PRIVMSG lines to a callback and
sends outbound messages. The connection is re-established with exponential
backoff when Twitch drops it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import aiohttp

if TYPE_CHECKING:
    from .config import TwitchConfig


@dataclass
class IrcMessage:
    command: str
    params: list[str] = field(default_factory=list)
    prefix: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def nick(self) -> str:
        return self.prefix.split("!", 1)[0] if self.prefix else ""

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def parse_tags(tag_str: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for part in tag_str.split(";"):
        if not part:
            continue
        if "=" in part:
            k, v = part.split("=", 1)
            tags[k] = v.replace("\\s", " ").replace("\\:", ";").replace("\\\\", "\\")
        else:
            tags[part] = ""
    return tags


def parse_irc_line(line: str) -> IrcMessage | None:
    """Parse one raw IRC line. Returns None for blank lines."""
    line = line.rstrip("\r\n")
    if not line:
        return None

    tags: dict[str, str] = {}
    if line.startswith("@"):
        tag_str, _, line = line[1:].partition(" ")
        tags = parse_tags(tag_str)

    prefix = ""
    if line.startswith(":"):
        prefix, _, line = line[1:].partition(" ")

    trailing = None
    if " :" in line:
        line, trailing = line.split(" :", 1)
    elif line.startswith(":"):
        line, trailing = "", line[1:]

    parts = line.split()
    if not parts:
        return None
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, prefix=prefix, tags=tags)


def chat_sender(message: IrcMessage) -> str:
    """Login name of the sender; stable across display-name changes."""
    return message.nick.lower()


def chat_display_name(message: IrcMessage) -> str:
    return message.tags.get("display-name") or message.nick


class TwitchChatClient:
    """Minimal IRC client for one channel."""

    def __init__(
        self,
        config: TwitchConfig,
        on_message: Callable[[str, str, str], None],
        logger: logging.Logger | None = None,
        max_backoff: float = 60.0,
    ) -> None:
        self._config = config
        self._on_message = on_message
        self._logger = logger or logging.getLogger("soundbot.chat")
        self._max_backoff = max_backoff
        self._channel = config.channel.strip().lstrip("#").lower()

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._joined = asyncio.Event()
        self.messages_received = 0
        self.reconnects = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed and self._joined.is_set()

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self, wait_joined: float = 10.0) -> bool:
        """Start the connection loop; waits up to ``wait_joined`` seconds for JOIN."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(self._joined.wait(), timeout=wait_joined)
        except asyncio.TimeoutError:
            self._logger.warning("Chat not joined after %.0fs, continuing in background", wait_joined)
            return False
        return True

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session:
            await self._session.close()
            self._session = None

    # ── Outbound ─────────────────────────────────────────────

    async def send(self, text: str) -> None:
        if not self.connected:
            raise ConnectionError("chat is not connected")
        await self._ws.send_str(f"PRIVMSG #{self._channel} :{text}")

    # ── Connection loop ──────────────────────────────────────

    async def _run(self) -> None:
        backoff = 1.0
        while True:
            try:
                await self._connect_once()
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError) as e:
                self._logger.warning("Chat connection failed: %s", e)
            except Exception:
                self._logger.exception("Unexpected chat error")
            finally:
                self._joined.clear()
                self._ws = None

            self.reconnects += 1
            self._logger.info("Reconnecting to chat in %.0fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._max_backoff)

    async def _connect_once(self) -> None:
        assert self._session is not None
        async with self._session.ws_connect(self._config.chat_url, heartbeat=60) as ws:
            self._ws = ws
            await ws.send_str("CAP REQ :twitch.tv/tags twitch.tv/commands")
            await ws.send_str(f"PASS {self._config.irc_token}")
            await ws.send_str(f"NICK {self._config.bot_username.lower()}")
            await ws.send_str(f"JOIN #{self._channel}")

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    for line in msg.data.split("\r\n"):
                        await self._handle_line(ws, line)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        self._logger.warning("Chat connection closed")

    async def _handle_line(self, ws: aiohttp.ClientWebSocketResponse, line: str) -> None:
        message = parse_irc_line(line)
        if message is None:
            return

        if message.command == "PING":
            await ws.send_str(f"PONG :{message.trailing or 'tmi.twitch.tv'}")
        elif message.command == "JOIN" and message.nick.lower() == self._config.bot_username.lower():
            self._joined.set()
            self._logger.info("Joined chat #%s", self._channel)
        elif message.command == "NOTICE" and "authentication failed" in message.trailing.lower():
            raise ConnectionError(f"chat login rejected: {message.trailing}")
        elif message.command == "RECONNECT":
            raise ConnectionError("server requested reconnect")
        elif message.command == "PRIVMSG":
            self.messages_received += 1
            self._on_message(chat_sender(message), message.trailing, chat_display_name(message))
