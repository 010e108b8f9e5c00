"""EventSub websocket listener for channel-points redemptions.

On ``session_welcome`` the client registers the redemption subscription
through Helix; each ``notification`` is handed to a callback as
``(reward_id, reward_title, login, display_name)``. ``session_reconnect`` switches to
the URL Twitch provides, and a missing keepalive triggers a reconnect.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import aiohttp

from .helix_client import describe_error

if TYPE_CHECKING:
    from .config import TwitchConfig
    from .helix_client import HelixClient

REDEMPTION_TYPE = "channel.channel_points_custom_reward_redemption.add"
REDEMPTION_VERSION = "1"


@dataclass(frozen=True)
class Redemption:
    reward_id: str
    reward_title: str
    username: str
    display_name: str = ""
    message_id: str = ""


def parse_redemption(data: dict) -> Redemption | None:
    """Extract a redemption from a notification frame, or None."""
    metadata = data.get("metadata") or {}
    if metadata.get("message_type") != "notification":
        return None
    if metadata.get("subscription_type") != REDEMPTION_TYPE:
        return None
    event = (data.get("payload") or {}).get("event") or {}
    reward = event.get("reward") or {}
    if not reward.get("id"):
        return None
    return Redemption(
        reward_id=str(reward["id"]),
        reward_title=reward.get("title", ""),
        username=event.get("user_login", ""),
        display_name=event.get("user_name") or event.get("user_login", ""),
        message_id=metadata.get("message_id", ""),
    )


class EventSubClient:
    """Websocket transport for redemption notifications."""

    def __init__(
        self,
        config: TwitchConfig,
        helix: HelixClient,
        on_redemption: Callable[[str, str, str, str], None],
        logger: logging.Logger | None = None,
        max_backoff: float = 60.0,
    ) -> None:
        self._config = config
        self._helix = helix
        self._on_redemption = on_redemption
        self._logger = logger or logging.getLogger("soundbot.eventsub")
        self._max_backoff = max_backoff

        self._session: aiohttp.ClientSession | None = None
        self._task: asyncio.Task | None = None
        self._reconnect_url: str | None = None
        self._keepalive_timeout = 30.0
        self._seen_ids: deque[str] = deque(maxlen=500)
        self.session_id: str = ""
        self.subscribed = False
        self.notifications_received = 0

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session:
            await self._session.close()
            self._session = None

    async def _run(self) -> None:
        backoff = 1.0
        while True:
            url = self._reconnect_url or self._config.eventsub_url
            self._reconnect_url = None
            try:
                await self._listen(url)
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError) as e:
                self._logger.warning("EventSub connection failed: %s", e)
            except Exception:
                self._logger.exception("Unexpected EventSub error")

            if self._reconnect_url:
                # Subscriptions carry over to the reconnect session
                continue
            self.subscribed = False
            self._logger.info("Reconnecting to EventSub in %.0fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._max_backoff)

    async def _listen(self, url: str) -> None:
        assert self._session is not None
        async with self._session.ws_connect(url) as ws:
            while True:
                # Twitch promises a frame at least every keepalive_timeout seconds
                msg = await ws.receive(timeout=self._keepalive_timeout + 10)
                if msg.type == aiohttp.WSMsgType.TEXT:
                    if await self.handle_frame(json.loads(msg.data)):
                        return
                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR,
                ):
                    self._logger.warning("EventSub socket closed (%s)", ws.close_code)
                    return

    async def handle_frame(self, data: dict) -> bool:
        """Process one frame. Returns True when the socket should be left."""
        metadata = data.get("metadata") or {}
        message_type = metadata.get("message_type")
        payload = data.get("payload") or {}

        if message_type == "session_welcome":
            session = payload.get("session") or {}
            self.session_id = session.get("id", "")
            self._keepalive_timeout = float(session.get("keepalive_timeout_seconds") or 30)
            self._logger.info("EventSub session %s", self.session_id[:8])
            if not self.subscribed:
                await self._subscribe()
        elif message_type == "session_reconnect":
            self._reconnect_url = (payload.get("session") or {}).get("reconnect_url")
            self._logger.info("EventSub asked to reconnect")
            return True
        elif message_type == "revocation":
            sub = payload.get("subscription") or {}
            self.subscribed = False
            self._logger.error("EventSub subscription revoked: %s", sub.get("status"))
        elif message_type == "notification":
            message_id = metadata.get("message_id", "")
            if message_id and message_id in self._seen_ids:
                self._logger.debug("Skipping duplicate notification %s", message_id)
                return False
            if message_id:
                self._seen_ids.append(message_id)
            redemption = parse_redemption(data)
            if redemption is not None:
                self.notifications_received += 1
                self._on_redemption(
                    redemption.reward_id, redemption.reward_title, redemption.username, redemption.display_name,
                )
        return False

    async def _subscribe(self) -> None:
        try:
            await self._helix.create_eventsub_subscription(
                REDEMPTION_TYPE,
                REDEMPTION_VERSION,
                {"broadcaster_user_id": self._helix.broadcaster_id},
                self.session_id,
            )
        except Exception as e:
            self._logger.error("Could not subscribe to redemptions: %s", describe_error(e))
            raise ConnectionError("redemption subscription failed") from e
        self.subscribed = True
        self._logger.info("Subscribed to channel-points redemptions")
