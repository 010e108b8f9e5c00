"""Twitch Helix API client — channel-points rewards, moderation, EventSub.

Async aiohttp wrapper. Every non-2xx response is raised as a HelixError
carrying a category (auth / missing scope / rate limit / not found / generic)
so callers can turn failures into useful diagnostics.
All tests mock the HTTP layer — never call the real Twitch API.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp

if TYPE_CHECKING:
    from .config import TwitchConfig


class ApiErrorKind(str, Enum):
    AUTH = "auth"
    SCOPE = "scope"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    GENERIC = "generic"


class HelixError(Exception):
    """A failed Helix request."""

    def __init__(self, kind: ApiErrorKind, status: int, message: str) -> None:
        super().__init__(f"[{kind.value}] HTTP {status}: {message}")
        self.kind = kind
        self.status = status
        self.message = message

    @classmethod
    def from_response(cls, status: int, body: str) -> HelixError:
        message = body
        try:
            data = json.loads(body)
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or body
        except ValueError:
            pass

        if status == 401:
            kind = ApiErrorKind.AUTH
        elif status == 403 or "scope" in message.lower():
            kind = ApiErrorKind.SCOPE
        elif status == 429:
            kind = ApiErrorKind.RATE_LIMIT
        elif status == 404:
            kind = ApiErrorKind.NOT_FOUND
        else:
            kind = ApiErrorKind.GENERIC
        return cls(kind, status, message)


def describe_error(exc: Exception) -> str:
    """One-line, human readable explanation of a remote failure."""
    if isinstance(exc, HelixError):
        if exc.kind is ApiErrorKind.AUTH:
            return f"authentication failed — check oauth_token/client_id ({exc.message})"
        if exc.kind is ApiErrorKind.SCOPE:
            return f"missing permission (scope) — re-authorize the token ({exc.message})"
        if exc.kind is ApiErrorKind.RATE_LIMIT:
            return f"rate limited by Twitch ({exc.message})"
        return exc.message
    return str(exc) or exc.__class__.__name__


@dataclass
class RewardDescriptor:
    """Remote custom reward as returned by Helix."""

    id: str
    title: str
    cost: int
    is_enabled: bool = True
    global_cooldown_seconds: int = 0
    is_global_cooldown_enabled: bool = False
    background_color: str = ""

    @classmethod
    def from_api(cls, item: dict) -> RewardDescriptor:
        cooldown = item.get("global_cooldown_setting") or {}
        return cls(
            id=str(item.get("id", "")),
            title=item.get("title", ""),
            cost=int(item.get("cost", 0)),
            is_enabled=bool(item.get("is_enabled", True)),
            global_cooldown_seconds=int(cooldown.get("global_cooldown_seconds", 0) or 0),
            is_global_cooldown_enabled=bool(cooldown.get("is_enabled", False)),
            background_color=item.get("background_color", "") or "",
        )


@dataclass
class TokenInfo:
    login: str
    user_id: str
    client_id: str
    scopes: list[str] = field(default_factory=list)
    expires_in: int = 0


REQUIRED_SCOPES = {
    "rewards": ["channel:manage:redemptions"],
    "chat": ["chat:read", "chat:edit"],
    "moderation": ["moderator:manage:banned_users"],
}


class HelixClient:
    """Async client for the Twitch Helix endpoints the bot needs."""

    def __init__(self, config: TwitchConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("soundbot.helix")
        self._session: aiohttp.ClientSession | None = None
        self._api_base = config.api_base_url.rstrip("/")
        self.broadcaster_id: str = config.broadcaster_id
        self.moderator_id: str = ""
        self._user_ids: dict[str, str] = {}
        # {cache_key: (fetched_at, rewards)}
        self._reward_cache: dict[tuple, tuple[float, list[RewardDescriptor]]] = {}

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            headers={
                "Client-Id": self._config.client_id,
                "Authorization": f"Bearer {self._config.bearer_token}",
            },
            timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    # ══════════════════════════════════════════════════════════
    #  Transport
    # ══════════════════════════════════════════════════════════

    async def _request(
        self,
        method: str,
        path: str,
        params: Any = None,
        payload: dict | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict:
        if not self._session:
            raise HelixError(ApiErrorKind.GENERIC, 0, "HTTP session not started")

        target = url or f"{self._api_base}{path}"
        async with self._session.request(
            method, target, params=params, json=payload, headers=headers,
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise HelixError.from_response(resp.status, body)
            if resp.status == 204:
                return {}
            return await resp.json()

    # ══════════════════════════════════════════════════════════
    #  Identity
    # ══════════════════════════════════════════════════════════

    async def validate_token(self) -> TokenInfo:
        """Validate the OAuth token and return its owner and scopes."""
        data = await self._request(
            "GET", "",
            url=f"{self._config.auth_base_url.rstrip('/')}/validate",
            headers={"Authorization": f"OAuth {self._config.bearer_token}"},
        )
        info = TokenInfo(
            login=data.get("login", ""),
            user_id=str(data.get("user_id", "")),
            client_id=data.get("client_id", ""),
            scopes=list(data.get("scopes") or []),
            expires_in=int(data.get("expires_in", 0) or 0),
        )
        self.moderator_id = info.user_id
        return info

    async def get_user_id(self, login: str) -> str | None:
        """Resolve a login name to a user id (cached)."""
        login = login.strip().lower()
        if login in self._user_ids:
            return self._user_ids[login]
        data = await self._request("GET", "/users", params={"login": login})
        users = data.get("data") or []
        if not users:
            return None
        user_id = str(users[0]["id"])
        self._user_ids[login] = user_id
        return user_id

    async def resolve_broadcaster(self, channel: str) -> str:
        if not self.broadcaster_id:
            user_id = await self.get_user_id(channel)
            if not user_id:
                raise HelixError(ApiErrorKind.NOT_FOUND, 404, f"Channel '{channel}' not found")
            self.broadcaster_id = user_id
        return self.broadcaster_id

    # ══════════════════════════════════════════════════════════
    #  Reward Directory
    # ══════════════════════════════════════════════════════════

    async def list_rewards(
        self,
        ids: list[str] | None = None,
        only_manageable: bool = False,
        max_age: float = 0,
    ) -> list[RewardDescriptor]:
        """List custom rewards on the channel.

        ``max_age`` is how old (seconds) a cached listing may be and still be
        returned; 0 always fetches fresh data.
        """
        cache_key = (tuple(sorted(ids or [])), only_manageable)
        if max_age > 0:
            cached = self._reward_cache.get(cache_key)
            if cached and time.monotonic() - cached[0] <= max_age:
                return list(cached[1])

        params: list[tuple[str, str]] = [("broadcaster_id", self.broadcaster_id)]
        params.extend(("id", reward_id) for reward_id in ids or [])
        if only_manageable:
            params.append(("only_manageable_rewards", "true"))

        data = await self._request("GET", "/channel_points/custom_rewards", params=params)
        rewards = [RewardDescriptor.from_api(item) for item in data.get("data") or []]
        self._reward_cache[cache_key] = (time.monotonic(), rewards)
        return list(rewards)

    async def create_reward(
        self,
        title: str,
        cost: int,
        cooldown_seconds: int = 0,
        enabled: bool = True,
        background_color: str | None = None,
    ) -> RewardDescriptor:
        payload: dict[str, Any] = {
            "title": title,
            "cost": cost,
            "is_enabled": enabled,
            "is_user_input_required": False,
            "should_redemptions_skip_request_queue": False,
            "is_global_cooldown_enabled": cooldown_seconds > 0,
            "global_cooldown_seconds": cooldown_seconds,
        }
        if background_color:
            payload["background_color"] = background_color

        data = await self._request(
            "POST", "/channel_points/custom_rewards",
            params={"broadcaster_id": self.broadcaster_id},
            payload=payload,
        )
        self._reward_cache.clear()
        return self._first_reward(data, title)

    async def update_reward(self, reward_id: str, **fields: Any) -> RewardDescriptor:
        """PATCH a reward. Accepts Helix body fields (cost, is_enabled, …)."""
        data = await self._request(
            "PATCH", "/channel_points/custom_rewards",
            params={"broadcaster_id": self.broadcaster_id, "id": reward_id},
            payload=fields,
        )
        self._reward_cache.clear()
        return self._first_reward(data, reward_id)

    @staticmethod
    def _first_reward(data: dict, what: str) -> RewardDescriptor:
        items = data.get("data") or []
        if not items:
            raise HelixError(ApiErrorKind.GENERIC, 200, f"Empty response for reward '{what}'")
        return RewardDescriptor.from_api(items[0])

    # ══════════════════════════════════════════════════════════
    #  Moderation
    # ══════════════════════════════════════════════════════════

    async def suspend(self, username: str, duration_seconds: int, reason: str = "") -> None:
        """Time a user out for ``duration_seconds``."""
        user_id = await self.get_user_id(username)
        if not user_id:
            raise HelixError(ApiErrorKind.NOT_FOUND, 404, f"User '{username}' not found")
        if not self.moderator_id:
            await self.validate_token()

        await self._request(
            "POST", "/moderation/bans",
            params={"broadcaster_id": self.broadcaster_id, "moderator_id": self.moderator_id},
            payload={"data": {"user_id": user_id, "duration": duration_seconds, "reason": reason}},
        )
        self._logger.info("Suspended %s for %ds (%s)", username, duration_seconds, reason)

    # ══════════════════════════════════════════════════════════
    #  EventSub
    # ══════════════════════════════════════════════════════════

    async def create_eventsub_subscription(
        self,
        sub_type: str,
        version: str,
        condition: dict[str, str],
        session_id: str,
    ) -> dict:
        data = await self._request(
            "POST", "/eventsub/subscriptions",
            payload={
                "type": sub_type,
                "version": version,
                "condition": condition,
                "transport": {"method": "websocket", "session_id": session_id},
            },
        )
        items = data.get("data") or [{}]
        return items[0]
