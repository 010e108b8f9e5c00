"""Now-playing tracker.

A tiny aiohttp.web endpoint that a browser userscript (or any player
plugin) POSTs the current track to. Chat keywords such as ``!song`` read
it back through ``MusicTracker.current``.

    POST /   {"name": "...", "link": "..."}   → update the current track
    GET  /                                     → current track as JSON
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from aiohttp import web

from .utils import now_utc

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@dataclass(frozen=True)
class NowPlaying:
    name: str = ""
    link: str = ""
    updated_at: datetime | None = None

    @property
    def is_playing(self) -> bool:
        return bool(self.name.strip())

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "link": self.link,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


def parse_track(payload: Any) -> NowPlaying | None:
    """Read ``name``/``link`` from a JSON object; key case is ignored."""
    if not isinstance(payload, dict):
        return None
    fields = {str(k).lower(): v for k, v in payload.items()}
    name = fields.get("name") or ""
    link = fields.get("link") or ""
    if not isinstance(name, str) or not isinstance(link, str):
        return None
    return NowPlaying(name.strip(), link.strip(), now_utc())


class MusicTracker:
    """Holds the current track and serves the update endpoint."""

    def __init__(self, host: str = "127.0.0.1", port: int = 8080, logger: logging.Logger | None = None) -> None:
        self._host = host
        self._port = port
        self._logger = logger or logging.getLogger("soundbot.music")
        self._runner: web.AppRunner | None = None
        self._current = NowPlaying()
        self.updates_total = 0

    @property
    def current(self) -> NowPlaying:
        return self._current

    def update(self, track: NowPlaying) -> None:
        self._current = track
        self.updates_total += 1
        if track.is_playing:
            self._logger.debug("Now playing: %s %s", track.name, track.link)
        else:
            self._logger.debug("Now playing cleared")

    # ── Lifecycle ────────────────────────────────────────────

    def build_app(self) -> web.Application:
        web_app = web.Application()
        web_app.router.add_get("/", self._handle_get)
        web_app.router.add_post("/", self._handle_post)
        web_app.router.add_route("OPTIONS", "/", self._handle_options)
        return web_app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self._logger.info("Music tracker listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ─────────────────────────────────────────────

    @staticmethod
    def _reply(status: int, body: dict[str, Any]) -> web.Response:
        return web.json_response(body, status=status, headers=CORS_HEADERS)

    async def _handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=200, headers=CORS_HEADERS)

    async def _handle_get(self, request: web.Request) -> web.Response:
        return self._reply(200, self._current.as_dict())

    async def _handle_post(self, request: web.Request) -> web.Response:
        text = await request.text()
        if not text.strip():
            return self._reply(400, {"status": "error", "message": "Empty data"})
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            self._logger.warning("Music tracker got invalid JSON: %s", e)
            return self._reply(400, {"status": "error", "message": "Invalid JSON"})

        track = parse_track(payload)
        if track is None:
            return self._reply(400, {"status": "error", "message": "Invalid data"})
        self.update(track)
        return self._reply(200, {"status": "success", "message": "Track updated"})
