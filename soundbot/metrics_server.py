"""Prometheus metrics server for twitch-soundbot.

Small aiohttp.web app exposing ``/metrics`` (Prometheus text format) and
``/health`` (JSON). Session counters come from ``BotStatistics``; lifetime
totals are read from the database on each scrape.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from .main import SoundBotApp


class SoundBotMetricsServer:
    """Bot-specific Prometheus metrics endpoint."""

    def __init__(self, app: SoundBotApp, host: str = "127.0.0.1", port: int = 28290) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._logger = app.logger
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        web_app = web.Application()
        web_app.router.add_get("/metrics", self._handle_metrics)
        web_app.router.add_get("/health", self._handle_health)
        self._runner = web.AppRunner(web_app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self._logger.info("Metrics server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        body = "\n".join(await self.collect_metrics()) + "\n"
        return web.Response(text=body, content_type="text/plain")

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.health_details())

    async def collect_metrics(self) -> list[str]:
        app = self._app
        stats = app.statistics
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"soundbot_events_processed_total {app.dispatcher.events_processed if app.dispatcher else 0}")
        lines.append(f'soundbot_sound_activations_total{{source="chat"}} {stats.chat_activations}')
        lines.append(f'soundbot_sound_activations_total{{source="redemption"}} {stats.redemption_activations}')
        lines.append(f"soundbot_points_spent_total {stats.points_spent}")
        lines.append(f"soundbot_cooldown_rejections_total {stats.cooldown_rejections}")
        lines.append(f"soundbot_unmapped_redemptions_total {stats.unmapped_redemptions}")
        lines.append(f"soundbot_vip_purchases_total {stats.vip_purchases}")
        lines.append(f"soundbot_vip_renewals_total {stats.vip_renewals}")
        lines.append(f"soundbot_vip_denied_total {stats.vip_denied}")
        lines.append(f"soundbot_vip_steal_attempts_total {stats.steal_attempts}")
        lines.append(f"soundbot_vip_steal_successes_total {stats.steal_successes}")
        if app.renderer:
            lines.append(f"soundbot_sounds_played_total {app.renderer.played_total}")
            lines.append(f"soundbot_sounds_dropped_total {app.renderer.dropped_total}")
        if app.announcer:
            lines.append(f"soundbot_chat_messages_sent_total {app.announcer.sent_total}")

        # ── Gauges ───────────────────────────────────────────
        lines.append(f"soundbot_catalog_commands {len(app.catalog)}")
        lines.append(f"soundbot_mapped_rewards {len(app.mapping)}")
        lines.append(f"soundbot_vip_members {len(app.ledger)}")
        lines.append(f"soundbot_rewards_ready {int(bool(app.dispatcher and app.dispatcher.rewards_ready))}")

        for command, count in stats.top_commands():
            lines.append(f'soundbot_command_usage_total{{command="{command}"}} {count}')

        # ── Lifetime (database) ──────────────────────────────
        if app.db:
            try:
                lines.append(f"soundbot_points_spent_lifetime_total {await app.db.get_points_spent()}")
                for command, count in sorted((await app.db.get_command_usage()).items()):
                    lines.append(f'soundbot_command_usage_lifetime_total{{command="{command}"}} {count}')
            except Exception:
                self._logger.exception("Failed to read lifetime metrics")
        if app.music:
            lines.append(f"soundbot_music_updates_total {app.music.updates_total}")
        return lines

    def health_details(self) -> dict:
        app = self._app
        return {
            "status": "ok" if app.running else "starting",
            "chat_connected": bool(app.chat and app.chat.connected),
            "eventsub_subscribed": bool(app.eventsub and app.eventsub.subscribed),
            "rewards_ready": bool(app.dispatcher and app.dispatcher.rewards_ready),
            "rewards_status": app.rewards_status,
            "uptime_seconds": int(app.uptime_seconds),
            "commands": len(app.catalog),
            "vip_members": len(app.ledger),
            "statistics": app.statistics.as_dict(),
            "now_playing": app.music.current.as_dict() if app.music else None,
        }
