"""SQLite database module for twitch-soundbot.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

The VIP ledger is persisted as a whole snapshot: save replaces every row in
one transaction, so a crash mid-save leaves the previous snapshot intact.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from .utils import now_utc, parse_timestamp
from .vip_ledger import VipRecord


# ═══════════════════════════════════════════════════════════════
#  VIP JSON interchange ({username, grantDate, expiryDate})
# ═══════════════════════════════════════════════════════════════

def vip_records_from_json(data: list[dict[str, Any]], logger: logging.Logger | None = None) -> list[VipRecord]:
    """Parse the JSON interchange format, skipping unreadable rows."""
    log = logger or logging.getLogger("soundbot.database")
    records: list[VipRecord] = []
    for row in data:
        username = (row.get("username") or "").strip()
        grant = parse_timestamp(row.get("grantDate"))
        expiry = parse_timestamp(row.get("expiryDate"))
        if not username or grant is None or expiry is None:
            log.warning("Skipping unreadable VIP record: %s", row)
            continue
        records.append(VipRecord(username, grant, expiry))
    return records


def vip_records_to_json(records: list[VipRecord]) -> list[dict[str, str]]:
    return [
        {
            "username": r.username,
            "grantDate": r.grant_date.isoformat(),
            "expiryDate": r.expiry_date.isoformat(),
        }
        for r in records
    ]


class BotDatabase:
    """SQLite-backed persistence for VIP membership and usage history."""

    def __init__(self, db_path: str, logger: logging.Logger | None = None) -> None:
        self._db_path = db_path
        self._logger = logger or logging.getLogger("soundbot.database")

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run(self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vip_members (
                    username TEXT NOT NULL,
                    username_lower TEXT NOT NULL UNIQUE,
                    grant_date TIMESTAMP NOT NULL,
                    expiry_date TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS vip_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event TEXT NOT NULL,
                    username TEXT NOT NULL,
                    related_user TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS activations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    command TEXT NOT NULL,
                    source TEXT NOT NULL,
                    cost INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_activations_command "
                "ON activations(command)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_vip_events_username "
                "ON vip_events(username)"
            )
            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  VIP Snapshot
    # ══════════════════════════════════════════════════════════

    async def load_vip_records(self) -> list[VipRecord]:
        def _sync() -> list[VipRecord]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT username, grant_date, expiry_date FROM vip_members ORDER BY grant_date"
                ).fetchall()
            finally:
                conn.close()
            records: list[VipRecord] = []
            for row in rows:
                grant = parse_timestamp(row["grant_date"])
                expiry = parse_timestamp(row["expiry_date"])
                if grant is None or expiry is None:
                    self._logger.warning("Skipping VIP row with bad dates: %s", dict(row))
                    continue
                records.append(VipRecord(row["username"], grant, expiry))
            return records

        return await self._run(_sync)

    async def save_vip_records(self, records: list[VipRecord]) -> None:
        """Replace the stored VIP set with ``records`` atomically."""
        def _sync() -> None:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("DELETE FROM vip_members")
                    conn.executemany(
                        "INSERT INTO vip_members (username, username_lower, grant_date, expiry_date) "
                        "VALUES (?, ?, ?, ?)",
                        [
                            (r.username, r.username.lower(), r.grant_date.isoformat(), r.expiry_date.isoformat())
                            for r in records
                        ],
                    )
            finally:
                conn.close()

        await self._run(_sync)

    async def log_vip_event(self, event: str, username: str, related_user: str | None = None) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO vip_events (event, username, related_user, created_at) VALUES (?, ?, ?, ?)",
                    (event, username, related_user, now_utc().isoformat()),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def get_vip_events(self, limit: int = 50) -> list[dict]:
        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT event, username, related_user, created_at FROM vip_events "
                    "ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Activation History
    # ══════════════════════════════════════════════════════════

    async def record_activation(
        self, username: str, command: str, source: str, cost: int = 0,
        at: datetime | None = None,
    ) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO activations (username, command, source, cost, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (username, command, source, cost, (at or now_utc()).isoformat()),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def get_command_usage(self) -> dict[str, int]:
        """Activation count per command, most used first."""
        def _sync() -> dict[str, int]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT command, COUNT(*) AS n FROM activations "
                    "GROUP BY command ORDER BY n DESC, command"
                ).fetchall()
                return {r["command"]: r["n"] for r in rows}
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_points_spent(self) -> int:
        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT COALESCE(SUM(cost), 0) AS total FROM activations").fetchone()
                return int(row["total"])
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  JSON import / export
    # ══════════════════════════════════════════════════════════

    async def import_vip_json(self, path: str) -> list[VipRecord]:
        """Load a ``[{username, grantDate, expiryDate}]`` file into the store."""
        with open(Path(path), "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError("VIP file must contain a JSON list")
        records = vip_records_from_json(data, self._logger)
        await self.save_vip_records(records)
        self._logger.info("Imported %d VIP record(s) from %s", len(records), path)
        return records

    async def export_vip_json(self, path: str) -> int:
        records = await self.load_vip_records()
        with open(Path(path), "w", encoding="utf-8") as f:
            json.dump(vip_records_to_json(records), f, indent=2)
        return len(records)
