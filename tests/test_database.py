"""Tests for soundbot.database module."""

from __future__ import annotations

import json
import sqlite3
from datetime import timedelta

import pytest

from soundbot.database import BotDatabase, vip_records_from_json, vip_records_to_json
from soundbot.vip_ledger import VipRecord

from conftest import NOW


def _record(name: str, days: int = 30) -> VipRecord:
    return VipRecord(name, NOW, NOW + timedelta(days=days))


class TestInitialization:
    async def test_initialize_idempotent(self, database: BotDatabase):
        await database.initialize()
        assert await database.load_vip_records() == []


class TestVipSnapshot:
    async def test_save_and_load(self, database: BotDatabase):
        await database.save_vip_records([_record("alice"), _record("Bob", 10)])

        loaded = await database.load_vip_records()

        assert {r.username for r in loaded} == {"alice", "Bob"}
        bob = next(r for r in loaded if r.username == "Bob")
        assert bob.expiry_date == NOW + timedelta(days=10)

    async def test_save_replaces_previous_snapshot(self, database: BotDatabase):
        await database.save_vip_records([_record("alice"), _record("bob")])
        await database.save_vip_records([_record("carol")])

        assert [r.username for r in await database.load_vip_records()] == ["carol"]

    async def test_failed_save_keeps_previous_snapshot(self, database: BotDatabase):
        await database.save_vip_records([_record("alice")])

        # Case-insensitive duplicate violates the unique constraint mid-insert
        with pytest.raises(sqlite3.IntegrityError):
            await database.save_vip_records([_record("zed"), _record("ZED")])

        assert [r.username for r in await database.load_vip_records()] == ["alice"]

    async def test_vip_events(self, database: BotDatabase):
        await database.log_vip_event("purchase", "alice")
        await database.log_vip_event("steal", "bob", related_user="alice")

        events = await database.get_vip_events()

        assert events[0]["event"] == "steal"
        assert events[0]["related_user"] == "alice"
        assert events[1]["username"] == "alice"


class TestActivations:
    async def test_usage_and_points(self, database: BotDatabase):
        await database.record_activation("alice", "!hello", "chat")
        await database.record_activation("bob", "!airhorn", "redemption", cost=500)
        await database.record_activation("carol", "!airhorn", "redemption", cost=500)

        assert await database.get_command_usage() == {"!airhorn": 2, "!hello": 1}
        assert await database.get_points_spent() == 1000

    async def test_empty_points(self, database: BotDatabase):
        assert await database.get_points_spent() == 0


class TestJsonInterchange:
    def test_round_trip_format(self):
        data = vip_records_to_json([_record("alice")])
        assert set(data[0]) == {"username", "grantDate", "expiryDate"}
        assert vip_records_from_json(data)[0].expiry_date == NOW + timedelta(days=30)

    def test_unreadable_rows_skipped(self):
        rows = [
            {"username": "ok", "grantDate": "2026-03-01T12:00:00", "expiryDate": "2026-03-31T12:00:00"},
            {"username": "", "grantDate": "2026-03-01T12:00:00", "expiryDate": "2026-03-31T12:00:00"},
            {"username": "bad", "grantDate": "yesterday", "expiryDate": "2026-03-31T12:00:00"},
        ]
        records = vip_records_from_json(rows)
        assert [r.username for r in records] == ["ok"]
        assert records[0].grant_date.tzinfo is not None

    async def test_import_and_export(self, database: BotDatabase, tmp_path):
        source = tmp_path / "vips.json"
        source.write_text(json.dumps(vip_records_to_json([_record("alice"), _record("bob")])), encoding="utf-8")

        imported = await database.import_vip_json(str(source))
        assert len(imported) == 2

        target = tmp_path / "out.json"
        assert await database.export_vip_json(str(target)) == 2
        exported = json.loads(target.read_text(encoding="utf-8"))
        assert {row["username"] for row in exported} == {"alice", "bob"}

    async def test_import_rejects_non_list(self, database: BotDatabase, tmp_path):
        source = tmp_path / "vips.json"
        source.write_text('{"username": "alice"}', encoding="utf-8")
        with pytest.raises(ValueError):
            await database.import_vip_json(str(source))
