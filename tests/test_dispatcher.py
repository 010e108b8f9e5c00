"""Tests for Dispatcher — chat commands, redemptions, VIP routing."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from soundbot.announcer import ChatAnnouncer
from soundbot.config import SoundBotConfig
from soundbot.cooldowns import CooldownTracker
from soundbot.dispatcher import DispatchOutcome, Dispatcher
from soundbot.music_tracker import MusicTracker, NowPlaying
from soundbot.reward_reconciler import VIP_PURCHASE_KEY, VIP_STEAL_KEY
from soundbot.statistics import BotStatistics

from conftest import NOW, make_config_dict


def _at(seconds: int):
    return NOW + timedelta(seconds=seconds)


def _title_index() -> dict[str, str]:
    return {"Airhorn": "!airhorn", "Buy VIP": VIP_PURCHASE_KEY, "Steal VIP": VIP_STEAL_KEY}


# ═══════════════════════════════════════════════════════════════
#  Chat path
# ═══════════════════════════════════════════════════════════════


class TestChat:
    async def test_cooldown_sequence(self, dispatcher, mock_renderer):
        assert await dispatcher.on_chat_event("A", "!hello", _at(0)) is DispatchOutcome.PLAYED
        assert await dispatcher.on_chat_event("A", "!hello", _at(10)) is DispatchOutcome.COOLDOWN
        assert await dispatcher.on_chat_event("A", "!hello", _at(31)) is DispatchOutcome.PLAYED
        assert mock_renderer.play.call_count == 2

    async def test_text_normalized(self, dispatcher, mock_renderer):
        assert await dispatcher.on_chat_event("A", "  !HeLLo ", _at(0)) is DispatchOutcome.PLAYED
        path = mock_renderer.play.call_args[0][0]
        assert path == "hello.mp3"

    async def test_plain_text_ignored(self, dispatcher, mock_renderer):
        assert await dispatcher.on_chat_event("A", "hello", _at(0)) is DispatchOutcome.IGNORED
        mock_renderer.play.assert_not_called()

    async def test_unknown_command(self, dispatcher):
        assert await dispatcher.on_chat_event("A", "!nope", _at(0)) is DispatchOutcome.UNKNOWN

    async def test_ignored_user_and_bot(self, dispatcher, mock_renderer):
        assert await dispatcher.on_chat_event("ignoredbot", "!hello") is DispatchOutcome.IGNORED
        assert await dispatcher.on_chat_event("TESTBOT", "!hello") is DispatchOutcome.IGNORED
        mock_renderer.play.assert_not_called()

    async def test_chat_disabled_command(self, dispatcher, catalog, mock_renderer):
        catalog.reload([{"command": "!quiet", "sound": "q.mp3", "chat_enabled": False}])
        assert await dispatcher.on_chat_event("A", "!quiet") is DispatchOutcome.DISABLED
        mock_renderer.play.assert_not_called()

    async def test_chat_switch_off(self, dispatcher, mock_renderer):
        dispatcher.update_config(SoundBotConfig(**make_config_dict(chat={"enabled": False})))
        assert await dispatcher.on_chat_event("A", "!hello") is DispatchOutcome.DISABLED
        mock_renderer.play.assert_not_called()

    async def test_sound_list(self, dispatcher, mock_announcer):
        assert await dispatcher.on_chat_event("A", "!sounds") is DispatchOutcome.LISTED
        key, variables = mock_announcer.announce.call_args[0][:2]
        assert key == "sound_list"
        assert variables["commands"] == "!airhorn, !hello"

    async def test_music_keyword_reports_track(self, dispatcher, mock_announcer, mock_renderer):
        tracker = MusicTracker()
        tracker.update(NowPlaying("Daft Punk - Aerodynamic", "https://example.test/t/1"))
        dispatcher._music = tracker

        outcome = await dispatcher.on_chat_event("alice", "!SONG", display_name="Alice")

        assert outcome is DispatchOutcome.NOW_PLAYING
        key, variables = mock_announcer.announce.call_args[0][:2]
        assert key == "music_playing"
        assert variables == {"name": "Alice", "track": "Daft Punk - Aerodynamic", "link": "https://example.test/t/1"}
        mock_renderer.play.assert_not_called()

    async def test_music_keyword_without_track(self, dispatcher, mock_announcer):
        dispatcher._music = MusicTracker()

        assert await dispatcher.on_chat_event("alice", "!music") is DispatchOutcome.NOW_PLAYING
        key, variables = mock_announcer.announce.call_args[0][:2]
        assert key == "music_idle"
        assert variables == {"name": "alice"}

    async def test_music_keyword_ignored_when_disabled(self, dispatcher, mock_announcer):
        dispatcher._music = MusicTracker()
        dispatcher.update_config(SoundBotConfig(**make_config_dict(music={"enabled": False})))

        assert await dispatcher.on_chat_event("alice", "!music") is DispatchOutcome.UNKNOWN
        mock_announcer.announce.assert_not_awaited()

    async def test_statistics_and_history(self, dispatcher, database):
        await dispatcher.on_chat_event("A", "!hello", _at(0))
        assert dispatcher._stats.chat_activations == 1
        assert dispatcher._stats.points_spent == 0
        assert await database.get_command_usage() == {"!hello": 1}


# ═══════════════════════════════════════════════════════════════
#  Redemption path
# ═══════════════════════════════════════════════════════════════


class TestRedemption:
    async def test_mapped_reward_plays(self, dispatcher, mapping, mock_renderer):
        mapping.rebuild({"r-1": "!airhorn"}, _title_index())

        outcome = await dispatcher.on_redemption_event("r-1", "Airhorn", "bob", _at(0))

        assert outcome is DispatchOutcome.PLAYED
        assert mock_renderer.play.call_args[0][0] == "airhorn.wav"
        assert dispatcher._stats.points_spent == 500

    async def test_unmapped_id_healed_by_title(self, dispatcher, mapping):
        mapping.rebuild({}, _title_index())

        outcome = await dispatcher.on_redemption_event("late-id", "airhorn", "bob", _at(0))

        assert outcome is DispatchOutcome.PLAYED
        assert mapping.resolve("late-id") == "!airhorn"

    async def test_unrelated_reward_ignored(self, dispatcher, mapping, mock_renderer):
        mapping.rebuild({}, _title_index())

        outcome = await dispatcher.on_redemption_event("x", "Hydrate", "bob")

        assert outcome is DispatchOutcome.UNKNOWN
        assert dispatcher._stats.unmapped_redemptions == 1
        mock_renderer.play.assert_not_called()

    async def test_redemption_cooldown_independent_of_chat(self, dispatcher, mapping):
        mapping.rebuild({"r-1": "!airhorn"}, _title_index())

        assert await dispatcher.on_chat_event("bob", "!airhorn", _at(0)) is DispatchOutcome.PLAYED
        assert await dispatcher.on_redemption_event("r-1", "Airhorn", "bob", _at(1)) is DispatchOutcome.PLAYED
        assert await dispatcher.on_redemption_event("r-1", "Airhorn", "bob", _at(2)) is DispatchOutcome.COOLDOWN

    async def test_held_until_rewards_ready(self, sample_config, catalog, mapping, ledger, mock_renderer, mock_announcer):
        d = Dispatcher(
            config=sample_config,
            catalog=catalog,
            cooldowns=CooldownTracker(),
            mapping=mapping,
            ledger=ledger,
            renderer=mock_renderer,
            announcer=mock_announcer,
            moderation=None,
            statistics=BotStatistics(),
            logger=logging.getLogger("test"),
            clock=lambda: NOW,
        )

        assert await d.on_redemption_event("r-1", "Airhorn", "bob") is DispatchOutcome.DEFERRED
        assert d.backlog_size == 1
        mock_renderer.play.assert_not_called()

        # Chat is not held back
        assert await d.on_chat_event("bob", "!hello") is DispatchOutcome.PLAYED

        mapping.rebuild({"r-1": "!airhorn"}, _title_index())
        replayed = d.mark_rewards_ready()

        assert replayed == 1
        assert d.backlog_size == 0
        # Requeued, not handled inline
        assert mock_renderer.play.call_count == 1
        event = d._queue.get_nowait()
        assert (event.reward_id, event.username) == ("r-1", "bob")

    async def test_rewards_switch_off(self, dispatcher, mapping, mock_renderer):
        mapping.rebuild({"r-1": "!airhorn"}, _title_index())
        dispatcher.update_config(SoundBotConfig(**make_config_dict(rewards={"enabled": False})))

        assert await dispatcher.on_redemption_event("r-1", "Airhorn", "bob") is DispatchOutcome.DISABLED
        mock_renderer.play.assert_not_called()


# ═══════════════════════════════════════════════════════════════
#  VIP rewards
# ═══════════════════════════════════════════════════════════════


class TestVip:
    async def test_purchase_granted_and_persisted(self, dispatcher, mapping, ledger, mock_announcer, database):
        mapping.rebuild({"vip-buy": VIP_PURCHASE_KEY}, _title_index())

        outcome = await dispatcher.on_redemption_event("vip-buy", "Buy VIP", "alice", NOW)

        assert outcome is DispatchOutcome.VIP_GRANTED
        assert ledger.is_member("alice", NOW)
        assert mock_announcer.announce.call_args[0][0] == "vip_purchased"
        assert mock_announcer.announce.call_args[0][1] == {"name": "alice", "days": 30}
        stored = await database.load_vip_records()
        assert [r.username for r in stored] == ["alice"]
        events = await database.get_vip_events()
        assert events[0]["event"] == "purchase"

    async def test_purchase_denied_at_capacity(self, dispatcher, mapping, ledger, mock_announcer):
        mapping.rebuild({"vip-buy": VIP_PURCHASE_KEY}, _title_index())
        for name in ["a", "b", "c", "d", "e"]:
            ledger.purchase(name, 30, 5, NOW)

        outcome = await dispatcher.on_redemption_event("vip-buy", "Buy VIP", "late", NOW)

        assert outcome is DispatchOutcome.VIP_DENIED
        assert mock_announcer.announce.call_args[0][0] == "vip_denied"
        assert dispatcher._stats.vip_denied == 1

    async def test_repurchase_announces_renewal(self, dispatcher, mapping, mock_announcer):
        mapping.rebuild({"vip-buy": VIP_PURCHASE_KEY}, _title_index())
        await dispatcher.on_redemption_event("vip-buy", "Buy VIP", "alice", NOW)
        await dispatcher.on_redemption_event("vip-buy", "Buy VIP", "alice", NOW)
        assert mock_announcer.announce.call_args[0][0] == "vip_renewed"
        assert dispatcher._stats.vip_renewals == 1

    async def test_failed_steal_suspends_thief(self, dispatcher, mapping, ledger, mock_moderation, mock_announcer):
        mapping.rebuild({"vip-steal": VIP_STEAL_KEY}, _title_index())
        ledger.purchase("victim", 30, 5, NOW)
        dispatcher.update_config(SoundBotConfig(**make_config_dict(vip={
            "steal_enabled": True, "steal_chance_percent": 0, "steal_ban_minutes": 180,
        })))

        outcome = await dispatcher.on_redemption_event("vip-steal", "Steal VIP", "thief", NOW)

        assert outcome is DispatchOutcome.STEAL_FAILED
        mock_moderation.suspend.assert_awaited_once_with("thief", 180 * 60, "Failed VIP steal attempt")
        assert mock_announcer.announce.call_args[0][0] == "steal_failed"
        assert ledger.is_member("victim", NOW)

    async def test_successful_steal_announced(self, dispatcher, mapping, ledger, mock_moderation, mock_announcer, database):
        mapping.rebuild({"vip-steal": VIP_STEAL_KEY}, _title_index())
        ledger.purchase("victim", 30, 5, NOW)
        dispatcher.update_config(SoundBotConfig(**make_config_dict(vip={
            "steal_enabled": True, "steal_chance_percent": 100,
        })))

        outcome = await dispatcher.on_redemption_event("vip-steal", "Steal VIP", "thief", NOW)

        assert outcome is DispatchOutcome.STEAL_SUCCESS
        mock_moderation.suspend.assert_not_awaited()
        key, variables = mock_announcer.announce.call_args[0][:2]
        assert key == "steal_success"
        assert variables["thief"] == "thief"
        assert variables["prey"] == "victim"
        assert [r.username for r in await database.load_vip_records()] == ["thief"]

    async def test_suspension_failure_is_logged_not_raised(self, dispatcher, mapping, mock_moderation):
        mapping.rebuild({"vip-steal": VIP_STEAL_KEY}, _title_index())
        mock_moderation.suspend = AsyncMock(side_effect=RuntimeError("boom"))
        dispatcher.update_config(SoundBotConfig(**make_config_dict(vip={
            "steal_enabled": True, "steal_chance_percent": 0,
        })))

        outcome = await dispatcher.on_redemption_event("vip-steal", "Steal VIP", "thief", NOW)

        assert outcome is DispatchOutcome.STEAL_FAILED

    async def test_broken_steal_template_still_suspends(self, dispatcher, mapping, mock_moderation, mock_client):
        mapping.rebuild({"vip-steal": VIP_STEAL_KEY}, _title_index())
        config = SoundBotConfig(**make_config_dict(
            vip={"steal_enabled": True, "steal_chance_percent": 0, "steal_ban_minutes": 10},
            messages={"steal_failed": ["{thief} was caught {"]},
        ))
        dispatcher.update_config(config)
        announcer = ChatAnnouncer(config, mock_client, logging.getLogger("test"))
        dispatcher.set_announcer(announcer)

        outcome = await dispatcher.on_redemption_event("vip-steal", "Steal VIP", "thief", NOW)

        assert outcome is DispatchOutcome.STEAL_FAILED
        mock_moderation.suspend.assert_awaited_once_with("thief", 600, "Failed VIP steal attempt")
        assert announcer._queue.get_nowait() == "thief tried to steal VIP and got punished!"

    async def test_suspension_precedes_announcement(self, dispatcher, mapping, mock_moderation, mock_announcer):
        mapping.rebuild({"vip-steal": VIP_STEAL_KEY}, _title_index())
        dispatcher.update_config(SoundBotConfig(**make_config_dict(vip={
            "steal_enabled": True, "steal_chance_percent": 0,
        })))
        order = MagicMock()
        order.attach_mock(mock_moderation.suspend, "suspend")
        order.attach_mock(mock_announcer.announce, "announce")

        await dispatcher.on_redemption_event("vip-steal", "Steal VIP", "thief", NOW)

        assert [c[0] for c in order.mock_calls] == ["suspend", "announce"]

    async def test_login_keys_state_display_name_in_text(self, dispatcher, mapping, ledger, mock_moderation, mock_announcer):
        mapping.rebuild({"vip-buy": VIP_PURCHASE_KEY, "vip-steal": VIP_STEAL_KEY}, _title_index())
        dispatcher.update_config(SoundBotConfig(**make_config_dict(vip={
            "purchase_enabled": True, "steal_enabled": True, "steal_chance_percent": 0,
        })))

        await dispatcher.on_redemption_event("vip-buy", "Buy VIP", "alice", NOW, display_name="アリス")
        assert ledger.is_member("alice", NOW)
        assert mock_announcer.announce.call_args[0][1]["name"] == "アリス"

        await dispatcher.on_redemption_event("vip-steal", "Steal VIP", "bob_jp", NOW, display_name="ボブ")
        assert mock_moderation.suspend.await_args.args[0] == "bob_jp"
        assert mock_announcer.announce.call_args[0][1]["thief"] == "ボブ"

    async def test_vip_feature_disabled(self, dispatcher, mapping):
        mapping.rebuild({"vip-buy": VIP_PURCHASE_KEY}, _title_index())
        dispatcher.update_config(SoundBotConfig(**make_config_dict(vip={"purchase_enabled": False})))

        assert await dispatcher.on_redemption_event("vip-buy", "Buy VIP", "alice") is DispatchOutcome.DISABLED


# ═══════════════════════════════════════════════════════════════
#  Queue loop
# ═══════════════════════════════════════════════════════════════


async def test_run_loop_drains_queue(dispatcher, mapping, mock_renderer):
    mapping.rebuild({"r-1": "!airhorn"}, _title_index())
    task = asyncio.create_task(dispatcher.run())
    try:
        dispatcher.submit_chat("A", "!hello")
        dispatcher.submit_redemption("r-1", "Airhorn", "B")
        await asyncio.wait_for(dispatcher._queue.join(), timeout=2)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert mock_renderer.play.call_count == 2
    assert dispatcher.events_processed == 2


async def test_run_loop_survives_handler_error(dispatcher, catalog):
    catalog.lookup = lambda key: (_ for _ in ()).throw(RuntimeError("broken"))  # type: ignore[method-assign]
    task = asyncio.create_task(dispatcher.run())
    try:
        dispatcher.submit_chat("A", "!hello")
        dispatcher.submit_chat("A", "!hello")
        await asyncio.wait_for(dispatcher._queue.join(), timeout=2)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert dispatcher.events_processed == 2



async def test_held_redemptions_replayed_by_run_loop_in_order(dispatcher, mapping, mock_renderer):
    mapping.rebuild({"r-1": "!airhorn"}, _title_index())
    dispatcher.mark_rewards_pending()
    assert await dispatcher.on_redemption_event("r-1", "Airhorn", "first") is DispatchOutcome.DEFERRED
    dispatcher.submit_redemption("r-1", "Airhorn", "second")

    assert dispatcher.mark_rewards_ready() == 1
    mock_renderer.play.assert_not_called()

    task = asyncio.create_task(dispatcher.run())
    try:
        await asyncio.wait_for(dispatcher._queue.join(), timeout=2)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert [c.kwargs["requested_by"] for c in mock_renderer.play.call_args_list] == ["first", "second"]


async def test_set_announcer(dispatcher, mock_announcer):
    replacement = MagicMock()
    dispatcher.set_announcer(replacement)
    assert dispatcher._announcer is replacement
