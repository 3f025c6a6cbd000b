"""
Tests for the typing indicator
"""

import asyncio

import pytest

from services.chat_service.typing_indicator import TypingIndicator, format_typing_text

CHAT = "chat-1"
CHANNEL = f"typing:{CHAT}"


def signal(user_id, name, is_typing=True):
    return {"user_id": user_id, "user_name": name, "user_avatar": "", "is_typing": is_typing}


@pytest.fixture
def indicator(realtime, typing_config, clock, alice):
    return TypingIndicator(CHAT, lambda: alice, realtime, typing_config, clock=clock)


class TestTypingText:
    """Test indicator text formatting"""

    @pytest.mark.parametrize("names,expected", [
        ([], ""),
        (["A"], "A is typing"),
        (["A", "B"], "A and B are typing"),
        (["A", "B", "C"], "A and 2 others are typing"),
        (["A", "B", "C", "D"], "A and 3 others are typing"),
    ])
    def test_format(self, names, expected):
        assert format_typing_text(names) == expected


class TestIncomingSignals:
    """Test the locally held typing set"""

    def test_two_then_three_participants(self, indicator):
        indicator.handle_signal(signal("a", "A"))
        indicator.handle_signal(signal("b", "B"))
        assert indicator.typing_text() == "A and B are typing"

        indicator.handle_signal(signal("c", "C"))
        assert indicator.typing_text() == "A and 2 others are typing"

    def test_entry_expires_after_three_seconds(self, indicator, clock):
        indicator.handle_signal(signal("a", "A"))

        clock.advance(2.5)
        assert [u.user_id for u in indicator.typing_users()] == ["a"]

        clock.advance(0.5)
        assert indicator.typing_users() == []

    def test_refresh_extends_expiry(self, indicator, clock):
        indicator.handle_signal(signal("a", "A"))
        clock.advance(2.0)
        indicator.handle_signal(signal("a", "A"))

        clock.advance(1.5)
        assert indicator.typing_text() == "A is typing"
        clock.advance(1.5)
        assert indicator.typing_text() == ""

    def test_stop_signal_removes_participant(self, indicator):
        indicator.handle_signal(signal("a", "A"))
        indicator.handle_signal(signal("a", "A", is_typing=False))
        assert indicator.typing_users() == []

    def test_own_signals_are_ignored(self, indicator, alice):
        indicator.handle_signal(signal(alice.id, alice.name))
        assert indicator.typing_users() == []

    def test_refresh_keeps_original_order(self, indicator):
        indicator.handle_signal(signal("a", "A"))
        indicator.handle_signal(signal("b", "B"))
        indicator.handle_signal(signal("a", "A"))
        assert indicator.typing_text() == "A and B are typing"

    @pytest.mark.asyncio
    async def test_signals_arrive_over_broadcast(self, indicator, realtime):
        updates = []
        indicator.add_listener(updates.append)
        await indicator.start()

        await realtime.emit_broadcast(CHANNEL, "typing", signal("b", "Bob"))

        assert indicator.typing_text() == "Bob is typing"
        assert [u.user_name for u in updates[-1]] == ["Bob"]
        await indicator.stop()


class TestOutgoingSignals:
    """Test throttling and the idle timer"""

    @pytest.mark.asyncio
    async def test_throttled_while_composing(self, indicator, realtime, clock):
        await indicator.start()

        await indicator.notify_typing()
        clock.advance(0.1)
        await indicator.notify_typing()
        clock.advance(0.1)
        await indicator.notify_typing()
        assert [p["is_typing"] for p in realtime.broadcasts(CHANNEL)] == [True]

        clock.advance(0.5)
        await indicator.notify_typing()
        assert [p["is_typing"] for p in realtime.broadcasts(CHANNEL)] == [True, True]

        await indicator.stop()

    @pytest.mark.asyncio
    async def test_idle_timer_sends_stop(self, indicator, realtime, alice):
        await indicator.start()
        await indicator.notify_typing()

        await asyncio.sleep(0.15)

        sent = realtime.broadcasts(CHANNEL)
        assert [p["is_typing"] for p in sent] == [True, False]
        assert sent[0]["user_id"] == alice.id
        assert sent[0]["user_name"] == alice.name
        assert indicator.is_typing is False
        await indicator.stop()

    @pytest.mark.asyncio
    async def test_keystrokes_rearm_idle_timer(self, indicator, realtime):
        await indicator.start()
        for _ in range(4):
            await indicator.notify_typing()
            await asyncio.sleep(0.02)
        assert indicator.is_typing is True

        await asyncio.sleep(0.15)
        assert [p["is_typing"] for p in realtime.broadcasts(CHANNEL)] == [True, False]
        await indicator.stop()

    @pytest.mark.asyncio
    async def test_stop_typing_sends_once(self, indicator, realtime):
        await indicator.start()
        await indicator.notify_typing()

        await indicator.stop_typing()
        await indicator.stop_typing()

        assert [p["is_typing"] for p in realtime.broadcasts(CHANNEL)] == [True, False]
        await indicator.stop()

    @pytest.mark.asyncio
    async def test_stop_leaves_channel(self, indicator, realtime):
        await indicator.start()
        assert f"realtime:{CHANNEL}" in realtime.active_topics

        await indicator.stop()
        assert realtime.active_topics == []
