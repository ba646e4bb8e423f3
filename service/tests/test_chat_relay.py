"""
Tests for the live chat relay.
"""

import pytest

from matchbot.realtime import ChatLiveRelay
from matchbot.realtime.chat_relay import COUNTERPART_PREFIX


class SentMessages:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def __call__(self, chat_id, text):
        if self.fail:
            raise RuntimeError("telegram down")
        self.sent.append((chat_id, text))


@pytest.fixture
def sender():
    return SentMessages()


@pytest.fixture
def relay(fake_connection, sender):
    return ChatLiveRelay(fake_connection, sender)


class TestChatMode:
    def test_enter_subscribes_chat_topic(self, relay, fake_connection):
        relay.enter_chat_mode(100, 5, 7)
        assert fake_connection.subscribe_calls == ["/chats/7"]
        assert relay.is_active(100)

    def test_reentering_does_not_duplicate_subscription(self, relay, fake_connection):
        relay.enter_chat_mode(100, 5, 7)
        relay.enter_chat_mode(100, 5, 7)
        relay.leave_chat_mode(100)
        relay.enter_chat_mode(100, 5, 7)
        assert fake_connection.subscribe_calls == ["/chats/7"]

    def test_leave_keeps_subscription(self, relay, fake_connection):
        relay.enter_chat_mode(100, 5, 7)
        relay.leave_chat_mode(100)

        assert not relay.is_active(100)
        assert relay.subscribed_chats == ["7"]
        assert "/chats/7" in fake_connection.handlers

    def test_is_relaying(self, relay):
        relay.enter_chat_mode(100, 5, 7)
        assert relay.is_relaying("100", "7")
        assert not relay.is_relaying(100, 8)
        relay.leave_chat_mode(100)
        assert not relay.is_relaying(100, 7)

    def test_switching_chat_releases_unused_topic(self, relay, fake_connection):
        relay.enter_chat_mode(100, 5, 7)
        relay.enter_chat_mode(100, 5, 8)

        assert relay.subscribed_chats == ["8"]
        assert "/chats/7" not in fake_connection.handlers

    def test_shared_topic_kept_while_used(self, relay, fake_connection):
        relay.enter_chat_mode(100, 5, 7)
        relay.enter_chat_mode(200, 6, 7)

        relay.clear_chat(100)
        assert relay.subscribed_chats == ["7"]

        relay.clear_chat(200)
        assert relay.subscribed_chats == []
        assert fake_connection.handlers == {}

    def test_stop_releases_everything(self, relay, fake_connection):
        relay.enter_chat_mode(100, 5, 7)
        relay.enter_chat_mode(200, 6, 8)

        relay.stop()

        assert fake_connection.handlers == {}
        assert fake_connection.stopped
        assert not relay.is_active(100)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_counterpart_message_is_sent(self, relay, fake_connection, sender):
        relay.enter_chat_mode(100, 5, 7)
        await fake_connection.emit_and_wait("/chats/7", {"id": 1, "chatId": 7, "senderId": 6, "content": "привет"})

        assert sender.sent == [("100", f"{COUNTERPART_PREFIX}привет")]

    @pytest.mark.asyncio
    async def test_own_message_is_not_echoed(self, relay, fake_connection, sender):
        relay.enter_chat_mode(100, 5, 7)
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 5, "content": "mine"})
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "sender": {"id": "5"}, "content": "mine"})

        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_empty_content_is_suppressed(self, relay, fake_connection, sender):
        relay.enter_chat_mode(100, 5, 7)
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 6, "content": ""})
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 6})

        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_inactive_chat_gets_nothing(self, relay, fake_connection, sender):
        relay.enter_chat_mode(100, 5, 7)
        relay.leave_chat_mode(100)
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 6, "content": "hi"})

        assert sender.sent == []

        relay.enter_chat_mode(100, 5, 7)
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 6, "content": "hi"})
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_message_for_other_chat_is_discarded(self, relay, fake_connection, sender):
        relay.enter_chat_mode(100, 5, 7)
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 8, "senderId": 6, "content": "hi"})

        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_each_telegram_chat_filters_its_own_echo(self, relay, fake_connection, sender):
        relay.enter_chat_mode(100, 5, 7)
        relay.enter_chat_mode(200, 6, 7)
        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 5, "content": "from 5"})

        assert sender.sent == [("200", f"{COUNTERPART_PREFIX}from 5")]

    @pytest.mark.asyncio
    async def test_send_failure_is_contained(self, fake_connection):
        relay = ChatLiveRelay(fake_connection, SentMessages(fail=True))
        relay.enter_chat_mode(100, 5, 7)

        await fake_connection.emit_and_wait("/chats/7", {"chatId": 7, "senderId": 6, "content": "hi"})
