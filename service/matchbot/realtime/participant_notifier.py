"""
Chat activity notifications for participants outside chat mode.

Subscribes to the configured default topics (``/chats/*`` unless overridden)
on its own hub connection. For every chat message or read receipt it loads
the chat participants from the backend (cached per chat), then notifies each
participant other than the actor whose Telegram chat is known. Participants
already receiving the chat live through ChatLiveRelay are skipped.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional

from matchbot.telegram_bot.logging_config import realtime_logger
from .connection import EventBusConnection
from .payloads import backend_chat_id, first_field, message_content, sender_id

DEFAULT_TOPICS = ["/chats/*"]
PARTICIPANTS_CACHE_TTL_SECONDS = 300.0

LoadParticipants = Callable[[str], Awaitable[list]]
ResolveTelegramChat = Callable[[str], Optional[str]]
SendMessage = Callable[[Any, str], Awaitable[Any]]
IsRelayed = Callable[[Any, str], bool]


class ParticipantsCache:
    def __init__(self, ttl: float = PARTICIPANTS_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, tuple[float, list]] = {}

    def get(self, chat_id: str) -> Optional[list]:
        entry = self._entries.get(chat_id)
        if entry is None:
            return None
        expires_at, participants = entry
        if expires_at <= self.clock():
            del self._entries[chat_id]
            return None
        return participants

    def set(self, chat_id: str, participants: list) -> None:
        self._entries[chat_id] = (self.clock() + self.ttl, participants)


class ParticipantNotifier:
    def __init__(
        self,
        connection: EventBusConnection,
        load_participants: LoadParticipants,
        resolve_telegram_chat: ResolveTelegramChat,
        send_message: SendMessage,
        topics: Optional[list[str]] = None,
        is_relayed: Optional[IsRelayed] = None,
        cache_ttl: float = PARTICIPANTS_CACHE_TTL_SECONDS,
        logger: logging.Logger = realtime_logger,
    ):
        self.connection = connection
        self.load_participants = load_participants
        self.resolve_telegram_chat = resolve_telegram_chat
        self.send_message = send_message
        self.topics = list(topics) if topics else list(DEFAULT_TOPICS)
        self.is_relayed = is_relayed
        self.cache = ParticipantsCache(cache_ttl)
        self.logger = logger
        self._unsubscribes: list[Callable[[], None]] = []

    @property
    def running(self) -> bool:
        return bool(self._unsubscribes)

    def start(self) -> None:
        if self._unsubscribes:
            return
        for topic in self.topics:
            self._unsubscribes.append(self.connection.subscribe(topic, self._handle_payload))
        self.logger.info(f"[Notifier] Subscribed to {self.topics}")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        self.connection.stop()

    def _handle_payload(self, payload: Any, topic: str):
        if not isinstance(payload, dict):
            return None
        if payload.get("type") == "read":
            return self._notify_read(payload)
        if payload.get("id") is not None and backend_chat_id(payload):
            return self._notify_message(payload)
        return None

    async def _notify_message(self, message: dict) -> None:
        chat_id = backend_chat_id(message)
        actor = sender_id(message)
        text = (
            f"💬 Новое сообщение в чате {chat_id} от пользователя {actor}: "
            f"{message_content(message) or ''}"
        ).rstrip()
        await self._notify_participants(chat_id, actor, text)

    async def _notify_read(self, event: dict) -> None:
        chat_id = backend_chat_id(event)
        if not chat_id:
            self.logger.warning(f"[Notifier] Read event without chatId: {event}")
            return
        actor = first_field(event, ("userId", "user_id"))
        message_id = first_field(event, ("messageId", "message_id"))
        text = f"Пользователь {actor} прочитал сообщение {message_id} в чате {chat_id}."
        await self._notify_participants(chat_id, actor, text)

    async def _participants(self, chat_id: str) -> Optional[list]:
        cached = self.cache.get(chat_id)
        if cached is not None:
            return cached
        try:
            participants = await self.load_participants(chat_id)
        except Exception as e:
            self.logger.error(f"[Notifier] Failed to load chat participants chat={chat_id}: {e}")
            return None
        self.cache.set(chat_id, participants)
        return participants

    async def _notify_participants(self, chat_id: str, actor: Optional[str], text: str) -> None:
        participants = await self._participants(chat_id)
        if not participants:
            return

        for participant in participants:
            user_id = participant.get("id") if isinstance(participant, dict) else participant
            if user_id is None or str(user_id) == str(actor):
                continue
            telegram_chat = self.resolve_telegram_chat(str(user_id))
            if not telegram_chat:
                continue
            if self.is_relayed is not None and self.is_relayed(telegram_chat, chat_id):
                continue
            try:
                await self.send_message(telegram_chat, text)
            except Exception as e:
                self.logger.error(
                    f"[Notifier] Failed to notify Telegram chat {telegram_chat} for backend user {user_id}: {e}"
                )
