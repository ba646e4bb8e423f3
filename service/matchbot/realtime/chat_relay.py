"""
Live relay of backend chat messages into Telegram chats.

A Telegram chat in chat mode is bound to one backend chat. Messages published
on ``/chats/{id}`` are forwarded to every active Telegram chat bound to that
backend chat, except messages sent by the Telegram chat's own backend user.

Leaving chat mode only stops delivery; the topic subscription is kept so that
toggling in and out of a chat does not restart the hub stream. Subscriptions
are released by ``clear_chat`` (logout) or ``stop``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from matchbot.telegram_bot.logging_config import realtime_logger
from .connection import EventBusConnection
from .payloads import backend_chat_id, chat_topic, message_content, sender_id

COUNTERPART_PREFIX = "💬 Собеседник: "

SendMessage = Callable[[Any, str], Awaitable[Any]]


@dataclass
class ChatModeState:
    self_id: Optional[str]
    external_chat_id: str
    active: bool = True


class ChatLiveRelay:
    def __init__(
        self,
        connection: EventBusConnection,
        send_message: SendMessage,
        logger: logging.Logger = realtime_logger,
    ):
        self.connection = connection
        self.send_message = send_message
        self.logger = logger
        self._chats: dict[str, ChatModeState] = {}
        self._subscriptions: dict[str, Callable[[], None]] = {}

    def enter_chat_mode(self, telegram_chat_id: Any, actor_id: Any, external_chat_id: Any) -> None:
        if telegram_chat_id is None or external_chat_id is None or external_chat_id == "":
            return
        tg_key = str(telegram_chat_id)
        chat_key = str(external_chat_id)

        previous = self._chats.get(tg_key)
        self._chats[tg_key] = ChatModeState(
            self_id=str(actor_id) if actor_id is not None else None,
            external_chat_id=chat_key,
        )
        self.logger.info(f"[ChatRelay] Enter chat mode tg_chat={tg_key} chat={chat_key} self={actor_id}")

        if previous is not None and previous.external_chat_id != chat_key:
            self._release_if_unused(previous.external_chat_id)
        self._ensure_subscription(chat_key)

    def leave_chat_mode(self, telegram_chat_id: Any) -> None:
        state = self._chats.get(str(telegram_chat_id))
        if state is None:
            return
        state.active = False
        self.logger.info(f"[ChatRelay] Leave chat mode tg_chat={telegram_chat_id} chat={state.external_chat_id}")

    def clear_chat(self, telegram_chat_id: Any) -> None:
        state = self._chats.pop(str(telegram_chat_id), None)
        if state is not None:
            self._release_if_unused(state.external_chat_id)

    def is_active(self, telegram_chat_id: Any) -> bool:
        state = self._chats.get(str(telegram_chat_id))
        return bool(state and state.active)

    def is_relaying(self, telegram_chat_id: Any, external_chat_id: Any) -> bool:
        """True when this Telegram chat is in chat mode on that backend chat."""
        state = self._chats.get(str(telegram_chat_id))
        return bool(state and state.active and state.external_chat_id == str(external_chat_id))

    @property
    def subscribed_chats(self) -> list[str]:
        return list(self._subscriptions)

    def stop(self) -> None:
        for unsubscribe in list(self._subscriptions.values()):
            unsubscribe()
        self._subscriptions.clear()
        self._chats.clear()
        self.connection.stop()

    def _ensure_subscription(self, chat_key: str) -> None:
        if chat_key in self._subscriptions:
            return

        def handler(payload: Any, topic: str):
            return self._handle_payload(chat_key, payload)

        self._subscriptions[chat_key] = self.connection.subscribe(chat_topic(chat_key), handler)

    def _release_if_unused(self, chat_key: str) -> None:
        if any(state.external_chat_id == chat_key for state in self._chats.values()):
            return
        unsubscribe = self._subscriptions.pop(chat_key, None)
        if unsubscribe is not None:
            unsubscribe()

    async def _handle_payload(self, chat_key: str, payload: Any) -> None:
        if not isinstance(payload, dict):
            return

        payload_chat_id = backend_chat_id(payload)
        if payload_chat_id is not None and payload_chat_id != chat_key:
            self.logger.debug(f"[ChatRelay] Payload for chat {payload_chat_id} on topic of chat {chat_key}, skipping")
            return

        content = message_content(payload)
        if content is None:
            return
        payload_sender = sender_id(payload)

        targets = [
            tg_key for tg_key, state in list(self._chats.items())
            if state.external_chat_id == chat_key and state.active
        ]
        for tg_key in targets:
            state = self._chats.get(tg_key)
            if state is None:
                continue
            if payload_sender is not None and payload_sender == state.self_id:
                # Self-echo
                continue
            try:
                await self.send_message(tg_key, f"{COUNTERPART_PREFIX}{content}")
            except Exception as e:
                self.logger.error(f"[ChatRelay] Failed to relay message to tg_chat={tg_key}: {e}")
