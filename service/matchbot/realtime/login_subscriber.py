"""
Login correlation over the Mercure hub.

When a user requests a magic link, the bot subscribes to ``/tg/login/{id}``
for that Telegram user. The backend publishes a login event there once the
link is clicked; a valid event is normalized into LoginEvent and handed to
the ``on_user_logged_in`` callback, which owns all session mutation.

Events are discarded when they name another Telegram user/chat or carry no
``jwt``. A valid event ends the correlation; duplicates delivered while a
correlation exists are passed through again (the hub is at-least-once and
the callback is idempotent).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from matchbot.telegram_bot.logging_config import realtime_logger, token_prefix
from .connection import EventBusConnection
from .payloads import backend_user_id, login_topic, telegram_chat_id, telegram_user_id

LOGIN_EVENT_TYPES = frozenset({"login_success", "user_logged_in"})


@dataclass(frozen=True)
class LoginEvent:
    actor_key: str
    chat_id: str
    credential: str
    display_email: Optional[str] = None
    external_user_id: Optional[str] = None
    event_type: Optional[str] = None


LoginCallback = Callable[[LoginEvent], Union[None, Awaitable[None]]]


def normalize_login_payload(actor_key: str, payload: Any, logger: logging.Logger = realtime_logger) -> Optional[LoginEvent]:
    """
    Validate a raw login payload against the subscription's actor key.

    Returns None when the event must be discarded.
    """
    if not isinstance(payload, dict):
        logger.info(f"[Mercure] Invalid login payload for actor {actor_key}, skipping")
        return None

    event_type = payload.get("type")
    if event_type is not None and event_type not in LOGIN_EVENT_TYPES:
        logger.debug(f"[Mercure] Ignoring event type={event_type} for actor {actor_key}")
        return None

    payload_user_id = telegram_user_id(payload)
    if payload_user_id is not None and payload_user_id != actor_key:
        logger.info(
            f"[Mercure] telegram_user_id mismatch; expected {actor_key} got {payload_user_id}, skipping"
        )
        return None

    payload_chat_id = telegram_chat_id(payload)
    if payload_chat_id is not None and payload_chat_id != actor_key:
        logger.info(f"[Mercure] chat_id mismatch; expected {actor_key} got {payload_chat_id}, skipping")
        return None

    credential = payload.get("jwt")
    if not credential:
        logger.warning(f"[Mercure] Login event without jwt for actor {actor_key}, skipping")
        return None

    email = payload.get("email")
    return LoginEvent(
        actor_key=actor_key,
        chat_id=payload_chat_id or actor_key,
        credential=str(credential),
        display_email=str(email) if email else None,
        external_user_id=backend_user_id(payload),
        event_type=event_type,
    )


class LoginEventCorrelator:
    """Tracks one login topic per Telegram user and reports valid logins."""

    def __init__(
        self,
        connection: EventBusConnection,
        on_user_logged_in: LoginCallback,
        logger: logging.Logger = realtime_logger,
    ):
        self.connection = connection
        self.on_user_logged_in = on_user_logged_in
        self.logger = logger
        self._subscriptions: dict[str, Callable[[], None]] = {}

    def is_subscribed(self, actor_key: Any) -> bool:
        return str(actor_key) in self._subscriptions

    @property
    def actor_keys(self) -> list[str]:
        return list(self._subscriptions)

    def ensure_subscription(self, actor_key: Any) -> None:
        if actor_key is None or actor_key == "":
            return
        key = str(actor_key)
        if key in self._subscriptions:
            self.logger.info(f"[Mercure] Already subscribed for actor {key}")
            return

        topic = login_topic(key)

        def handler(payload: Any, event_topic: str):
            return self._handle_payload(key, payload, event_topic)

        self._subscriptions[key] = self.connection.subscribe(topic, handler)
        self.logger.info(f"BOT SUBSCRIBED topic={topic}")

    def release(self, actor_key: Any) -> None:
        """Drop the correlation for one actor (login finished or abandoned)."""
        unsubscribe = self._subscriptions.pop(str(actor_key), None)
        if unsubscribe is not None:
            unsubscribe()

    def _handle_payload(self, actor_key: str, payload: Any, topic: str):
        event = normalize_login_payload(actor_key, payload, self.logger)
        if event is None:
            return None

        self.logger.info(
            f"[Mercure] BOT LOGIN EVENT actor={actor_key} topic={topic} type={event.event_type} "
            f"token={token_prefix(event.credential)}"
        )
        result = self.on_user_logged_in(event)
        self.release(actor_key)
        if inspect.isawaitable(result):
            return result
        return None

    def stop(self) -> None:
        for unsubscribe in list(self._subscriptions.values()):
            unsubscribe()
        self._subscriptions.clear()
        self.connection.stop()
