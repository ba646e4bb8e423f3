"""
Field normalization for hub payloads.

Payload producers on the backend have used several spellings for the same
field over time. Each logical field is resolved here, once, with a fixed
precedence order (first present, non-empty spelling wins).
"""

from typing import Any, Optional

LOGIN_TOPIC_PREFIX = "/tg/login/"
CHAT_TOPIC_PREFIX = "/chats/"

TELEGRAM_USER_ID_FIELDS = ("telegramUserId", "telegram_user_id", "telegram_userId")
TELEGRAM_CHAT_ID_FIELDS = ("chat_id", "chatId", "telegram_chat_id")
BACKEND_USER_ID_FIELDS = ("user_id", "userId")
BACKEND_CHAT_ID_FIELDS = ("chatId", "chat_id")
SENDER_ID_FIELDS = ("senderId", "sender_id")
CONTENT_FIELDS = ("content", "text")


def login_topic(actor_key: Any) -> str:
    return f"{LOGIN_TOPIC_PREFIX}{actor_key}"


def chat_topic(chat_id: Any) -> str:
    return f"{CHAT_TOPIC_PREFIX}{chat_id}"


def first_field(payload: Any, names: tuple[str, ...]) -> Optional[str]:
    """
    Return the first present value among ``names`` as a string.

    None and empty strings count as absent. Numeric ids are stringified so
    ``42`` and ``"42"`` compare equal.
    """
    if not isinstance(payload, dict):
        return None
    for name in names:
        value = payload.get(name)
        if value is None or value == "":
            continue
        return str(value)
    return None


def telegram_user_id(payload: Any) -> Optional[str]:
    return first_field(payload, TELEGRAM_USER_ID_FIELDS)


def telegram_chat_id(payload: Any) -> Optional[str]:
    return first_field(payload, TELEGRAM_CHAT_ID_FIELDS)


def backend_user_id(payload: Any) -> Optional[str]:
    return first_field(payload, BACKEND_USER_ID_FIELDS)


def backend_chat_id(payload: Any) -> Optional[str]:
    return first_field(payload, BACKEND_CHAT_ID_FIELDS)


def sender_id(payload: Any) -> Optional[str]:
    """Sender of a chat message; nested ``sender.id`` is the last resort."""
    value = first_field(payload, SENDER_ID_FIELDS)
    if value is None and isinstance(payload, dict):
        value = first_field(payload.get("sender"), ("id",))
    return value


def message_content(payload: Any) -> Optional[str]:
    value = first_field(payload, CONTENT_FIELDS)
    if value is None or not value.strip():
        return None
    return value


def candidate_topics(payload: Any) -> list[str]:
    """Topics a payload can be routed to when the record names none."""
    topics = []
    for key in (telegram_user_id(payload), telegram_chat_id(payload)):
        if key and login_topic(key) not in topics:
            topics.append(login_topic(key))
    chat_key = backend_chat_id(payload)
    if chat_key and chat_topic(chat_key) not in topics:
        topics.append(chat_topic(chat_key))
    return topics
