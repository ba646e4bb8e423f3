"""
Realtime layer: Mercure SSE subscriptions and their bot-side consumers.

- EventBusConnection: one hub stream, many topics, generation-fenced restarts
- LoginEventCorrelator: /tg/login/{telegram_user_id} -> on_user_logged_in
- ChatLiveRelay: /chats/{chat_id} -> Telegram messages
- ParticipantNotifier: default topics (/chats/*) -> notices to chat participants
"""

from .connection import ConnectionState, EventBusConnection, SubscriptionRegistry, build_hub_url
from .login_subscriber import LoginEvent, LoginEventCorrelator
from .chat_relay import ChatLiveRelay
from .participant_notifier import ParticipantNotifier

__all__ = [
    "ConnectionState",
    "EventBusConnection",
    "SubscriptionRegistry",
    "build_hub_url",
    "LoginEvent",
    "LoginEventCorrelator",
    "ChatLiveRelay",
    "ParticipantNotifier",
]
