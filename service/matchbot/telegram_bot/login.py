"""
Materialize hub login events into bot session state.

LoginHandler is the ``on_user_logged_in`` callback of LoginEventCorrelator:
it stores the backend JWT, resolves the backend user id when the event does
not carry one, and sends the main menu to the Telegram chat.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from matchbot.realtime import LoginEvent
from .api_client import ApiError, BackendAPIClient
from .context import SessionStore
from .logging_config import bot_logger as logger, token_prefix

LOGIN_SUCCESS_MESSAGE = "Вы успешно вошли! Вот ваше меню:"

MAIN_MENU_BUTTONS = [
    [{"text": "Создать запрос", "callback_data": "menu:create"}],
    [{"text": "Мои запросы", "callback_data": "menu:requests"}],
    [{"text": "Мои чаты", "callback_data": "menu:chats"}],
    [{"text": "Выйти", "callback_data": "menu:logout"}],
]

SendMenu = Callable[[Any, str, list[list[dict]]], Awaitable[Any]]


class LoginHandler:
    def __init__(self, sessions: SessionStore, api_client: BackendAPIClient, send_menu: SendMenu):
        self.sessions = sessions
        self.api_client = api_client
        self.send_menu = send_menu

    async def __call__(self, event: LoginEvent) -> None:
        await self.handle(event)

    async def handle(self, event: LoginEvent) -> None:
        telegram_user_id = event.actor_key
        logger.info(
            f"login.handle telegram_user_id={telegram_user_id} chat_id={event.chat_id} "
            f"user_id={event.external_user_id} token={token_prefix(event.credential)}"
        )

        session = self.sessions.get(telegram_user_id)
        email = event.display_email or session.get("last_email")
        user_id = event.external_user_id

        if not user_id:
            try:
                profile = await self.api_client.get_me(event.credential)
                if isinstance(profile, dict) and profile.get("id") is not None:
                    user_id = str(profile["id"])
            except ApiError as e:
                logger.error(f"Failed to resolve user_id after login event for {telegram_user_id}: {e.message}")

        self.sessions.save_user_jwt(
            telegram_user_id,
            event.credential,
            user_id=user_id,
            email=email,
            chat_id=event.chat_id,
        )
        self.sessions.reset_state(session)
        self.sessions.login_state.clear_pending_magic_link(telegram_user_id)

        logger.info(f"menu.sending chat_id={event.chat_id}")
        await self.send_menu(event.chat_id, LOGIN_SUCCESS_MESSAGE, MAIN_MENU_BUTTONS)
        logger.info(f"menu.sent chat_id={event.chat_id}")
