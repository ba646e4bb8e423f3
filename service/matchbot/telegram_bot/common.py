"""
Helpers shared by the Telegram handler modules.

Handlers reach the BotRuntime through ``context.bot_data["runtime"]``.
"""

from typing import Any, Dict, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from .api_client import ApiError
from .login import MAIN_MENU_BUTTONS
from .logging_config import bot_logger as logger

SESSION_EXPIRED_MESSAGE = "Ваша сессия истекла. Нажмите /start, чтобы войти снова."
LOGIN_REQUIRED_MESSAGE = "Чтобы продолжить, сначала авторизуйтесь через ссылку из письма."


def get_runtime(context: ContextTypes.DEFAULT_TYPE):
    return context.bot_data["runtime"]


def telegram_user_id_of(update: Update) -> Optional[str]:
    user = update.effective_user
    if user is None or user.id is None:
        logger.warning(f"telegramUserId.missing chat_id={update.effective_chat.id if update.effective_chat else None}")
        return None
    return str(user.id)


def main_menu_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(b["text"], callback_data=b["callback_data"]) for b in row]
        for row in MAIN_MENU_BUTTONS
    ])


def back_to_menu_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton("⬅️ В меню", callback_data="menu:main")]])


async def reply(update: Update, text: str, reply_markup=None) -> None:
    await update.effective_chat.send_message(text, reply_markup=reply_markup)


def logout(update: Update, context: ContextTypes.DEFAULT_TYPE, session: Dict[str, Any]) -> None:
    """Drop credentials and every realtime subscription of this user."""
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    runtime.sessions.clear_auth(session, telegram_user_id)
    runtime.sessions.reset_state(session)
    if update.effective_chat:
        runtime.chat_relay.clear_chat(update.effective_chat.id)
    runtime.login_correlator.release(telegram_user_id)


async def handle_api_error(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    session: Dict[str, Any],
    error: ApiError,
    fallback_message: str,
) -> None:
    if error.is_auth_error:
        logout(update, context, session)
        await reply(update, SESSION_EXPIRED_MESSAGE)
        return
    await reply(update, error.message or fallback_message)


def logged_in_session(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Optional[Dict[str, Any]]:
    """Session of a logged-in user (restored from disk if needed), else None."""
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    if not telegram_user_id:
        return None
    if runtime.sessions.restore_login(telegram_user_id) is None:
        return None
    return runtime.sessions.get(telegram_user_id)
