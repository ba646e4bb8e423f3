"""
Telegram message and command handlers.

FLOW:
=====
1. /start: logged-in users get the main menu; others are asked for an email.
2. Email input: POST magic-link request, then subscribe to the user's login
   topic. The menu arrives later, from the login event (see login.py).
3. Menu "Мои чаты" lists backend chats; opening one shows recent messages
   and puts the Telegram chat in chat mode, where text goes to the backend
   chat and counterpart messages are relayed live (ChatLiveRelay).
4. Menu "Создать запрос" / "Мои запросы" and recommendation feedback live
   in matching_handlers.py.
5. Backend auth errors (401/403) clear the session; the user logs in again.
"""

import re
from typing import Any, Dict

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from .api_client import ApiError
from .common import (
    LOGIN_REQUIRED_MESSAGE,
    get_runtime,
    handle_api_error,
    logged_in_session,
    logout,
    main_menu_markup,
    reply,
    telegram_user_id_of,
)
from .matching_handlers import create_request_from_text, handle_matching_callback, submit_feedback_comment
from .logging_config import bot_logger as logger

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAGIC_LINK_SENT_MESSAGE = (
    "Мы отправили вам письмо со ссылкой для входа.\n"
    "Проверьте вашу почту и нажмите на ссылку, чтобы войти."
)
CHAT_MODE_MESSAGE = "Вы в режиме чата. Напишите сообщение или нажмите кнопку для выхода."
CHAT_EXIT_MESSAGE = "Вы вышли из режима чата. Вернитесь к рекомендациям или в меню."


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


async def handle_start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start: show the menu or start the magic link login."""
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    if not telegram_user_id:
        return

    session = runtime.sessions.get(telegram_user_id)
    user = runtime.sessions.restore_login(telegram_user_id)
    if user is not None:
        name = user.email or update.effective_user.first_name or "друг"
        await reply(update, f"Добро пожаловать, {name}!", main_menu_markup())
        return

    session["state"] = "awaiting_email"
    session["temp"] = {}
    runtime.sessions.persist()
    hint = f"\n(Последний использованный email: {session['last_email']})" if session.get("last_email") else ""
    await reply(update, f"Введите ваш email для входа.{hint}")


async def handle_logout_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /logout."""
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    if not telegram_user_id:
        return
    logout(update, context, runtime.sessions.get(telegram_user_id))
    await reply(update, "Вы вышли. Нажмите /start, чтобы войти снова.")


async def handle_cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel: abort request creation or a pending feedback comment."""
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    if not telegram_user_id:
        return

    session = runtime.sessions.get(telegram_user_id)
    state = session.get("state") or ""
    if state.startswith("create:"):
        runtime.sessions.reset_state(session)
        await reply(update, "Создание запроса отменено.", main_menu_markup())
    elif state == "feedback:comment":
        runtime.sessions.reset_state(session)
        await reply(update, "Отправка отзыва отменена.", main_menu_markup())
    else:
        await reply(update, "Нечего отменять.")


async def request_magic_link(update: Update, context: ContextTypes.DEFAULT_TYPE, session: Dict[str, Any], email: str) -> None:
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    chat_id = update.effective_chat.id
    logger.info(f"magicLink.request chat_id={chat_id} telegram_user_id={telegram_user_id}")

    try:
        await runtime.api_client.request_magic_link(
            email,
            telegram_user_id,
            telegram_chat_id=str(chat_id),
            name=update.effective_user.first_name or update.effective_user.username,
        )
    except ApiError as e:
        if e.status == 400 and "invalid telegram_chat_id" in (e.message or "").lower():
            await reply(update, "Произошла ошибка при связывании с Telegram. Попробуйте ещё раз или обратитесь в поддержку.")
        elif e.status == 400:
            await reply(update, "Введите корректный email.")
        else:
            await reply(update, "Сервер временно недоступен, попробуйте позже.")
        return

    session["last_email"] = email
    runtime.sessions.reset_state(session)
    runtime.login_state.set_pending_magic_link(telegram_user_id, email)
    runtime.login_correlator.ensure_subscription(telegram_user_id)
    await reply(update, MAGIC_LINK_SENT_MESSAGE)


async def handle_text_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Route plain text by session state."""
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    if not telegram_user_id:
        await reply(update, "Не удалось определить пользователя Telegram. Попробуйте ещё раз.")
        return

    text = (update.message.text or "").strip()
    session = runtime.sessions.get(telegram_user_id)
    state = session.get("state")

    if state == "awaiting_email":
        if not is_valid_email(text):
            await reply(update, "Введите корректный email.")
            return
        await request_magic_link(update, context, session, text)
        return

    if state == "chatting" and session.get("active_chat_id"):
        await send_message_to_chat(update, context, text)
        return

    if state == "create:rawText" or state == "feedback:comment":
        authed = logged_in_session(update, context)
        if authed is None:
            runtime.sessions.reset_state(session)
            await reply(update, LOGIN_REQUIRED_MESSAGE)
            return
        if state == "create:rawText":
            await create_request_from_text(update, context, authed, text)
        else:
            await submit_feedback_comment(update, context, authed, text)
        return

    await reply(update, "Нажмите /start, чтобы открыть меню.")


async def load_chats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    try:
        chats = await runtime.api_client.list_chats(session["token"])
    except ApiError as e:
        await handle_api_error(update, context, session, e, "Не удалось загрузить чаты.")
        return

    if not chats:
        await reply(update, "Чатов пока нет.")
        return

    keyboard = [
        [InlineKeyboardButton(c.get("title") or c.get("name") or f"Чат {c.get('id')}", callback_data=f"chat:open:{c.get('id')}")]
        for c in chats
    ]
    await reply(update, "Ваши чаты:", InlineKeyboardMarkup(keyboard))


def participant_names(participants: list) -> Dict[str, str]:
    """Map participant id -> display name (display name, name, full name or email)."""
    names = {}
    for participant in participants or []:
        if not isinstance(participant, dict):
            continue
        pid = participant.get("id") or participant.get("userId") or participant.get("participantId")
        name = (
            participant.get("displayName")
            or participant.get("name")
            or participant.get("fullName")
            or participant.get("email")
        )
        if pid is not None and name:
            names[str(pid)] = name
    return names


async def show_chat(update: Update, context: ContextTypes.DEFAULT_TYPE, chat_id: str) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    try:
        messages = await runtime.api_client.list_messages(chat_id, session["token"])
    except ApiError as e:
        if e.status == 404:
            await reply(update, "Чат не найден.")
            return
        await handle_api_error(update, context, session, e, "Не удалось открыть чат.")
        return

    if messages:
        try:
            names = participant_names(await runtime.api_client.list_participants(chat_id, session["token"]))
        except ApiError as e:
            logger.warning(f"Failed to load participants for chat {chat_id}: {e.message}")
            names = {}

        lines = []
        for m in messages[-50:]:
            sender = m.get("senderId") or (m.get("sender") or {}).get("id")
            label = names.get(str(sender)) if sender is not None else None
            label = label or (f"User {sender}" if sender is not None else "User")
            lines.append(f"{label} — {m.get('content') or m.get('text') or ''}".strip())
        await reply(update, "\n".join(lines))
    else:
        await reply(update, "Сообщений пока нет. Напишите что-нибудь!")

    runtime.sessions.enter_chat(session, chat_id)
    runtime.chat_relay.enter_chat_mode(update.effective_chat.id, session.get("backend_user_id"), chat_id)
    await reply(
        update,
        CHAT_MODE_MESSAGE,
        InlineKeyboardMarkup([
            [InlineKeyboardButton("⬅️ Назад к чатам", callback_data="menu:chats")],
            [InlineKeyboardButton("⬅️ В меню", callback_data="menu:main")],
        ]),
    )


async def send_message_to_chat(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    try:
        await runtime.api_client.send_chat_message(session["active_chat_id"], text, session["token"])
    except ApiError as e:
        await handle_api_error(update, context, session, e, "Не удалось отправить сообщение.")


def leave_chat(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime = get_runtime(context)
    telegram_user_id = telegram_user_id_of(update)
    if not telegram_user_id:
        return
    runtime.sessions.leave_chat(runtime.sessions.get(telegram_user_id))
    runtime.chat_relay.leave_chat_mode(update.effective_chat.id)


async def handle_callback_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle inline keyboard button presses."""
    query = update.callback_query
    await query.answer()
    data = query.data or ""

    if data == "menu:chats":
        leave_chat(update, context)
        await load_chats(update, context)
    elif data == "menu:main":
        leave_chat(update, context)
        await reply(update, "Главное меню:", main_menu_markup())
    elif data == "menu:logout":
        await handle_logout_command(update, context)
    elif data == "chat:exit":
        leave_chat(update, context)
        await reply(update, CHAT_EXIT_MESSAGE, main_menu_markup())
    elif data.startswith("chat:open:"):
        await show_chat(update, context, data[len("chat:open:"):])
    elif not await handle_matching_callback(update, context, data):
        logger.warning(f"Unknown callback data: {data}")


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log errors raised by handlers."""
    logger.error(f"Update {update} caused error: {context.error}", exc_info=context.error)
