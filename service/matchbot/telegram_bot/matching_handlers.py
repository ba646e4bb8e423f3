"""
Matching flows: request creation, "my requests", recommendations and
feedback on them, and starting a chat with a request's author.

Callback data formats (``null`` stands for a missing id):
    req:matches:{request_id}
    feedback:like:{match_id}:{request_id}
    feedback:dislike:{match_id}:{request_id}
    feedback:reason:{match_id}:{request_id}:{reason_code}
    feedback:reason_other:{match_id}:{request_id}
    contact_author:{request_id}:{owner_id}
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from .api_client import ApiError
from .common import (
    LOGIN_REQUIRED_MESSAGE,
    back_to_menu_markup,
    get_runtime,
    handle_api_error,
    logged_in_session,
    logout,
    main_menu_markup,
    reply,
)
from .logging_config import bot_logger as logger

NEGATIVE_REASON_OPTIONS = [
    ("not_relevant", "❌ Не по смыслу"),
    ("too_far", "📍 Слишком далеко"),
    ("old_request", "⏳ Старый запрос"),
    ("spam", "🚫 Похоже на спам"),
    ("language_mismatch", "🌐 Язык не подходит"),
]

MATCHES_SHOWN = 5
MATCHES_FETCHED = 10

CREATE_REQUEST_PROMPT = (
    "Опишите ваш запрос одним-двумя предложениями. Например:\n"
    '"Ищу наставника по backend на Symfony в Берлине"'
)
FEEDBACK_LOGIN_MESSAGE = "Чтобы оставить отзыв, сначала войдите через ссылку из письма."
FEEDBACK_FAILED_MESSAGE = "Не удалось сохранить отзыв, попробуй позже 🙈"
DISLIKE_QUESTION = "🧩 Почему рекомендация не подошла?\n(выбери один вариант)"
AUTHOR_INTRO_MESSAGE = "Привет! Я нашёл твою заявку в матчинге и хотел(а) бы обсудить её 🙂"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _format_similarity(similarity: Any) -> str:
    if similarity is None:
        return "—"
    try:
        return f"{float(similarity) * 100:.1f}%"
    except (TypeError, ValueError):
        return "—"


def _format_created_at(created_at: Any) -> str:
    if not created_at:
        return "—"
    try:
        return datetime.fromisoformat(str(created_at)).strftime("%d.%m.%Y, %H:%M:%S")
    except ValueError:
        return str(created_at)


def format_match_message(match: Dict[str, Any]) -> str:
    return "\n".join([
        "🔎 Рекомендация:",
        f"• Тип: {match.get('type') or '—'}",
        f"• Город/страна: {match.get('city') or '—'}, {match.get('country') or '—'}",
        f"• Статус: {match.get('status') or '—'}",
        f"• Похожесть: {_format_similarity(match.get('similarity'))}",
        f"• Создано: {_format_created_at(match.get('createdAt'))}",
    ])


def format_request_summary(request: Dict[str, Any]) -> str:
    lines = [
        f"• {request.get('title') or request.get('name') or 'Запрос'}",
        f"Описание: {request['description']}" if request.get("description") else None,
        f"Город: {request['city']}" if request.get("city") else None,
    ]
    return "\n".join(line for line in lines if line)


# ---------------------------------------------------------------------------
# Ids and callback data
# ---------------------------------------------------------------------------

def extract_owner_id(match: Dict[str, Any]) -> Optional[Any]:
    request = match.get("request") or {}
    return (
        match.get("ownerId")
        or match.get("requestOwnerId")
        or (match.get("owner") or {}).get("id")
        or request.get("ownerId")
        or (request.get("owner") or {}).get("id")
    )


def parse_nullable_id(value: Optional[str]) -> Optional[str]:
    return None if value in (None, "", "null") else value


def to_int_or_none(value: Any) -> Optional[int]:
    if value in (None, "", "null"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _id_part(value: Any) -> str:
    return "null" if value is None or value == "" else str(value)


def feedback_callback(kind: str, match: Dict[str, Any], target_request_id: Any) -> str:
    match_id = match.get("id", match.get("matchId"))
    request_id = target_request_id if target_request_id is not None else match.get("targetRequestId")
    return f"feedback:{kind}:{_id_part(match_id)}:{_id_part(request_id)}"


def contact_author_callback(target_request_id: Any, owner_id: Any) -> str:
    request_id = to_int_or_none(target_request_id)
    request_part = str(request_id) if request_id and request_id > 0 else "null"
    return f"contact_author:{request_part}:{_id_part(owner_id)}"


def reason_keyboard(match_id: Any, target_request_id: Any) -> InlineKeyboardMarkup:
    suffix = f"{_id_part(match_id)}:{_id_part(target_request_id)}"
    rows = [
        [InlineKeyboardButton(label, callback_data=f"feedback:reason:{suffix}:{code}")]
        for code, label in NEGATIVE_REASON_OPTIONS
    ]
    rows.append([InlineKeyboardButton("📝 Другое", callback_data=f"feedback:reason_other:{suffix}")])
    return InlineKeyboardMarkup(rows)


def build_feedback_payload(
    session: Dict[str, Any],
    match_id: Any,
    target_request_id: Any,
    relevance_score: int,
    reason_code: Optional[str] = None,
    comment: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "userId": to_int_or_none(session.get("backend_user_id")),
        "matchId": to_int_or_none(match_id),
        "targetRequestId": to_int_or_none(target_request_id),
        "relevanceScore": relevance_score,
        "reasonCode": reason_code,
        "comment": comment,
        "mainIssue": None,
    }


async def _trim_keyboard(update: Update) -> None:
    query = update.callback_query
    if query is None:
        return
    try:
        await query.edit_message_reply_markup(reply_markup=back_to_menu_markup())
    except TelegramError as e:
        logger.warning(f"Failed to trim feedback keyboard: {e}")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

async def start_create_request(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    session["state"] = "create:rawText"
    session["temp"] = {"create_request": {}}
    runtime.sessions.persist()
    await reply(update, CREATE_REQUEST_PROMPT)


async def create_request_from_text(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    session: Dict[str, Any],
    text: str,
) -> None:
    runtime = get_runtime(context)
    if not text.strip():
        await reply(update, "Пожалуйста, опишите ваш запрос хотя бы одним словом.")
        return

    try:
        created = await runtime.api_client.create_request(text.strip(), session.get("token"))
    except ApiError as e:
        logger.error(f"Create request error: status={e.status} message={e.message}")
        if e.is_auth_error:
            logout(update, context, session)
            await reply(update, "Ваша сессия истекла. Пожалуйста, войдите заново.")
            return
        runtime.sessions.reset_state(session)
        if e.status == 400:
            await reply(
                update,
                f"Не удалось создать запрос: {e.message}\nПопробуйте ещё раз позже или измените текст запроса.",
                main_menu_markup(),
            )
        else:
            await reply(update, "Произошла техническая ошибка при создании запроса. Попробуйте ещё раз позже.", main_menu_markup())
        return

    created = created or {}
    runtime.sessions.reset_state(session)
    await reply(
        update,
        "\n".join([
            "Готово! Ваш запрос создан 🎉",
            f"ID: {created.get('id')}",
            f"Город: {created.get('city') or 'не указан'}",
            f"Статус: {created.get('status')}",
            "",
            "Теперь вы можете вернуться к рекомендациям или чатам.",
        ]),
        main_menu_markup(),
    )


async def load_requests(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    try:
        requests = await runtime.api_client.list_my_requests(session["token"])
    except ApiError as e:
        await handle_api_error(update, context, session, e, "Не удалось получить список запросов.")
        return

    if not requests:
        await reply(update, "У вас пока нет запросов.")
        return

    await reply(update, "Ваши запросы:")
    for request in requests:
        keyboard = InlineKeyboardMarkup([
            [InlineKeyboardButton("Показать рекомендации", callback_data=f"req:matches:{request.get('id')}")]
        ])
        await reply(update, format_request_summary(request), keyboard)


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

async def send_recommendation(update: Update, session: Dict[str, Any], match: Dict[str, Any], request_id: Any) -> None:
    owner_id = extract_owner_id(match)
    own_id = session.get("backend_user_id")
    is_own_request = owner_id is not None and own_id is not None and str(owner_id) == str(own_id)

    rows = [[
        InlineKeyboardButton("👍 Подходит", callback_data=feedback_callback("like", match, request_id)),
        InlineKeyboardButton("👎 Не подходит", callback_data=feedback_callback("dislike", match, request_id)),
    ]]
    if owner_id and not is_own_request:
        rows.append([
            InlineKeyboardButton("✉️ Связаться с автором", callback_data=contact_author_callback(request_id, owner_id))
        ])
    rows.append([InlineKeyboardButton("⬅️ В меню", callback_data="menu:main")])

    await reply(update, format_match_message(match), InlineKeyboardMarkup(rows))


async def load_matches(update: Update, context: ContextTypes.DEFAULT_TYPE, request_id: str) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    try:
        matches = await runtime.api_client.list_matches(request_id, session["token"], limit=MATCHES_FETCHED)
    except ApiError as e:
        logger.error(f"Failed to load matches request_id={request_id} status={e.status} message={e.message}")
        if e.status == 404:
            await reply(update, "Запрос не найден или более не существует.")
            return
        await handle_api_error(update, context, session, e, "Не удалось загрузить рекомендации. Попробуйте позже.")
        return

    if not matches:
        await reply(update, "Для этого запроса пока нет подходящих рекомендаций.")
        return

    for match in matches[:MATCHES_SHOWN]:
        await send_recommendation(update, session, {**match, "targetRequestId": request_id}, request_id)

    if len(matches) > MATCHES_SHOWN:
        await reply(update, "Показаны первые рекомендации. Скоро добавим просмотр следующей партии.")


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

async def _submit_feedback(update: Update, context: ContextTypes.DEFAULT_TYPE, session: Dict[str, Any], payload: Dict[str, Any], thanks: str) -> None:
    runtime = get_runtime(context)
    try:
        await runtime.api_client.submit_match_feedback(payload, session["token"])
    except ApiError as e:
        logger.error(f"Failed to send feedback match_id={payload['matchId']} status={e.status} message={e.message}")
        await reply(update, FEEDBACK_FAILED_MESSAGE)
        return
    await reply(update, thanks)


async def submit_like(update: Update, context: ContextTypes.DEFAULT_TYPE, match_id: Optional[str], request_id: Optional[str]) -> None:
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return
    if not session.get("backend_user_id"):
        await reply(update, FEEDBACK_LOGIN_MESSAGE)
        return

    payload = build_feedback_payload(session, match_id, request_id, relevance_score=2)
    await _submit_feedback(update, context, session, payload, "Спасибо за обратную связь! 🙌")


async def ask_dislike_reason(update: Update, context: ContextTypes.DEFAULT_TYPE, match_id: Optional[str], request_id: Optional[str]) -> None:
    if logged_in_session(update, context) is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    keyboard = reason_keyboard(match_id, request_id)
    query = update.callback_query
    base_text = (query.message.text or "") if query is not None and query.message is not None else ""
    try:
        await query.edit_message_text(f"{base_text}\n\n{DISLIKE_QUESTION}" if base_text else DISLIKE_QUESTION, reply_markup=keyboard)
    except (AttributeError, TelegramError) as e:
        logger.warning(f"Failed to edit message for feedback reasons: {e}")
        await reply(update, DISLIKE_QUESTION, keyboard)


async def submit_reason(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    match_id: Optional[str],
    request_id: Optional[str],
    reason_code: str,
) -> None:
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return
    if not session.get("backend_user_id"):
        await reply(update, FEEDBACK_LOGIN_MESSAGE)
        return
    if reason_code not in {code for code, _ in NEGATIVE_REASON_OPTIONS}:
        await reply(update, "Неизвестная причина. Попробуйте снова.")
        return

    payload = build_feedback_payload(session, match_id, request_id, relevance_score=-1, reason_code=reason_code)
    await _submit_feedback(update, context, session, payload, "Спасибо, мы учтём это и улучшим рекомендации 🙌")
    await _trim_keyboard(update)


async def ask_feedback_comment(update: Update, context: ContextTypes.DEFAULT_TYPE, match_id: Optional[str], request_id: Optional[str]) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return

    session["state"] = "feedback:comment"
    session["temp"] = {"feedback": {"match_id": match_id, "request_id": request_id}}
    runtime.sessions.persist()
    await reply(update, "Напиши коротко, что именно не так с рекомендацией.")
    await _trim_keyboard(update)


async def submit_feedback_comment(update: Update, context: ContextTypes.DEFAULT_TYPE, session: Dict[str, Any], text: str) -> None:
    runtime = get_runtime(context)
    pending = (session.get("temp") or {}).get("feedback")
    if not pending:
        runtime.sessions.reset_state(session)
        return
    if not session.get("backend_user_id"):
        runtime.sessions.reset_state(session)
        await reply(update, FEEDBACK_LOGIN_MESSAGE)
        return

    payload = build_feedback_payload(
        session,
        pending.get("match_id"),
        pending.get("request_id"),
        relevance_score=-1,
        comment=text,
    )
    await _submit_feedback(update, context, session, payload, "Спасибо, это помогает нам сделать сервис лучше 🙌")
    runtime.sessions.reset_state(session)


# ---------------------------------------------------------------------------
# Contact author
# ---------------------------------------------------------------------------

async def contact_author(update: Update, context: ContextTypes.DEFAULT_TYPE, owner_id: Optional[int], request_id: Optional[int]) -> None:
    runtime = get_runtime(context)
    session = logged_in_session(update, context)
    if session is None:
        await reply(update, LOGIN_REQUIRED_MESSAGE)
        return
    if owner_id is None:
        await reply(update, "Не удалось определить автора заявки.")
        return
    if session.get("backend_user_id") and str(owner_id) == str(session["backend_user_id"]):
        await reply(update, "Это ваша собственная заявка.")
        return

    try:
        chat = await runtime.api_client.start_chat(owner_id, session["token"], origin_request_id=request_id)
    except ApiError as e:
        if e.status == 404:
            await reply(update, "Автор заявки не найден.")
            return
        await handle_api_error(update, context, session, e, "Не удалось создать чат, попробуйте позже.")
        return

    chat_id = (chat or {}).get("id")
    if not chat_id:
        await reply(update, "Не удалось создать чат, попробуйте позже.")
        return

    chat_key = str(chat_id)
    runtime.sessions.enter_chat(session, chat_key)
    runtime.chat_relay.enter_chat_mode(update.effective_chat.id, session.get("backend_user_id"), chat_key)

    introduced = session.setdefault("sent_intro_chat_ids", [])
    if chat_key not in introduced:
        try:
            await runtime.api_client.send_chat_message(chat_key, AUTHOR_INTRO_MESSAGE, session["token"])
            introduced.append(chat_key)
            runtime.sessions.persist()
        except ApiError as e:
            logger.error(f"Failed to send intro message to chat {chat_key}: {e.message}")

    await reply(
        update,
        "Чат с автором создан, напиши своё первое сообщение.",
        InlineKeyboardMarkup([
            [InlineKeyboardButton("⬅️ Назад к рекомендациям", callback_data="chat:exit")],
            [InlineKeyboardButton("⬅️ В меню", callback_data="menu:main")],
        ]),
    )


async def handle_matching_callback(update: Update, context: ContextTypes.DEFAULT_TYPE, data: str) -> bool:
    """Route matching callbacks; False when ``data`` is not one of ours."""
    parts = data.split(":")

    if data == "menu:create":
        await start_create_request(update, context)
    elif data == "menu:requests":
        await load_requests(update, context)
    elif parts[:2] == ["req", "matches"] and len(parts) == 3:
        await load_matches(update, context, parts[2])
    elif parts[:2] == ["feedback", "like"] and len(parts) == 4:
        await submit_like(update, context, parse_nullable_id(parts[2]), parse_nullable_id(parts[3]))
    elif parts[:2] == ["feedback", "dislike"] and len(parts) == 4:
        await ask_dislike_reason(update, context, parse_nullable_id(parts[2]), parse_nullable_id(parts[3]))
    elif parts[:2] == ["feedback", "reason"] and len(parts) == 5:
        await submit_reason(update, context, parse_nullable_id(parts[2]), parse_nullable_id(parts[3]), parts[4])
    elif parts[:2] == ["feedback", "reason_other"] and len(parts) == 4:
        await ask_feedback_comment(update, context, parse_nullable_id(parts[2]), parse_nullable_id(parts[3]))
    elif parts[0] == "contact_author" and len(parts) == 3:
        await contact_author(update, context, to_int_or_none(parts[2]), to_int_or_none(parts[1]))
    else:
        return False
    return True
