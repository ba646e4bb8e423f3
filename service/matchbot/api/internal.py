"""
Internal endpoints called by the backend (not exposed to Telegram users).

POST /internal/telegram/notify-new-message pushes a "new message" notice to
a Telegram chat. Requests must carry ``X-Internal-Token``.
"""

from typing import Optional, Union

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address

from matchbot.config import get_settings
from matchbot.telegram_bot import telegram_api
from matchbot.telegram_bot.logging_config import bot_logger as logger

router = APIRouter(prefix="/internal", tags=["internal"])

# Rate limiter for the notifier (backend fan-out can burst)
limiter = Limiter(key_func=get_remote_address)


class NewMessageNotification(BaseModel):
    telegramChatId: Optional[Union[int, str]] = None
    chatId: Optional[Union[int, str]] = None
    senderDisplayName: Optional[str] = None
    textPreview: Optional[str] = None


def validate_notification(payload: NewMessageNotification) -> Optional[str]:
    if payload.telegramChatId is None:
        return "telegramChatId is required"
    if payload.chatId is None:
        return "chatId is required"
    if not (payload.senderDisplayName or "").strip():
        return "senderDisplayName is required"
    if not (payload.textPreview or "").strip():
        return "textPreview is required"
    return None


def format_new_message_notification(payload: NewMessageNotification) -> str:
    return (
        f"💬 Новое сообщение от {payload.senderDisplayName.strip()}:\n"
        f"{payload.textPreview.strip()}"
    )


def verify_internal_token(x_internal_token: Optional[str]) -> None:
    expected = get_settings().internal_api_token
    if not expected or x_internal_token != expected:
        logger.warning("Unauthorized internal request")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/telegram/notify-new-message")
@limiter.limit("120/minute")
async def notify_new_message(
    request: Request,  # Required for rate limiter
    payload: NewMessageNotification,
    x_internal_token: Optional[str] = Header(None),
):
    """Send a new-message notice to the user's Telegram chat."""
    verify_internal_token(x_internal_token)

    error = validate_notification(payload)
    if error:
        return JSONResponse(status_code=400, content={"error": error})

    try:
        await telegram_api.send_message(payload.telegramChatId, format_new_message_notification(payload))
    except Exception as e:
        logger.error(f"Failed to send new message notification to {payload.telegramChatId}: {e}", exc_info=True)

    return {"status": "ok"}
