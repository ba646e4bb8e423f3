"""
Telegram Bot API client for sending messages.

Simple wrapper used outside the python-telegram-bot handlers (realtime
relay, login notifications, internal notifier endpoint).
"""

import httpx
from typing import Optional

from matchbot.config import get_settings


def _method_url(method: str) -> str:
    settings = get_settings()
    return f"https://api.telegram.org/bot{settings.bot_token}/{method}"


async def send_message(chat_id: int | str, text: str, parse_mode: Optional[str] = None) -> dict:
    """
    Send message to Telegram chat.

    Args:
        chat_id: Telegram chat ID
        text: Message text
        parse_mode: Optional parse mode (Markdown, HTML)

    Returns:
        Bot API response dict
    """
    payload = {
        "chat_id": chat_id,
        "text": text
    }

    if parse_mode:
        payload["parse_mode"] = parse_mode

    async with httpx.AsyncClient() as client:
        response = await client.post(_method_url("sendMessage"), json=payload)
        response.raise_for_status()
        return response.json()


async def send_message_with_buttons(
    chat_id: int | str,
    text: str,
    buttons: list[list[dict]],
    parse_mode: Optional[str] = None
) -> dict:
    """
    Send message with inline keyboard buttons.

    Args:
        chat_id: Telegram chat ID
        text: Message text
        buttons: 2D array of button dicts, each with 'text' and 'callback_data'
                 Example: [[{"text": "Мои чаты", "callback_data": "menu:chats"}]]
        parse_mode: Optional parse mode (Markdown, HTML)

    Returns:
        Response dict with message_id
    """
    payload = {
        "chat_id": chat_id,
        "text": text,
        "reply_markup": {
            "inline_keyboard": buttons
        }
    }

    if parse_mode:
        payload["parse_mode"] = parse_mode

    async with httpx.AsyncClient() as client:
        response = await client.post(_method_url("sendMessage"), json=payload)
        response.raise_for_status()
        return response.json()
