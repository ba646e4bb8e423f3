"""
Login state per Telegram user.

Created once at startup and passed to collaborators (no module globals).
``logged_in`` holds the backend credential of users who completed the magic
link flow; ``pending_magic_link`` holds users waiting for the link click.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class LoggedInUser:
    jwt: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None


class LoginStateRegistry:
    def __init__(self):
        self.logged_in: dict[str, LoggedInUser] = {}
        self.pending_magic_link: dict[str, str] = {}

    def set_pending_magic_link(self, telegram_user_id: Any, email: str) -> None:
        if not telegram_user_id:
            return
        self.pending_magic_link[str(telegram_user_id)] = email

    def clear_pending_magic_link(self, telegram_user_id: Any) -> None:
        if not telegram_user_id:
            return
        self.pending_magic_link.pop(str(telegram_user_id), None)

    def has_pending_magic_link(self, telegram_user_id: Any) -> bool:
        if not telegram_user_id:
            return False
        return str(telegram_user_id) in self.pending_magic_link

    def set_logged_in(self, telegram_user_id: Any, user: LoggedInUser) -> None:
        if not telegram_user_id:
            return
        self.logged_in[str(telegram_user_id)] = user
        self.clear_pending_magic_link(telegram_user_id)

    def get_logged_in(self, telegram_user_id: Any) -> Optional[LoggedInUser]:
        if not telegram_user_id:
            return None
        return self.logged_in.get(str(telegram_user_id))

    def reset(self, telegram_user_id: Any) -> None:
        if not telegram_user_id:
            return
        self.logged_in.pop(str(telegram_user_id), None)
        self.clear_pending_magic_link(telegram_user_id)
