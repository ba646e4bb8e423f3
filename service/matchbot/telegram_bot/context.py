"""
Session storage for Telegram users.

One plain dict per telegram_user_id, kept in memory and mirrored to a JSON
file when a path is configured (the bot restarts without logging everyone
out). Login state lives in LoginStateRegistry; this store keeps it in sync.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from .login_state import LoggedInUser, LoginStateRegistry
from .logging_config import bot_logger as logger, token_prefix

DEFAULT_SESSION: Dict[str, Any] = {
    "state": None,
    "temp": {},
    "last_email": None,
}


class SessionStore:
    def __init__(self, login_state: LoginStateRegistry, file_path: str | Path | None = None):
        self.login_state = login_state
        self.file_path = Path(file_path) if file_path else None
        self.sessions: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.file_path or not self.file_path.exists():
            return {}
        try:
            return json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to parse sessions file, starting fresh: {e}")
            return {}

    def persist(self) -> None:
        if not self.file_path:
            return
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.file_path.write_text(json.dumps(self.sessions, indent=2, ensure_ascii=False), encoding="utf-8")

    def get(self, telegram_user_id: Any) -> Dict[str, Any]:
        """Session for user (created on first access)."""
        if not telegram_user_id:
            return _new_session()
        key = str(telegram_user_id)
        if key not in self.sessions:
            self.sessions[key] = _new_session()
            self.persist()
        return self.sessions[key]

    def save_user_jwt(
        self,
        telegram_user_id: Any,
        jwt: Optional[str],
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        chat_id: Any = None,
    ) -> Dict[str, Any]:
        logger.info(f"session.saveJwt telegram_user_id={telegram_user_id} chat_id={chat_id} token={token_prefix(jwt)}")
        session = self.get(telegram_user_id)
        if jwt:
            session["token"] = jwt
        if user_id:
            session["backend_user_id"] = user_id
        if email:
            session["last_email"] = email
        if chat_id is not None:
            session["telegram_chat_id"] = str(chat_id)
        self.persist()

        existing = self.login_state.get_logged_in(telegram_user_id) or LoggedInUser()
        self.login_state.set_logged_in(
            telegram_user_id,
            LoggedInUser(
                jwt=jwt or existing.jwt or session.get("token"),
                user_id=user_id or existing.user_id or session.get("backend_user_id"),
                email=email or existing.email or session.get("last_email"),
            ),
        )
        return session

    def restore_login(self, telegram_user_id: Any) -> Optional[LoggedInUser]:
        """
        Logged-in user from the registry, falling back to a persisted token.

        Keeps session and registry in sync in both directions.
        """
        session = self.get(telegram_user_id)
        user = self.login_state.get_logged_in(telegram_user_id)
        if user and user.jwt:
            session["token"] = user.jwt
            session["backend_user_id"] = user.user_id
            self.persist()
            return user
        if session.get("token"):
            user = LoggedInUser(
                jwt=session["token"],
                user_id=session.get("backend_user_id"),
                email=session.get("last_email"),
            )
            self.login_state.set_logged_in(telegram_user_id, user)
            return user
        return None

    def find_telegram_chat_id(self, backend_user_id: Any) -> Optional[str]:
        """Telegram chat of a logged-in backend user, if any session has one."""
        if backend_user_id is None or backend_user_id == "":
            return None
        for telegram_user_id, session in self.sessions.items():
            if not session.get("token"):
                continue
            if str(session.get("backend_user_id")) == str(backend_user_id):
                return session.get("telegram_chat_id") or telegram_user_id
        return None

    def reset_state(self, session: Dict[str, Any]) -> None:
        session["state"] = None
        session["temp"] = {}
        self.persist()

    def enter_chat(self, session: Dict[str, Any], chat_id: Any) -> None:
        session["state"] = "chatting"
        session["active_chat_id"] = chat_id
        self.persist()

    def leave_chat(self, session: Dict[str, Any]) -> None:
        session["state"] = None
        session["active_chat_id"] = None
        self.persist()

    def clear_auth(self, session: Dict[str, Any], telegram_user_id: Any) -> None:
        session["token"] = None
        session["backend_user_id"] = None
        session["active_chat_id"] = None
        self.persist()
        self.login_state.reset(telegram_user_id)


def _new_session() -> Dict[str, Any]:
    return {**DEFAULT_SESSION, "temp": {}}
