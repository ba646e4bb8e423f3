"""
Backend API client for the matching service.

Thin wrapper over httpx: joins paths onto the configured base URL, attaches
the user's bearer token, and turns every failure into ApiError with a
message that can be shown to the user as is.
"""

import httpx
from typing import Optional, Dict, Any

from matchbot.config import get_settings
from .logging_config import bot_logger as logger


class API_ROUTES:
    MAGIC_LINK_REQUEST = "/api/auth/magic-link"
    ME = "/api/me"
    CHATS_LIST = "/api/chats"
    REQUESTS_CREATE = "/api/requests"
    REQUESTS_MINE = "/api/requests/mine"
    FEEDBACK_MATCH = "/api/feedback/match"

    @staticmethod
    def REQUESTS_MATCHES(request_id) -> str:
        return f"/api/requests/{request_id}/matches"

    @staticmethod
    def CHATS_START(user_id) -> str:
        return f"/api/chats/start/{user_id}"

    @staticmethod
    def CHAT_MESSAGES(chat_id) -> str:
        return f"/api/chats/{chat_id}/messages"

    @staticmethod
    def CHAT_SEND_MESSAGE(chat_id) -> str:
        return f"/api/chats/{chat_id}/messages"

    @staticmethod
    def CHAT_PARTICIPANTS(chat_id) -> str:
        return f"/api/chats/{chat_id}/participants"


SERVER_ERROR_MESSAGE = "❌ Произошла ошибка на сервере. Попробуйте позже."
CONNECTION_ERROR_MESSAGE = "Не удалось связаться с сервером. Проверьте соединение или попробуйте позже."


class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, is_auth_error: bool = False):
        super().__init__(message)
        self.message = message
        self.status = status
        self.is_auth_error = is_auth_error


def normalize_api_error(error: Exception) -> ApiError:
    """Map an httpx failure to a user-facing ApiError."""
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        status = response.status_code
        is_auth_error = status in (401, 403)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if isinstance(data, str):
            message = SERVER_ERROR_MESSAGE if "<html" in data.lower() or not data.strip() else data
            return ApiError(message, status, is_auth_error)

        if isinstance(data, dict) and data.get("violations"):
            message = "\n".join(
                f"{v.get('propertyPath')}: {v.get('message')}" for v in data["violations"]
            )
            return ApiError(message, status, is_auth_error)

        message = None
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
        return ApiError(message or f"Ошибка {status}: попробуйте позже.", status, is_auth_error)

    if isinstance(error, httpx.RequestError):
        return ApiError(CONNECTION_ERROR_MESSAGE)

    return ApiError(SERVER_ERROR_MESSAGE)


class BackendAPIClient:
    """Client for the matching backend REST API."""

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings() if base_url is None or timeout is None else None
        self.base_url = base_url if base_url is not None else settings.api_base_url
        self.client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.api_timeout,
            transport=transport,
        )

    def build_url(self, path: str) -> str:
        """Join ``path`` onto the base URL, dropping a duplicated ``/api`` prefix."""
        base = (self.base_url or "").rstrip("/")
        if not path:
            return base
        path = path if path.startswith("/") else f"/{path}"
        if base.endswith("/api") and path.startswith("/api"):
            path = path[len("/api"):]
        return f"{base}{path}"

    def build_headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = self.build_url(path)
        logger.debug(f"[api] {method.upper()} {url}")
        try:
            response = await self.client.request(
                method.upper(),
                url,
                json=json,
                params=params,
                headers=self.build_headers(token),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise normalize_api_error(e) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def request_magic_link(
        self,
        email: str,
        telegram_user_id: str,
        telegram_chat_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Any:
        payload = {"email": email, "telegram_user_id": telegram_user_id}
        if telegram_chat_id is not None:
            payload["telegram_chat_id"] = str(telegram_chat_id)
        if name:
            payload["name"] = name
        return await self.request("post", API_ROUTES.MAGIC_LINK_REQUEST, json=payload)

    async def get_me(self, token: str) -> Dict[str, Any]:
        return await self.request("get", API_ROUTES.ME, token=token)

    async def list_chats(self, token: str) -> list:
        data = await self.request("get", API_ROUTES.CHATS_LIST, token=token)
        return unwrap_items(data)

    async def list_messages(self, chat_id: Any, token: str, limit: int = 50) -> list:
        data = await self.request(
            "get",
            API_ROUTES.CHAT_MESSAGES(chat_id),
            token=token,
            params={"offset": 0, "limit": limit},
        )
        return unwrap_items(data)

    async def send_chat_message(self, chat_id: Any, content: str, token: str) -> Any:
        return await self.request("post", API_ROUTES.CHAT_SEND_MESSAGE(chat_id), json={"content": content}, token=token)

    async def list_participants(self, chat_id: Any, token: Optional[str]) -> list:
        data = await self.request("get", API_ROUTES.CHAT_PARTICIPANTS(chat_id), token=token)
        if isinstance(data, dict) and data.get("participants"):
            return data["participants"]
        return unwrap_items(data)

    async def start_chat(self, user_id: Any, token: str, origin_request_id: Optional[int] = None) -> Dict[str, Any]:
        """Open (or reuse) a direct chat with another backend user."""
        body = {"originType": "request", "originId": origin_request_id} if origin_request_id is not None else {}
        return await self.request("post", API_ROUTES.CHATS_START(user_id), json=body, token=token)

    async def create_request(
        self,
        raw_text: str,
        token: str,
        city: Optional[str] = None,
        country: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload = {"rawText": raw_text, "city": city, "country": country, "location": location}
        return await self.request("post", API_ROUTES.REQUESTS_CREATE, json=payload, token=token)

    async def list_my_requests(self, token: str) -> list:
        data = await self.request("get", API_ROUTES.REQUESTS_MINE, token=token)
        return unwrap_items(data)

    async def list_matches(self, request_id: Any, token: str, limit: int = 10) -> list:
        data = await self.request("get", API_ROUTES.REQUESTS_MATCHES(request_id), token=token, params={"limit": limit})
        return unwrap_items(data)

    async def submit_match_feedback(self, payload: Dict[str, Any], token: str) -> Any:
        return await self.request("post", API_ROUTES.FEEDBACK_MATCH, json=payload, token=token)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()


def unwrap_items(data: Any) -> list:
    """Backend lists come either bare or wrapped in ``items``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("items") or []
    return []
