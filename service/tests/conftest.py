"""
Shared test scaffolding.

FakeHub is an httpx.MockTransport handler that serves one controllable SSE
stream per request; tests push raw bytes into a stream and close it to
simulate the hub. FakeBackend and make_update drive the Telegram handlers
against a scripted backend.
"""

import asyncio
import os
import time
from types import SimpleNamespace

import httpx
import pytest

os.environ.setdefault("BOT_TOKEN", "test-bot-token")
os.environ.setdefault("INTERNAL_API_TOKEN", "internal-secret")

from matchbot.config import Settings, get_settings  # noqa: E402
from matchbot.realtime import ChatLiveRelay, EventBusConnection, LoginEventCorrelator  # noqa: E402
from matchbot.telegram_bot.api_client import BackendAPIClient  # noqa: E402
from matchbot.telegram_bot.bot import BotRuntime  # noqa: E402
from matchbot.telegram_bot.context import SessionStore  # noqa: E402
from matchbot.telegram_bot.login_state import LoginStateRegistry  # noqa: E402

HUB_URL = "https://hub.test/.well-known/mercure"


class HubStream(httpx.AsyncByteStream):
    """Response body fed from a queue; ``None`` ends the stream."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, data: str | bytes) -> None:
        self.queue.put_nowait(data.encode() if isinstance(data, str) else data)

    def end(self) -> None:
        self.queue.put_nowait(None)

    async def __aiter__(self):
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeHub:
    """
    Records every connect request and answers with a fresh HubStream.

    ``statuses`` scripts the HTTP status per request (200 once exhausted).
    ``on_request`` is called with the request before answering.
    """

    def __init__(self, statuses=None, on_request=None):
        self.requests: list[httpx.Request] = []
        self.streams: list[HubStream] = []
        self.statuses = list(statuses or [])
        self.on_request = on_request

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        status = self.statuses.pop(0) if self.statuses else 200
        if status != 200:
            return httpx.Response(status, text="hub error")
        stream = HubStream()
        self.streams.append(stream)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)

    def topics(self, index: int = -1) -> list[str]:
        return self.requests[index].url.params.get_list("topic")

    @property
    def last_stream(self) -> HubStream:
        return self.streams[-1]


class FakeConnection:
    """In-memory stand-in for EventBusConnection used by subscriber tests."""

    def __init__(self):
        self.handlers: dict[str, list] = {}
        self.subscribe_calls: list[str] = []
        self.stopped = False

    def subscribe(self, topic, handler):
        self.subscribe_calls.append(topic)
        self.handlers.setdefault(topic, []).append(handler)

        def unsubscribe():
            handlers = self.handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self.handlers.pop(topic, None)

        return unsubscribe

    def stop(self):
        self.stopped = True

    def emit(self, topic, payload):
        """Invoke handlers for ``topic``; returns their results."""
        return [handler(payload, topic) for handler in list(self.handlers.get(topic, []))]

    async def emit_and_wait(self, topic, payload):
        for result in self.emit(topic, payload):
            if asyncio.iscoroutine(result):
                await result


def make_connection(hub: FakeHub, credential: str | None = "subscriber-jwt", **kwargs) -> EventBusConnection:
    options = {"backoff": 0.01, "max_backoff": 0.04, "restart_delay": 0.05}
    options.update(kwargs)
    client = httpx.AsyncClient(transport=httpx.MockTransport(hub))
    return EventBusConnection(HUB_URL, credential, http_client=client, **options)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


class FakeChat:
    def __init__(self, chat_id):
        self.id = chat_id
        self.replies = []

    async def send_message(self, text, reply_markup=None):
        self.replies.append((text, reply_markup))


class FakeBackend:
    """MockTransport handler with per-route scripted responses."""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def __call__(self, request):
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, body = self.routes.get(key, (200, {}))
        return httpx.Response(status, json=body)


def make_update(text=None, callback_data=None, user_id=42, chat_id=42, message_text=None):
    """Telegram update as a namespace carrying only what the handlers read."""
    chat = FakeChat(chat_id)
    update = SimpleNamespace(
        effective_user=SimpleNamespace(id=user_id, first_name="Ann", username="ann"),
        effective_chat=chat,
        message=SimpleNamespace(text=text),
        callback_query=None,
    )
    if callback_data is not None:
        query = SimpleNamespace(data=callback_data, message=SimpleNamespace(text=message_text), edits=[])

        async def answer():
            return None

        async def edit_message_text(text, reply_markup=None):
            query.edits.append((text, reply_markup))

        async def edit_message_reply_markup(reply_markup=None):
            query.edits.append((None, reply_markup))

        query.answer = answer
        query.edit_message_text = edit_message_text
        query.edit_message_reply_markup = edit_message_reply_markup
        update.callback_query = query
    return update, chat


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def runtime(backend):
    login_state = LoginStateRegistry()
    sessions = SessionStore(login_state)
    api_client = BackendAPIClient("https://backend.test", 5.0, transport=httpx.MockTransport(backend))

    async def send_text(chat_id, text):
        return None

    return BotRuntime(
        settings=Settings(bot_token="t", sessions_file=""),
        api_client=api_client,
        login_state=login_state,
        sessions=sessions,
        login_correlator=LoginEventCorrelator(FakeConnection(), lambda event: None),
        chat_relay=ChatLiveRelay(FakeConnection(), send_text),
    )


@pytest.fixture
def context(runtime):
    return SimpleNamespace(bot_data={"runtime": runtime}, error=None)
