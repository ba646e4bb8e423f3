"""
Single SSE connection to the Mercure hub, multiplexing topic subscriptions.

ARCHITECTURE:
=============
One EventBusConnection owns at most one live HTTP stream. Callers subscribe
handlers to topics; the topic set is sent to the hub as ``topic`` query
parameters, so any change of the set needs a new stream.

- Topic changes while streaming are coalesced: a short restart timer collects
  every change and reconnects once with the union of live topics.
- Every connect attempt gets a new generation number. Only the active
  generation may dispatch events or schedule reconnects; a read loop that
  wakes up under an older generation exits without touching shared state.
- Transport failures reconnect with exponential backoff (floor on success,
  capped at max), forever, until ``stop()`` or the last unsubscribe.

Nothing here raises across the public API at runtime: faults become log
lines (the stable event names below) plus a retry.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from matchbot.telegram_bot.logging_config import realtime_logger, token_prefix
from .payloads import backend_chat_id, candidate_topics, telegram_user_id, telegram_chat_id
from .sse import SseBuffer, parse_record

DEFAULT_BACKOFF_SECONDS = 2.0
DEFAULT_MAX_BACKOFF_SECONDS = 20.0
DEFAULT_RESTART_DELAY_SECONDS = 0.2
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0

Handler = Callable[[dict, str], Any]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"


class HubConnectionError(Exception):
    """Hub refused the stream or closed it."""


@dataclass
class Subscription:
    id: str
    topic: str
    handler: Handler


class SubscriptionRegistry:
    """Topic -> subscriptions multimap. A topic exists iff it has a live handler."""

    def __init__(self):
        self._topics: dict[str, list[str]] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._counter = 0

    def add(self, topic: str, handler: Handler) -> Subscription:
        self._counter += 1
        subscription = Subscription(id=f"sub-{self._counter}", topic=topic, handler=handler)
        self._topics.setdefault(topic, []).append(subscription.id)
        self._subscriptions[subscription.id] = subscription
        return subscription

    def remove(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return None
        ids = self._topics.get(subscription.topic)
        if ids is not None:
            if subscription_id in ids:
                ids.remove(subscription_id)
            if not ids:
                del self._topics[subscription.topic]
        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def handlers_for(self, topic: str) -> list[Subscription]:
        return [self._subscriptions[sid] for sid in self._topics.get(topic, [])]

    def has_topic(self, topic: str) -> bool:
        return topic in self._topics

    def topics(self) -> list[str]:
        return list(self._topics)

    def is_empty(self) -> bool:
        return not self._topics

    def clear(self) -> None:
        self._topics.clear()
        self._subscriptions.clear()

    def __len__(self) -> int:
        return len(self._subscriptions)


def build_hub_url(base_url: str, topics: list[str]) -> str:
    """Append one ``topic`` query parameter per topic, keeping existing ones."""
    url = httpx.URL(base_url)
    params = url.params
    for topic in topics:
        params = params.add("topic", topic)
    return str(url.copy_with(params=params))


class EventBusConnection:
    """SSE subscriber client with coalesced restarts and generation fencing."""

    def __init__(
        self,
        hub_url: str,
        credential: Optional[str] = None,
        *,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        max_backoff: float = DEFAULT_MAX_BACKOFF_SECONDS,
        restart_delay: float = DEFAULT_RESTART_DELAY_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        name: str = "sse",
        logger: logging.Logger = realtime_logger,
    ):
        self.hub_url = hub_url
        self.credential = credential
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.restart_delay = restart_delay
        self.connect_timeout = connect_timeout
        self.name = name
        self.logger = logger

        self._registry = SubscriptionRegistry()
        self._client = http_client
        self._owns_client = http_client is None

        self._state = ConnectionState.IDLE
        self._connection_active = False
        self._current_backoff = backoff
        self._stream_generation = 0
        self._active_generation: Optional[int] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._pending_restart_reason: Optional[str] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._handler_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def generation(self) -> Optional[int]:
        """Currently active generation, None when idle."""
        return self._active_generation

    @property
    def active_topics(self) -> list[str]:
        return self._registry.topics()

    @property
    def current_backoff(self) -> float:
        return self._current_backoff

    @property
    def restart_pending(self) -> bool:
        return self._restart_handle is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """
        Register ``handler(payload, topic)`` for ``topic``.

        Returns an idempotent unsubscribe function.
        """
        if not topic or not isinstance(topic, str):
            raise ValueError("topic must be a non-empty string")
        if not callable(handler):
            raise ValueError("handler must be callable")

        new_topic = not self._registry.has_topic(topic)
        subscription = self._registry.add(topic, handler)
        self.logger.info(
            f"TOPIC_ADDED [{self.name}] topic={topic} subscription_id={subscription.id} "
            f"new_topic={new_topic} total_topics={len(self._registry.topics())}"
        )

        if not self._connection_active:
            self._ensure_connection()
        elif new_topic:
            self._schedule_restart("topic_added")

        def unsubscribe() -> None:
            self.unsubscribe(subscription.id)

        return unsubscribe

    def unsubscribe(self, subscription_id: str) -> None:
        subscription = self._registry.remove(subscription_id)
        if subscription is None:
            return

        topic_dropped = not self._registry.has_topic(subscription.topic)
        self.logger.info(
            f"TOPIC_REMOVED [{self.name}] topic={subscription.topic} subscription_id={subscription_id} "
            f"topic_dropped={topic_dropped} total_topics={len(self._registry.topics())}"
        )

        if self._registry.is_empty():
            self.stop()
            return

        if self._connection_active and topic_dropped:
            self._schedule_restart("topic_removed")

    def stop(self) -> None:
        """Abort the stream, cancel pending timers and go idle. Idempotent."""
        self._clear_scheduled_restart()
        self._cancel_reconnect()
        self._connection_active = False
        self._close_stream("stop")
        self._active_generation = None
        self._state = ConnectionState.IDLE

    async def aclose(self) -> None:
        """Stop and release the HTTP client if this connection created it."""
        self.stop()
        self._registry.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def set_credential(self, credential: Optional[str]) -> None:
        """
        Replace the bearer credential.

        The credential is checked on every connect attempt; providing one while
        topics are recorded but no connection runs starts a connection.
        """
        changed = credential != self.credential
        self.credential = credential
        if not credential:
            return
        if not self._connection_active:
            self._ensure_connection()
        elif changed:
            self._schedule_restart("credential_changed")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return self._connection_active and self._active_generation == generation

    def _ensure_connection(self) -> None:
        if self._connection_active or self._registry.is_empty():
            return
        self._restart_stream("initial_connect")

    def _clear_scheduled_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
        self._restart_handle = None
        self._pending_restart_reason = None

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
        self._reconnect_handle = None

    def _schedule_restart(self, reason: str) -> None:
        if self._restart_handle is not None:
            self._pending_restart_reason = reason
            return

        self._pending_restart_reason = reason
        self.logger.info(
            f"SSE_RESTART_SCHEDULED [{self.name}] reason={reason} delay={self.restart_delay}s "
            f"total_topics={len(self._registry.topics())} generation={self._stream_generation + 1}"
        )
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self.restart_delay, self._on_restart_timer)

    def _on_restart_timer(self) -> None:
        reason = self._pending_restart_reason or "scheduled"
        self._restart_handle = None
        self._pending_restart_reason = None
        self._restart_stream(reason)

    def _close_stream(self, reason: str) -> None:
        task = self._stream_task
        self._stream_task = None
        if task is not None and not task.done():
            self.logger.info(
                f"SSE_STREAM_CLOSING [{self.name}] generation={self._active_generation} reason={reason}"
            )
            task.cancel()

    def _restart_stream(self, reason: str) -> None:
        if not self.credential:
            self.logger.warning(
                f"SSE_DISABLED_NO_CREDENTIAL [{self.name}] reason={reason} "
                f"topics={self._registry.topics()}"
            )
            self.stop()
            return

        topics = self._registry.topics()
        if not topics:
            self.stop()
            return

        self._connection_active = True
        self._clear_scheduled_restart()
        self._cancel_reconnect()
        self._close_stream(reason)

        self._stream_generation += 1
        generation = self._stream_generation
        self._active_generation = generation
        self._state = ConnectionState.CONNECTING

        loop = asyncio.get_running_loop()
        self._stream_task = loop.create_task(
            self._run_stream(generation, topics),
            name=f"{self.name}-stream-{generation}",
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _timeout(self) -> httpx.Timeout:
        # Streams are long-lived: bound connecting only
        return httpx.Timeout(
            connect=self.connect_timeout,
            read=None,
            write=self.connect_timeout,
            pool=self.connect_timeout,
        )

    async def _run_stream(self, generation: int, topics: list[str]) -> None:
        hub_url = build_hub_url(self.hub_url, topics)
        headers = {
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self.credential}",
        }

        try:
            async with contextlib.AsyncExitStack() as stack:
                # httpx read timeout is off for the stream; bound headers here
                try:
                    async with asyncio.timeout(self.connect_timeout):
                        response = await stack.enter_async_context(
                            self._http().stream("GET", hub_url, headers=headers, timeout=self._timeout())
                        )
                except TimeoutError as e:
                    raise HubConnectionError(
                        f"Mercure connection timed out after {self.connect_timeout}s"
                    ) from e

                if not self._is_current(generation):
                    return
                if not response.is_success:
                    raise HubConnectionError(
                        f"Mercure connection failed: {response.status_code} {response.reason_phrase}"
                    )

                self._current_backoff = self.backoff
                self._state = ConnectionState.STREAMING
                self.logger.info(
                    f"SSE_STREAM_STARTED [{self.name}] generation={generation} topics={topics} "
                    f"credential={token_prefix(self.credential)}"
                )
                await self._consume(response.aiter_bytes(), generation)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._is_current(generation):
                return
            self.logger.error(f"SSE_STREAM_ERROR [{self.name}] generation={generation} error={e!r}")
            self._schedule_reconnect(generation)

    def _schedule_reconnect(self, generation: int) -> None:
        if not self._is_current(generation):
            return

        delay = min(self._current_backoff, self.max_backoff)
        self._current_backoff = min(self._current_backoff * 2, self.max_backoff)
        self._state = ConnectionState.RECONNECTING
        self.logger.info(
            f"SSE_STREAM_RECONNECTING [{self.name}] generation={generation} delay={delay}s "
            f"next_backoff={self._current_backoff}s topics={self._registry.topics()}"
        )
        loop = asyncio.get_running_loop()
        self._cancel_reconnect()
        self._reconnect_handle = loop.call_later(delay, self._on_reconnect_timer, generation)

    def _on_reconnect_timer(self, generation: int) -> None:
        self._reconnect_handle = None
        if not self._is_current(generation):
            return
        self._restart_stream("reconnect")

    # ------------------------------------------------------------------
    # Stream reading and dispatch
    # ------------------------------------------------------------------

    async def _consume(self, chunks: AsyncIterator[bytes], generation: int) -> None:
        """
        Read the body incrementally and dispatch complete records in order.

        Returns silently once ``generation`` is no longer active. Raises
        HubConnectionError when the peer closes a still-active stream.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = SseBuffer()

        async for chunk in chunks:
            if not self._is_current(generation):
                return
            for raw in buffer.feed(decoder.decode(chunk)):
                if not self._is_current(generation):
                    return
                self._handle_raw_record(raw, generation)

        if self._is_current(generation):
            raise HubConnectionError("Mercure stream closed")

    def _handle_raw_record(self, raw: str, generation: int) -> None:
        if not self._is_current(generation):
            return

        record = parse_record(raw)
        if record.data is None:
            return

        try:
            payload = json.loads(record.data)
        except ValueError as e:
            self.logger.warning(f"Failed to parse Mercure payload [{self.name}]: {e} data={record.data!r}")
            return

        topics = self._resolve_topics(record.topics, payload)
        self.logger.info(
            f"SSE_EVENT_RECEIVED [{self.name}] generation={generation} event_type={record.event_type} "
            f"event_id={record.event_id} topic={topics[0] if topics else None} "
            f"telegram_user_id={telegram_user_id(payload)} chat_id={telegram_chat_id(payload) or backend_chat_id(payload)}"
        )
        self._dispatch(payload, topics, generation)

    def _resolve_topics(self, hinted: list[str], payload: Any) -> list[str]:
        hinted = [t for t in hinted if self._registry.has_topic(t)]
        if hinted:
            return hinted
        derived = [t for t in candidate_topics(payload) if self._registry.has_topic(t)]
        if derived:
            return derived
        return self._registry.topics()

    def _dispatch(self, payload: Any, topics: list[str], generation: int) -> None:
        for topic in topics:
            for subscription in self._registry.handlers_for(topic):
                # A handler may unsubscribe others or stop the connection
                if not self._is_current(generation):
                    return
                if self._registry.get(subscription.id) is None:
                    continue
                self._invoke(subscription, payload, topic)

    def _invoke(self, subscription: Subscription, payload: Any, topic: str) -> None:
        try:
            result = subscription.handler(payload, topic)
        except Exception as e:
            self.logger.error(
                f"Subscriber handler failed [{self.name}] subscription_id={subscription.id} topic={topic}: {e}",
                exc_info=True,
            )
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Future) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                f"Subscriber handler failed [{self.name}]: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )
