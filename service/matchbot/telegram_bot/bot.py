"""
Main Telegram bot handler.

Uses python-telegram-bot library with webhook mode. The realtime layer and
session state are created once at startup as a BotRuntime and handed to the
handlers through ``application.bot_data["runtime"]``.
"""

from dataclasses import dataclass

import httpx
from telegram import Update
from telegram.ext import Application, CommandHandler, MessageHandler, CallbackQueryHandler, filters

from matchbot.config import Settings, get_settings
from matchbot.realtime import ChatLiveRelay, EventBusConnection, LoginEventCorrelator, ParticipantNotifier
from .api_client import BackendAPIClient
from .context import SessionStore
from .login import LoginHandler
from .login_state import LoginStateRegistry
from .logging_config import bot_logger as logger, configure_log_level
from .telegram_api import send_message, send_message_with_buttons
from .handlers import (
    handle_start_command,
    handle_logout_command,
    handle_cancel_command,
    handle_text_message,
    handle_callback_query,
    handle_error,
)


@dataclass
class BotRuntime:
    settings: Settings
    api_client: BackendAPIClient
    login_state: LoginStateRegistry
    sessions: SessionStore
    login_correlator: LoginEventCorrelator
    chat_relay: ChatLiveRelay
    notifier: ParticipantNotifier | None = None

    def start(self) -> None:
        if self.notifier is not None:
            self.notifier.start()

    async def close(self) -> None:
        self.login_correlator.stop()
        self.chat_relay.stop()
        await self.login_correlator.connection.aclose()
        await self.chat_relay.connection.aclose()
        if self.notifier is not None:
            self.notifier.stop()
            await self.notifier.connection.aclose()
        await self.api_client.close()


def create_hub_connection(settings: Settings, name: str, http_client: httpx.AsyncClient | None = None) -> EventBusConnection:
    return EventBusConnection(
        settings.mercure_hub_url,
        settings.mercure_subscriber_jwt or None,
        backoff=settings.sse_backoff_seconds,
        max_backoff=settings.sse_max_backoff_seconds,
        restart_delay=settings.sse_restart_delay_seconds,
        connect_timeout=settings.sse_connect_timeout_seconds,
        http_client=http_client,
        name=name,
    )


def build_runtime(
    settings: Settings | None = None,
    *,
    send_text=send_message,
    send_menu=send_message_with_buttons,
    api_client: BackendAPIClient | None = None,
    hub_client: httpx.AsyncClient | None = None,
) -> BotRuntime:
    """Create session state, backend client and realtime subscribers."""
    settings = settings or get_settings()
    configure_log_level(settings.log_level)
    api_client = api_client or BackendAPIClient(settings.api_base_url, settings.api_timeout)
    login_state = LoginStateRegistry()
    sessions = SessionStore(login_state, settings.sessions_file or None)

    if not settings.mercure_subscriber_jwt:
        logger.warning("MERCURE_SUBSCRIBER_JWT is not set. Realtime login and chat relay are disabled.")

    login_correlator = LoginEventCorrelator(
        create_hub_connection(settings, "login", hub_client),
        LoginHandler(sessions, api_client, send_menu),
    )
    chat_relay = ChatLiveRelay(create_hub_connection(settings, "chats", hub_client), send_text)

    notifier = None
    if settings.mercure_subscriber_jwt and settings.service_api_token:
        service_token = settings.service_api_token

        async def load_participants(chat_id: str) -> list:
            return await api_client.list_participants(chat_id, service_token)

        notifier = ParticipantNotifier(
            create_hub_connection(settings, "notifications", hub_client),
            load_participants,
            sessions.find_telegram_chat_id,
            send_text,
            topics=settings.mercure_topic_list,
            is_relayed=chat_relay.is_relaying,
            cache_ttl=settings.participants_cache_ttl_seconds,
        )
    else:
        logger.warning("SERVICE_API_TOKEN or MERCURE_SUBSCRIBER_JWT is not set. Participant notifications are disabled.")

    return BotRuntime(
        settings=settings,
        api_client=api_client,
        login_state=login_state,
        sessions=sessions,
        login_correlator=login_correlator,
        chat_relay=chat_relay,
        notifier=notifier,
    )


# Global application instance (initialized once)
_application: Application | None = None


def get_bot_application() -> Application:
    """Get or create telegram bot application."""
    global _application

    if _application is None:
        settings = get_settings()

        _application = (
            Application.builder()
            .token(settings.bot_token)
            .build()
        )

        # Register handlers
        _application.add_handler(CommandHandler("start", handle_start_command))
        _application.add_handler(CommandHandler("logout", handle_logout_command))
        _application.add_handler(CommandHandler("cancel", handle_cancel_command))

        # Text messages (email input, chat messages)
        _application.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text_message)
        )

        # Callback queries (inline keyboard buttons)
        _application.add_handler(
            CallbackQueryHandler(handle_callback_query)
        )

        # Error handler
        _application.add_error_handler(handle_error)

        logger.info("Telegram bot application initialized")

    return _application


async def handle_telegram_update(update_data: dict) -> None:
    """
    Process incoming webhook update from Telegram.

    This is called by FastAPI webhook endpoint.
    Runs handlers in background (fire-and-forget).
    """
    try:
        app = get_bot_application()

        # Convert dict to Update object
        update = Update.de_json(update_data, app.bot)

        if update:
            await app.process_update(update)
        else:
            logger.warning("Received invalid update data")

    except Exception as e:
        logger.error(f"Failed to process update: {e}", exc_info=True)


async def initialize_bot() -> BotRuntime:
    """
    Initialize bot application and its runtime (call on startup).
    """
    app = get_bot_application()
    runtime = build_runtime()
    app.bot_data["runtime"] = runtime
    await app.initialize()
    runtime.start()
    logger.info("Bot initialized successfully")
    return runtime


async def shutdown_bot() -> None:
    """
    Shutdown bot application and realtime subscribers (call on shutdown).
    """
    global _application
    if _application:
        runtime = _application.bot_data.pop("runtime", None)
        if runtime is not None:
            await runtime.close()
        await _application.shutdown()
        _application = None
        logger.info("Bot shut down")
