from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Telegram
    bot_token: str
    telegram_webhook_secret: str = ""  # Optional: for webhook verification

    # Backend API
    api_base_url: str = "https://matchinghub.work"
    api_timeout: float = 10.0

    # Mercure hub (realtime events)
    mercure_hub_url: str = "https://matchinghub.work/.well-known/mercure"
    mercure_subscriber_jwt: str = Field(
        default="",
        validation_alias=AliasChoices("mercure_subscriber_jwt", "mercure_jwt"),
    )

    # SSE reconnection (seconds)
    sse_backoff_seconds: float = 2.0
    sse_max_backoff_seconds: float = 20.0
    sse_restart_delay_seconds: float = 0.2
    sse_connect_timeout_seconds: float = 10.0

    # Participant notifications (comma-separated topics, wildcards allowed)
    mercure_topics: str = "/chats/*"
    service_api_token: str = Field(
        default="",
        validation_alias=AliasChoices("service_api_token", "bot_service_token"),
    )
    participants_cache_ttl_seconds: float = 300.0

    # Internal notifier endpoint
    internal_api_token: str = ""

    # Sessions
    sessions_file: str = "data/sessions.json"

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True

    @property
    def mercure_topic_list(self) -> list[str]:
        return [t.strip() for t in self.mercure_topics.split(",") if t.strip()] or ["/chats/*"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
