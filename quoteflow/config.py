"""All settings, loaded from the .env file."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App
    app_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./quoteflow.db"
    log_level: str = "INFO"
    log_file: str = ""  # blank = stdout only
    testing: bool = False

    # Gmail mailbox (token acquisition happens outside this service)
    gmail_api_base: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    gmail_access_token: str = ""
    gmail_token_expires_at: str = ""  # ISO-8601, blank = unknown
    gmail_refresh_token: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    gmail_user_email: str = ""
    sender_name: str = "Purchasing"

    # Reply analyzer
    anthropic_api_key: str = ""
    analyzer_model_tier: str = "fast"

    # Workflow rules
    quotation_id_prefix: str = "quot_"
    quotation_expiry_days: int = 7
    cancel_window_hours: int = 24
    max_error_retries: int = 3

    # Optimistic sync
    sync_retry_attempts: int = 3
    sync_retry_delay_ms: int = 1000

    # Reply polling
    reply_poll_enabled: bool = True
    reply_poll_initial_delay_sec: float = 2
    reply_poll_interval_sec: float = 30
    reply_search_max_results: int = 20
    reply_fetch_limit: int = 10
    mime_max_depth: int = 5
    min_body_length: int = 10

    @property
    def is_production(self) -> bool:
        return "localhost" not in self.app_url and "127.0.0.1" not in self.app_url


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
