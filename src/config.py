from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Telegram
    telegram_bot_token: str
    telegram_allowed_usernames: str = ""  # comma-separated, without @
    telegram_launch_max_attempts: int = 5
    telegram_launch_base_delay_seconds: float = 3.0

    # Linear
    linear_api_key: str
    linear_team_id: str
    linear_api_url: str = "https://api.linear.app/graphql"
    linear_webhook_secret: str = ""
    linear_issue_url_template: str = "https://linear.app/issue/{identifier}"
    webhook_max_age_seconds: int = 60

    # LLM provider: "openai" (default) or "anthropic"
    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""  # Optional OpenAI-compatible proxy URL
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 500

    # People and workflow vocabulary shown to the LLM
    identity_directory_path: str = ""  # YAML file; empty means no curated mappings
    workflow_statuses: str = "Todo,In Progress,In Review,Done,Cancelled"

    # Local issue mirror (SQLite)
    issue_db_path: str = "data/issues.db"
    history_max_messages: int = 20
    history_ttl_seconds: int = 3600
    user_cache_ttl_seconds: int = 300
    purge_interval_minutes: int = 15  # 0 disables the purge job

    brand_name: str = "Linear"
    confidence_threshold: float = 0.5

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def allowed_usernames(self) -> set[str]:
        return {u.strip().lstrip("@").lower() for u in self.telegram_allowed_usernames.split(",") if u.strip()}

    @property
    def status_names(self) -> list[str]:
        return [s.strip() for s in self.workflow_statuses.split(",") if s.strip()]

    @property
    def active_model(self) -> str:
        return self.anthropic_model if self.llm_provider == "anthropic" else self.openai_model


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()  # type: ignore[call-arg]  # pyright: ignore[reportCallIssue] — fields loaded from env
