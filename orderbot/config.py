from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    env: str = Field(default="dev", alias="APP_ENV")
    debug: bool = Field(default=False, alias="APP_DEBUG")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")

    data_dir: Path = Field(default=Path("data"), alias="DATA_DIR")
    # Overrides the owner id stored in business.json when set.
    owner_id: Optional[str] = Field(default=None, alias="OWNER_ID")

    cart_expiry_minutes: float = Field(default=15.0, alias="CART_EXPIRY_MINUTES")
    max_disambiguation_options: int = Field(default=10, alias="MAX_DISAMBIGUATION_OPTIONS")

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, alias="OPENAI_BASE_URL")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_temperature: float = Field(default=0.5, alias="OPENAI_TEMPERATURE")
    openai_max_tokens: int = Field(default=400, alias="OPENAI_MAX_TOKENS")

    ai_fallback_enabled: bool = Field(default=True, alias="AI_FALLBACK_ENABLED")
    ai_retry_delay_seconds: float = Field(default=2.0, alias="AI_RETRY_DELAY_SECONDS")
    ai_context_product_limit: int = Field(default=50, alias="AI_CONTEXT_PRODUCT_LIMIT")
    ai_answer_cache_ttl: int = Field(default=900, alias="AI_ANSWER_CACHE_TTL")

    transport_url: Optional[str] = Field(default=None, alias="TRANSPORT_URL")
    transport_token: Optional[str] = Field(default=None, alias="TRANSPORT_TOKEN")
    http_timeout_seconds: float = Field(default=15.0, alias="HTTP_TIMEOUT_SECONDS")
    # Also push every reply through the transport, not only in the HTTP response
    deliver_replies: bool = Field(default=False, alias="DELIVER_REPLIES")

    # Per-customer inbound message limit
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW")
    rate_limit_max_messages: int = Field(default=20, alias="RATE_LIMIT_MAX_MESSAGES")

    # LangSmith / LangChain tracing
    langsmith_api_key: str | None = Field(default=None, alias="LANGSMITH_API_KEY")
    langsmith_project: str | None = Field(default=None, alias="LANGSMITH_PROJECT")
    langsmith_tracing_v2: bool = Field(default=False, alias="LANGCHAIN_TRACING_V2")

    @property
    def cart_expiry_seconds(self) -> float:
        return self.cart_expiry_minutes * 60


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
