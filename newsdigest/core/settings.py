"""Application settings and configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    db_url: str = Field(default="sqlite+aiosqlite:///./newsdigest.sqlite3")

    # Feeds
    feeds_config_path: str = Field(default="config/feeds.yaml")
    user_agent: str = Field(default="newsdigest/1.0 (+https://github.com/newsdigest/newsdigest)")
    fetch_timeout: float = Field(default=15.0)
    fetch_max_retries: int = Field(default=4)
    crawl_concurrency: int = Field(default=8)

    # Languages
    source_lang: str = Field(default="sv")
    target_lang: str = Field(default="en")

    # Translation / embedding backend (OpenAI compatible)
    openai_base_url: str = Field(default="https://api.openai.com")
    openai_api_key: str = Field(default="")
    translation_model: str = Field(default="gpt-3.5-turbo")
    embedding_model: str = Field(default="text-embedding-3-large")
    api_timeout: float = Field(default=30.0)
    api_max_retries: int = Field(default=5)
    api_backoff_seconds: float = Field(default=0.5)

    # Stages
    translation_concurrency: int = Field(default=4)
    embedding_concurrency: int = Field(default=4)
    normalize_embedding_text: bool = Field(default=True)

    # Clustering
    embedding_field_kind: str = Field(default="description")
    embedding_lang: str = Field(default="en")
    display_field_kind: str = Field(default="title")
    min_points: int = Field(default=2)
    threshold_lo: float = Field(default=0.3)
    threshold_hi: float = Field(default=1.2)
    threshold_samples: int = Field(default=20)
    search_objective: str = Field(default="count_x_score")  # count_x_score | score
    search_early_stop: bool = Field(default=True)
    cluster_workers: int = Field(default=1)

    # Scheduling
    cycle_interval_minutes: int = Field(default=15)
    run_at_startup: bool = Field(default=True)

    # Logging
    log_level: str = Field(default="INFO")
    library_log_level: str = Field(default="WARNING")

    # Service configuration
    service_host: str = Field(default="0.0.0.0")
    service_port: Optional[int] = Field(default=8080)
    allow_manual_run: bool = Field(default=False)
    debug: bool = Field(default=False)

    app_name: str = "newsdigest"
    environment: str = Field(default="development")


@lru_cache()
def get_settings() -> Settings:
    """Get settings singleton."""
    return Settings()
