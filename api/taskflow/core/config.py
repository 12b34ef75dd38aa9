"""Application settings parsed from environment variables and defaults."""

import json
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]
DEFAULT_QUEUE_NAMES = ["default", "automations"]


def _split_list(value: str | list[str] | None) -> list[str] | None:
    """Parse JSON arrays, CSV strings, or lists into cleaned string lists."""
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return None


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = "Taskflow API"
    environment: str = "development"
    api_prefix: str = "/api"

    database_url: str
    test_database_url: Optional[str] = None

    access_token_expires_minutes: int = 60
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"

    log_level: str = "INFO"
    cors_origins: list[str] | str = Field(default_factory=lambda: DEFAULT_CORS_ORIGINS.copy())
    redis_url: str = "redis://redis:6379/0"
    worker_queue_names: list[str] | str = Field(default_factory=lambda: DEFAULT_QUEUE_NAMES.copy())

    # None means "strict everywhere except production".
    automation_strict: Optional[bool] = None
    automation_default_retry_delay_ms: int = 1000
    automation_webhook_timeout_seconds: float = 10.0
    automation_queue_timeout_seconds: int = 60

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_cors_origins(cls, value: str | list[str] | None) -> list[str]:
        """Normalize CORS origins from JSON, CSV, or list inputs."""
        return _split_list(value) or DEFAULT_CORS_ORIGINS.copy()

    @field_validator("worker_queue_names", mode="before")
    @classmethod
    def _split_worker_queue_names(cls, value: str | list[str] | None) -> list[str]:
        """Normalize worker queue names from JSON, CSV, or list inputs."""
        return _split_list(value) or ["default"]

    @property
    def automation_strict_mode(self) -> bool:
        """Return True when stored rules that fail to decode should fail loudly."""
        if self.automation_strict is not None:
            return self.automation_strict
        return self.environment.lower() != "production"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid re-parsing environment variables."""
    return Settings()


settings = get_settings()
