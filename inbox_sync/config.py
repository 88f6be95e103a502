from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service and reconciliation settings, read from the environment.

    A `.env` file is only a fallback; real environment variables win.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Required
    DATABASE_URL: str
    LOG_LEVEL: str
    WEBHOOK_SECRET: str

    # GET /webhook handshake; empty rejects every verification attempt
    WEBHOOK_VERIFY_TOKEN: str = ""

    # Poll reconciler period and snapshot size served to it
    POLL_INTERVAL_SECONDS: float = Field(5.0, gt=0)
    SNAPSHOT_LIMIT: int = Field(100, ge=1, le=500)

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper()


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()


settings = get_settings()
