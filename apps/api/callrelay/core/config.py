"""Application configuration for the call relay service."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    database_url: str = Field(default="sqlite+aiosqlite:///./callrelay.db")
    database_ssl_required: bool = Field(default=False)

    vapi_base_url: str = Field(default="https://api.vapi.ai")
    vapi_api_key: str = Field(default="")
    vapi_assistant_id: str = Field(default="")
    vapi_phone_number_id: str = Field(default="")
    vapi_timeout_seconds: float = Field(default=10.0, gt=0)

    webhook_secret: str = Field(default="")

    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")

    control_poll_interval_seconds: float = Field(default=2.0, gt=0)
    control_poll_max_attempts: int = Field(default=30, ge=1)
    control_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    session_grace_seconds: float = Field(default=30.0, ge=0)

    default_country_code: str = Field(default="1")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
