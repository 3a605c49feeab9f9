"""Typed settings configuration - single source of truth."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AppEnv = Literal["production", "development", "test"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

PRODUCTION_SECRET_MIN_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    APP_ENV, PORT, DATABASE_URL and SESSION_SECRET have no defaults: a
    missing value is a startup failure, not a silent fallback.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Deployment
    app_env: AppEnv
    port: int = Field(ge=1, le=65535)
    log_level: LogLevel = "INFO"

    # Only honored outside production
    allow_relaxed_startup: bool = False

    # Database
    database_url: str = Field(min_length=1)
    database_pool_size: int = Field(default=10, ge=1)

    # Signing secret for session tokens and bypass grants
    session_secret: str = Field(min_length=1)

    # Governance artifacts
    governance_dir: Path = Path("governance")

    # API versioning (route group -> expected header value)
    api_version_header: str = "X-API-Version"
    api_versions: dict[str, str] = {"core": "v1", "admin": "v1"}

    # Break-glass
    bypass_grant_ttl_seconds: int = Field(default=900, gt=0, le=3600)

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("session_secret")
    @classmethod
    def _strong_secret_in_production(cls, value: str, info: ValidationInfo) -> str:
        if info.data.get("app_env") == "production" and len(value) < PRODUCTION_SECRET_MIN_LENGTH:
            raise ValueError(
                f"must be at least {PRODUCTION_SECRET_MIN_LENGTH} characters in production"
            )
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def relaxed_startup(self) -> bool:
        """Relaxation is never honored in production."""
        return self.allow_relaxed_startup and not self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]
