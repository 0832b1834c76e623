"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Database (SQLite fallback when unset)
    DATABASE_URL: Optional[str] = None
    SQLITE_PATH: str = "songstudio_dev.db"
    SQL_DEBUG: bool = False

    # Application Settings
    APP_NAME: str = "Song Studio"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Startup behaviour
    CACHE_WARMUP_ON_STARTUP: bool = True
    SESSION_TABLE_BOOTSTRAP: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
