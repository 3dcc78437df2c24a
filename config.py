"""
Configuration management for the Random Chat API
Uses pydantic-settings for environment variable validation
"""

import os
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # API
    APP_NAME: str = "Random Chat API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    API_HOST: str = "0.0.0.0"
    API_PORT: int = int(os.getenv("PORT", 8000))
    CORS_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "random_chat"
    SESSION_STORE: str = "mongo"  # "mongo" or "memory"

    # Matchmaking
    STALE_SESSION_SECONDS: int = 120  # active session with no update for this long is reaped
    FALLBACK_MATCH_SECONDS: int = 60  # waiting session becomes matchable across topics

    # Messages
    MAX_MESSAGE_LENGTH: int = 1000
    MESSAGE_PAGE_SIZE: int = 50

    # Reports
    REPORT_DESCRIPTION_MIN: int = 10
    REPORT_DESCRIPTION_MAX: int = 500


settings = Settings()
