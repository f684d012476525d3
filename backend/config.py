"""Application configuration using pydantic-settings."""

import string

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite:///./ledger.db"

    # Lot codes shared by stock_lots and option_lots
    LOT_CODE_LENGTH: int = 5
    LOT_CODE_ALPHABET: str = string.ascii_uppercase + string.digits
    LOT_CODE_MAX_ATTEMPTS: int = 10

    # Statement upload
    MAX_STATEMENT_BYTES: int = 20 * 1024 * 1024

    # Ledger read cache, cleared after every confirmed import
    RESPONSE_CACHE_TTL_SECONDS: int = 300

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    @field_validator("LOT_CODE_ALPHABET")
    @classmethod
    def validate_code_alphabet(cls, v: str) -> str:
        """Reject alphabets too small to produce distinct codes."""
        if len(set(v)) < 2:
            raise ValueError("LOT_CODE_ALPHABET must contain at least two distinct characters")
        return v

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
