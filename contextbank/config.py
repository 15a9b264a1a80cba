"""
Centralized Configuration for ContextBank.

All environment variables are managed here using Pydantic Settings.
This provides:
- Type validation
- Default values
- Clear documentation
- Single source of truth

Usage:
    from contextbank.config import settings

    db_url = settings.database_url
    ceiling = settings.document_max_bytes
"""

import logging
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# Load environment variables from the first .env found
env_paths = [
    Path(__file__).parent.parent / '.env',
    Path(__file__).parent / '.env',
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables are prefixed with CONTEXTBANK_ where applicable.
    """

    # =============================================================================
    # Application Environment
    # =============================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
        validation_alias="CONTEXTBANK_ENVIRONMENT"
    )

    testing: bool = Field(
        default=False,
        description="Enable testing mode",
        validation_alias="TESTING"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        validation_alias="CONTEXTBANK_LOG_LEVEL"
    )

    # =============================================================================
    # Database
    # =============================================================================

    database_url: str = Field(
        default="sqlite:///./contextbank.db",
        description="Database connection URL (PostgreSQL or SQLite)",
        validation_alias="DATABASE_URL"
    )

    storage_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound for any single storage call (connect, lock wait, statement)",
        validation_alias="CONTEXTBANK_STORAGE_TIMEOUT"
    )

    # =============================================================================
    # Redis & Caching
    # =============================================================================

    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL; network caching is disabled when unset",
        validation_alias="REDIS_URL"
    )

    network_cache_ttl_seconds: int = Field(
        default=300,
        description="TTL for the cached bounded-context network view",
        validation_alias="NETWORK_CACHE_TTL_SECONDS"
    )

    # =============================================================================
    # Document Store Limits
    # =============================================================================

    document_max_bytes: int = Field(
        default=16384,  # 16KB
        gt=0,
        description="Hard per-document byte ceiling of the knowledge document store",
        validation_alias="DOCUMENT_MAX_BYTES"
    )

    chunk_max_bytes: int = Field(
        default=14000,  # leaves room for metadata
        gt=0,
        description="Target chunk size when splitting oversized content",
        validation_alias="CHUNK_MAX_BYTES"
    )

    metadata_value_max_bytes: int = Field(
        default=256,
        gt=len(" [TRUNCATED]"),
        description="Per-metadata-value byte ceiling of the knowledge document store",
        validation_alias="METADATA_VALUE_MAX_BYTES"
    )

    # =============================================================================
    # Profiles & Bounded Contexts
    # =============================================================================

    switch_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for a profile switch before ConcurrentSwitch/StorageUnavailable is surfaced",
        validation_alias="SWITCH_MAX_ATTEMPTS"
    )

    default_unlock_seconds: int = Field(
        default=3600,  # 1 hour
        gt=0,
        description="Default unlock window duration",
        validation_alias="DEFAULT_UNLOCK_SECONDS"
    )

    max_complexity: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound (kappa) for a bounded context's complexity score",
        validation_alias="MAX_COMPLEXITY"
    )

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =============================================================================
    # Field Validators
    # =============================================================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is one the logging module knows."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Convert postgres:// to postgresql:// (Heroku compatibility)."""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @model_validator(mode="after")
    def validate_chunk_limits(self):
        """Chunks must fit inside a document."""
        if self.chunk_max_bytes > self.document_max_bytes:
            raise ValueError(
                f"chunk_max_bytes ({self.chunk_max_bytes}) cannot exceed "
                f"document_max_bytes ({self.document_max_bytes})"
            )
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()


def get_settings() -> Settings:
    """Get settings instance (for dependency injection)."""
    return settings


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the root logger."""
    level = level or settings.log_level
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # basicConfig is a no-op once handlers exist
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))
