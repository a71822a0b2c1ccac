"""
Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files
with validation and type conversion.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_DSN_PREFIXES = (
    "postgresql://",
    "postgresql+psycopg://",
    "postgres://",
    "sqlite://",
)


class Settings(BaseSettings):
    """
    Batch upsert engine settings loaded from environment variables and .env files.

    Settings are loaded in this order of precedence:
    1. Environment variables
    2. .env file in current directory
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database Configuration
    db_dsn: Optional[str] = Field(
        default=None,
        description="Database connection string (PostgreSQL or SQLite URL)"
    )

    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Database connection pool size"
    )

    # Routing Configuration
    default_table: Optional[str] = Field(
        default=None,
        description="Table targeted when a call does not pass a table name"
    )

    allowed_tables: List[str] = Field(
        default_factory=list,
        description="Allow-list of table names callers may route to (JSON array)"
    )

    table_defaults: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Insert-time field defaults per table (JSON object)"
    )

    id_column: str = Field(
        default="id",
        description="Identifier column shared by routed tables"
    )

    # Write Behaviour
    lock_timeout_ms: int = Field(
        default=5000,
        ge=1,
        le=600000,
        description="Maximum time to wait for a row lock, in milliseconds"
    )

    max_batch_size: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum number of entries accepted per call (unbounded if unset)"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json, text)"
    )

    # Service-specific Configuration
    service_name: str = Field(
        default="lobbyleaks-batch-upsert",
        description="Service name for logging and monitoring"
    )

    environment: str = Field(
        default="development",
        description="Environment name (development, staging, production)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "text"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name."""
        valid_envs = {"development", "staging", "production"}
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of: {', '.join(valid_envs)}")
        return v.lower()

    @field_validator("db_dsn")
    @classmethod
    def validate_db_dsn(cls, v):
        """Validate database DSN format if provided."""
        if v is None:
            return v

        v = v.strip()
        if not v:
            return None

        if not v.startswith(SUPPORTED_DSN_PREFIXES):
            raise ValueError("db_dsn must be a PostgreSQL or SQLite connection string")

        return v

    @field_validator("id_column")
    @classmethod
    def validate_id_column(cls, v):
        """Validate identifier column is not empty."""
        if not v or not v.strip():
            raise ValueError("id_column cannot be empty")
        return v.strip()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-reading configuration files
    on every function call.

    Returns:
        Settings instance with loaded configuration
    """
    return Settings()


# Convenience function to get settings
def settings() -> Settings:
    """Get application settings."""
    return get_settings()
