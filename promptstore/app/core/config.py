from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # prod | demo. Demo traffic gets its own rate-limit namespace.
    deployment_mode: Literal["prod", "demo"] = "prod"

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "promptstore"
    db_password: str = "promptstore"
    db_name: str = "promptstore"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True
    db_command_timeout: float = 30.0

    # Create tables on startup (development only)
    db_auto_create: bool = False

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional, shares rate-limit windows across processes)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Rate limiting settings
    rate_limit_fail_closed: bool = True  # Deny requests when Redis is unavailable
    rate_limit_max_entries: int = 10000  # In-memory bucket cap (LRU eviction)

    # Bulk delete settings
    bulk_delete_max_batch: int = 500
    bulk_delete_rate_limit: int = 10
    bulk_delete_rate_window_ms: int = 60_000

    # Blob cleanup fan-out
    blob_delete_concurrency: int = 16
    blob_delete_timeout: float = 10.0  # Per-object timeout in seconds

    # Object storage (S3-compatible)
    use_in_memory_backends: bool = False
    s3_bucket: str = ""
    s3_region: str = ""
    s3_endpoint_url: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    s3_connect_timeout: float = 5.0
    s3_read_timeout: float = 10.0

    # Token for metrics and maintenance endpoints
    admin_token: str = ""

    @field_validator(
        "bulk_delete_max_batch",
        "bulk_delete_rate_limit",
        "bulk_delete_rate_window_ms",
        "blob_delete_concurrency",
        "rate_limit_max_entries",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate limits and sizes are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("blob_delete_timeout", "s3_connect_timeout", "s3_read_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("db_pool_size", "db_max_overflow")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("pool size values must be at least 1")
        return v

    @field_validator("admin_token")
    @classmethod
    def strip_admin_token(cls, v: str) -> str:
        # Secret stores often leave a trailing newline.
        return v.strip()

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
