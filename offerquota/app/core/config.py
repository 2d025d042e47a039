import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma/space separated values from env files.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "offerquota"
    db_password: str = "offerquota"
    db_name: str = "offerquota"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300  # Recycle every 5 minutes
    db_pool_pre_ping: bool = True
    db_command_timeout: float = 30.0

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

    # Plan limits (offers per calendar month, None = unlimited)
    free_monthly_limit: int = 3
    standard_monthly_limit: int = 10
    pro_monthly_limit: int | None = None
    free_device_limit: int = 3  # Per-device sub-limit on the free plan

    # Users that are never limited (support and demo accounts)
    unlimited_user_ids: Annotated[list[str], NoDecode] = []

    # How long a "procedure missing" verdict is trusted before probing again
    usage_capability_ttl_seconds: float = 300.0
    # Multi-step fallback when the atomic procedures are not installed.
    # Race-prone under concurrency; production sets this to False.
    usage_allow_fallback: bool = True

    # Rollback retry policy (100ms, 200ms, 400ms by default)
    rollback_max_retries: int = 3
    rollback_base_delay: float = 0.1
    rollback_max_delay: float = 1.0

    # Caller-side timeout wrapped around each allocation decision
    usage_request_timeout: float = 5.0

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("unlimited_user_ids", "cors_origins", mode="before")
    @classmethod
    def decode_list(cls, v: Any) -> list[str]:
        return _parse_list(v)

    @field_validator(
        "free_monthly_limit",
        "standard_monthly_limit",
        "pro_monthly_limit",
        "free_device_limit",
    )
    @classmethod
    def validate_limit_positive(cls, v: int | None) -> int | None:
        """Validate finite plan limits are positive."""
        if v is not None and v < 1:
            raise ValueError("plan limits must be at least 1 (use null for unlimited)")
        return v

    @field_validator("rollback_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        """Validate retry count is not negative."""
        if v < 0:
            raise ValueError("rollback_max_retries must not be negative")
        return v

    @field_validator(
        "rollback_base_delay",
        "rollback_max_delay",
        "usage_request_timeout",
        "usage_capability_ttl_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate delays and timeouts are positive."""
        if v <= 0:
            raise ValueError("delays and timeouts must be positive")
        return v

    @field_validator("db_pool_size", "db_max_overflow")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool_size is positive."""
        if v < 1:
            raise ValueError("pool size values must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
