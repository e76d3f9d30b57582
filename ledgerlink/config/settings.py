"""
Configuration Management for ledgerlink

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: Runtime configuration (API endpoint, cache quota, matching
tolerances) lives here. The household configuration (which ledgers belong to
which participant) is user data and is persisted by the cache store instead.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerApiSettings(BaseSettings):
    """Remote ledger service configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_API_",
        extra="ignore"
    )

    base_url: str = Field(
        default="https://api.ynab.com/v1",
        description="Base URL of the remote ledger REST API"
    )
    token: Optional[str] = Field(
        default=None,
        description="Personal access token (falls back to the stored credential)"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout per request"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for idempotent reads before giving up"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class CacheSettings(BaseSettings):
    """Two-tier cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_CACHE_",
        extra="ignore"
    )

    directory: str = Field(
        default=".ledgerlink-cache",
        description="Directory holding the persistent cache namespaces"
    )
    quota_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1024,
        description="Total bytes the persistent cache may occupy"
    )
    memory_ttl_seconds: int = Field(
        default=10 * 60,
        ge=0,
        description="Freshness window of the in-process transaction cache"
    )
    month_ttl_seconds: int = Field(
        default=5 * 60,
        ge=0,
        description="Freshness window of cached month (category budget) data"
    )
    ledger_list_ttl_seconds: int = Field(
        default=5 * 60,
        ge=0,
        description="Freshness window of the cached ledger list"
    )
    ledger_detail_ttl_seconds: int = Field(
        default=2 * 60,
        ge=0,
        description="Freshness window of cached ledger details"
    )
    default_history_years: int = Field(
        default=2,
        ge=1,
        le=20,
        description="How far back transactions are fetched when no floor is given"
    )

    @property
    def directory_path(self) -> Path:
        return Path(self.directory).expanduser()


class ReconciliationSettings(BaseSettings):
    """Match-scoring thresholds."""

    model_config = SettingsConfigDict(
        env_prefix="RECONCILE_",
        extra="ignore"
    )

    match_amount_tolerance: int = Field(
        default=100,
        ge=0,
        description="Maximum amount difference in milliunits (exclusive)"
    )
    match_max_days: int = Field(
        default=7,
        ge=0,
        description="Maximum date distance in days (inclusive)"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for structured logs"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger_api(self) -> LedgerApiSettings:
        return LedgerApiSettings()

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

    @property
    def reconciliation(self) -> ReconciliationSettings:
        return ReconciliationSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings(settings: Optional[Settings] = None) -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus a
    "<name>_error" entry for every section that failed to load.
    """
    results = {}
    settings = settings or get_settings()

    for name in ("ledger_api", "cache", "reconciliation", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
