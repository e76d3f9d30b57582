"""Configuration package."""

from ledgerlink.config.settings import (
    AppSettings,
    CacheSettings,
    LedgerApiSettings,
    ReconciliationSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CacheSettings",
    "LedgerApiSettings",
    "ReconciliationSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
