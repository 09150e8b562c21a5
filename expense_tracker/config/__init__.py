"""Configuration package."""

from expense_tracker.config.settings import (
    LEGACY_TRANSACTION_LABELS,
    AppSettings,
    BackupSettings,
    ImportSettings,
    QuickExpenseSettings,
    Settings,
    StorageSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "LEGACY_TRANSACTION_LABELS",
    "AppSettings",
    "BackupSettings",
    "ImportSettings",
    "QuickExpenseSettings",
    "Settings",
    "StorageSettings",
    "get_settings",
    "validate_all_settings",
]
