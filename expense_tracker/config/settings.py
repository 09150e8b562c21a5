"""
Configuration Management for the Expense Tracker

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable (storage location, backup cadence, CSV labels, quick-expense
rules) is visible in one place and validated at startup.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Labels written by the original mobile app; always accepted when importing.
LEGACY_TRANSACTION_LABELS = {
    "支出": "expense",
    "收入": "income",
    "不计入": "excluded",
}


class StorageSettings(BaseSettings):
    """Entity store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: str = Field(
        default="sqlite",
        pattern="^(sqlite|memory)$",
        description="Which entity store to open"
    )
    database_path: str = Field(
        default="expense_tracker.db",
        description="SQLite database file (':memory:' for a throwaway database)"
    )
    connect_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="How many times to try opening the database before falling back"
    )


class BackupSettings(BaseSettings):
    """Backup and auto-backup configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    directory: str = Field(
        default="backups",
        description="Directory backup files are written to"
    )
    interval_days: int = Field(
        default=0,
        description="Auto-backup interval in days (0 disables auto-backup)"
    )
    check_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="How often the scheduler checks whether a backup is due"
    )
    enabled: bool = Field(
        default=True,
        description="Master switch for the auto-backup scheduler"
    )

    @field_validator("interval_days")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v not in (0, 1, 3, 7):
            raise ValueError("interval_days must be one of 0, 1, 3 or 7")
        return v

    @property
    def directory_path(self) -> Path:
        return Path(self.directory)


class ImportSettings(BaseSettings):
    """Labels used for the transaction-type column of CSV files."""

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_IMPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    expense_label: str = Field(default="expense")
    income_label: str = Field(default="income")
    excluded_label: str = Field(default="excluded")

    @property
    def export_labels(self) -> dict[str, str]:
        """Transaction type value -> label written on export."""
        return {
            "expense": self.expense_label,
            "income": self.income_label,
            "excluded": self.excluded_label,
        }

    @property
    def import_labels(self) -> dict[str, str]:
        """Every accepted label -> transaction type value."""
        labels = dict(LEGACY_TRANSACTION_LABELS)
        labels.update({label: value for value, label in self.export_labels.items()})
        return labels


class QuickExpenseSettings(BaseSettings):
    """Payment-method auto-selection rules for quick expenses."""

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_QUICK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    cash_threshold: str = Field(
        default="100",
        description="Amounts below this go to a cash-like method, others to credit"
    )
    cash_keywords: str = Field(
        default="cash,wallet,现金",
        description="Comma-separated name fragments that mark a savings method as cash-like"
    )
    category_overrides: str = Field(
        default="",
        description="Comma-separated category:keyword pairs, e.g. 'transport:metro card'"
    )

    @property
    def cash_keywords_list(self) -> list[str]:
        return [kw.strip().lower() for kw in self.cash_keywords.split(",") if kw.strip()]

    @property
    def category_override_pairs(self) -> list[tuple[str, str]]:
        """Ordered (category fragment, payment-method fragment) pairs."""
        pairs = []
        for item in self.category_overrides.split(","):
            if ":" not in item:
                continue
            category, keyword = item.split(":", 1)
            if category.strip() and keyword.strip():
                pairs.append((category.strip().lower(), keyword.strip().lower()))
        return pairs


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

    # Environment
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
        description="Root log level for the structured logger"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
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

    # Sub-settings are loaded lazily so one bad section doesn't hide the rest

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def backup(self) -> BackupSettings:
        return BackupSettings()

    @property
    def importing(self) -> ImportSettings:
        return ImportSettings()

    @property
    def quick_expense(self) -> QuickExpenseSettings:
        return QuickExpenseSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("storage", "backup", "importing", "quick_expense", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
