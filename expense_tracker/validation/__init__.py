"""Import row validation package."""

from expense_tracker.validation.validator import (
    CSV_COLUMN_COUNT,
    ImportRowValidator,
    split_category_names,
)

__all__ = ["CSV_COLUMN_COUNT", "ImportRowValidator", "split_category_names"]
