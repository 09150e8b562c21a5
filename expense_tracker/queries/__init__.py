"""Query execution package."""

from expense_tracker.queries.aggregator import aggregate
from expense_tracker.queries.executor import QueryExecutor

__all__ = ["QueryExecutor", "aggregate"]
