"""
Query Execution Engine

DESIGN DECISION: Query execution is DETERMINISTIC.
A query is a BillFilter (or a date-range preset that becomes one). The
executor lists the matching bills from storage and aggregates exactly
those bills; it never estimates or caches.

GUARANTEES:
- Only returns real data from storage
- Statistics always describe the same bill set that is returned
- Clear "no data found" if nothing matches
"""

from datetime import date
from typing import Optional, Union

from expense_tracker.models.reports import (
    BillFilter,
    DateRangePreset,
    QueryResult,
)
from expense_tracker.queries.aggregator import aggregate
from expense_tracker.services.storage.interface import EntityStoreInterface


class QueryExecutor:
    """
    Executes bill queries against the entity store.

    Usage:
        executor = QueryExecutor(store)
        result = await executor.execute(DateRangePreset.THIS_MONTH)
        result.statistics.total_expense
    """

    def __init__(self, storage: EntityStoreInterface):
        self._storage = storage

    async def execute(
        self,
        query: Union[BillFilter, DateRangePreset, None] = None,
        today: Optional[date] = None,
    ) -> QueryResult:
        """
        Run a query and aggregate its bills.

        Args:
            query: A filter, a preset, or None for every bill
            today: Reference date for presets (defaults to today)

        Returns:
            QueryResult with bills newest first and their statistics
        """
        if isinstance(query, DateRangePreset):
            bill_filter = BillFilter.for_preset(query, today)
        else:
            bill_filter = query or BillFilter()

        bills = await self._storage.list_bills(bill_filter)
        statistics = aggregate(
            bills,
            await self._storage.list_categories(),
            await self._storage.list_owners(),
            await self._storage.list_payment_methods(),
        )

        description = bill_filter.describe()
        if not bills:
            description += " (no data found)"

        return QueryResult(
            bills=bills,
            statistics=statistics,
            query_description=description,
        )
