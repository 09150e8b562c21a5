"""
Main Orchestrator for Expense Tracker

This module ties together all the components and defines the
end-to-end flows for:
1. Import (CSV bytes -> rows -> validate -> auto-create -> per-row commit)
2. Export (filter -> bills -> CSV text)
3. Backup / restore (whole store <-> JSON envelope)

DESIGN DECISION: Nothing outside the ledger engine writes bills.
Every flow here either reads, or hands its work to the engine (or to the
store's single-transaction replace for restore), so balances stay
consistent whichever screen triggered the change.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

import structlog

from expense_tracker.audit import AuditLogger, configure_logging
from expense_tracker.codec.csv_codec import decode_bytes, decode_rows
from expense_tracker.config import Settings, get_settings
from expense_tracker.ledger.engine import LedgerEngine, LedgerObserver
from expense_tracker.models.reports import ImportResult
from expense_tracker.queries import QueryExecutor
from expense_tracker.services.backup import BackupScheduler, BackupService
from expense_tracker.services.catalog import CatalogService
from expense_tracker.services.quick_expense import QuickExpenseService
from expense_tracker.services.storage import StoreHandle, open_entity_store


logger = structlog.get_logger(__name__)


@dataclass
class AppComponents:
    """Everything a front end needs, wired to one store."""
    handle: StoreHandle
    audit_logger: AuditLogger
    engine: LedgerEngine
    catalog: CatalogService
    queries: QueryExecutor
    quick_expense: QuickExpenseService
    backups: BackupService
    scheduler: BackupScheduler
    warnings: list[str] = field(default_factory=list)

    @property
    def store(self):
        return self.handle.store

    async def import_csv(
        self,
        content: Union[str, bytes],
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> ImportResult:
        """
        Import CSV text or an uploaded file's bytes.

        Row failures are reported in the result, not raised.
        """
        rows = decode_bytes(content) if isinstance(content, bytes) else decode_rows(content)
        return await self.engine.bulk_import(rows, should_cancel=should_cancel)

    async def close(self) -> None:
        """Stop the scheduler and release the store."""
        await self.scheduler.stop()
        await self.handle.store.close()


async def create_app_components(
    settings: Optional[Settings] = None,
    observers: Optional[Iterable[LedgerObserver]] = None,
    start_scheduler: bool = False,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Configuration; defaults to the cached settings
        observers: Ledger observers registered on the engine
        start_scheduler: Start the auto-backup loop on the running event loop

    Returns:
        AppComponents sharing one store and one audit logger
    """
    settings = settings or get_settings()
    configure_logging(settings.app.log_level)

    handle = await open_entity_store(settings.storage)
    warnings = []
    if handle.degraded:
        # Storage not available - continue in memory
        warnings.append(
            f"Persistent storage unavailable, changes will not be saved: {handle.error_message}"
        )

    audit_logger = AuditLogger(handle.store)
    engine = LedgerEngine(handle.store, audit_logger=audit_logger, observers=observers)
    backups = BackupService(
        engine,
        settings=settings.backup,
        import_settings=settings.importing,
        audit_logger=audit_logger,
    )
    scheduler = BackupScheduler(backups, settings=settings.backup, audit_logger=audit_logger)

    components = AppComponents(
        handle=handle,
        audit_logger=audit_logger,
        engine=engine,
        catalog=CatalogService(handle.store, audit_logger=audit_logger),
        queries=QueryExecutor(handle.store),
        quick_expense=QuickExpenseService(
            engine,
            settings=settings.quick_expense,
            audit_logger=audit_logger,
        ),
        backups=backups,
        scheduler=scheduler,
        warnings=warnings,
    )

    if start_scheduler:
        scheduler.start()

    logger.info(
        "app_components_created",
        backend=handle.backend,
        degraded=handle.degraded,
        auto_backup=scheduler.running,
    )
    return components
