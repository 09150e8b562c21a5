"""
Audit Logger

DESIGN DECISION: Every balance-moving action in the system is logged.
This provides:
1. Complete traceability of every balance
2. Debugging capability when an import or restore misbehaves
3. User can see history of their changes

The audit logger:
- Is async so it fits the ledger's call flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events (e.g. one import)
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from expense_tracker.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from expense_tracker.services.storage import AuditStorageInterface


_configured = False


def configure_logging(level: str = "INFO") -> None:
    """
    Configure structlog for JSON output through the stdlib logging module.

    Safe to call more than once; only the first call configures.
    """
    global _configured
    if _configured:
        return

    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False)
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The store's audit collection (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("expense_tracker.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # audit persistence must never break the ledger
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_bill_recorded(
        self,
        bill_id: UUID,
        payment_method_id: UUID,
        amount: str,
        transaction_type: str,
        balance_delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a newly recorded bill."""
        await self.log(AuditEventBuilder.bill_recorded(
            bill_id=bill_id,
            payment_method_id=payment_method_id,
            amount=amount,
            transaction_type=transaction_type,
            balance_delta=balance_delta,
            correlation_id=correlation_id,
        ))

    async def log_bill_amended(
        self,
        bill_id: UUID,
        changed_fields: list[str],
        balance_touched: bool,
    ) -> None:
        """Log a bill amendment."""
        await self.log(AuditEventBuilder.bill_amended(
            bill_id=bill_id,
            changed_fields=changed_fields,
            balance_touched=balance_touched,
        ))

    async def log_bill_removed(
        self,
        bill_id: UUID,
        payment_method_id: UUID,
        balance_delta: str,
    ) -> None:
        """Log a bill removal."""
        await self.log(AuditEventBuilder.bill_removed(
            bill_id=bill_id,
            payment_method_id=payment_method_id,
            balance_delta=balance_delta,
        ))

    async def log_bill_operation_failed(
        self,
        operation: str,
        error_message: str,
        bill_id: Optional[UUID] = None,
    ) -> None:
        """Log a rolled-back bill operation."""
        await self.log(AuditEventBuilder.bill_operation_failed(
            operation=operation,
            error_message=error_message,
            bill_id=bill_id,
        ))

    async def log_import_started(self, row_count: int, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.import_started(
            row_count=row_count,
            correlation_id=correlation_id,
        ))

    async def log_import_row_failed(
        self,
        line_number: int,
        issues: list[dict],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.import_row_failed(
            line_number=line_number,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_entity_auto_created(
        self,
        entity_type: str,
        entity_id: UUID,
        name: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.entity_auto_created(
            entity_type=entity_type,
            entity_id=entity_id,
            name=name,
            correlation_id=correlation_id,
        ))

    async def log_import_completed(
        self,
        success: int,
        failed: int,
        skipped: int,
        cancelled: bool,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.import_completed(
            success=success,
            failed=failed,
            skipped=skipped,
            cancelled=cancelled,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a multi-step action (e.g., a CSV import).
    Pass it through all subsequent operations.
    """
    return uuid4()
