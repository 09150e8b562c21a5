"""
Audit Models for the Expense Tracker Ledger

Every balance-moving action in the system is logged for audit purposes.
This provides:
1. Complete traceability of every balance change
2. Debugging information when an import or restore goes wrong
3. A way to reconstruct how a balance reached its value

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from expense_tracker.models.entities import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every ledger operation and every data-replacing operation has its own type.
    """
    # Bill lifecycle
    BILL_RECORDED = "bill_recorded"
    BILL_AMENDED = "bill_amended"
    BILL_REMOVED = "bill_removed"
    BILL_OPERATION_FAILED = "bill_operation_failed"

    # Import / export
    IMPORT_STARTED = "import_started"
    IMPORT_ROW_FAILED = "import_row_failed"
    IMPORT_COMPLETED = "import_completed"
    ENTITY_AUTO_CREATED = "entity_auto_created"
    EXPORT_COMPLETED = "export_completed"

    # Backup / restore
    BACKUP_CREATED = "backup_created"
    BACKUP_FAILED = "backup_failed"
    RESTORE_COMPLETED = "restore_completed"
    RESTORE_FAILED = "restore_failed"

    # Catalog management
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_DELETED = "entity_deleted"
    DATA_INITIALIZED = "data_initialized"

    # Quick expense
    QUICK_EXPENSE_RECORDED = "quick_expense_recorded"

    # System events
    STORAGE_FALLBACK = "storage_fallback"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'bill', 'payment_method', 'backup')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all rows of one import)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_row(self) -> list:
        """
        Convert to a flat row for table storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]

    @classmethod
    def from_row(cls, row: list) -> "AuditEvent":
        """Inverse of to_row()."""
        def safe_get(index: int) -> str:
            try:
                return row[index] or ""
            except IndexError:
                return ""

        return cls(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=UUID(safe_get(5)) if safe_get(5) else None,
            correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
            description=safe_get(7),
            details=json.loads(safe_get(8)) if safe_get(8) else {},
            error_message=safe_get(9) or None,
            is_user_action=safe_get(10).lower() == "true",
        )


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.bill_recorded(bill_id, amount, ...)
        event = AuditEventBuilder.import_completed(result_counts, correlation_id)
    """

    @staticmethod
    def bill_recorded(
        bill_id: UUID,
        payment_method_id: UUID,
        amount: str,
        transaction_type: str,
        balance_delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BILL_RECORDED,
            entity_type="bill",
            entity_id=bill_id,
            correlation_id=correlation_id,
            description=f"Bill recorded: {transaction_type} {amount}",
            details={
                "payment_method_id": str(payment_method_id),
                "amount": amount,
                "transaction_type": transaction_type,
                "balance_delta": balance_delta,
            },
            is_user_action=True,
        )

    @staticmethod
    def bill_amended(
        bill_id: UUID,
        changed_fields: list[str],
        balance_touched: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BILL_AMENDED,
            entity_type="bill",
            entity_id=bill_id,
            correlation_id=correlation_id,
            description=f"Bill amended: {', '.join(changed_fields) or 'no fields'}",
            details={
                "changed_fields": changed_fields,
                "balance_touched": balance_touched,
            },
            is_user_action=True,
        )

    @staticmethod
    def bill_removed(
        bill_id: UUID,
        payment_method_id: UUID,
        balance_delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BILL_REMOVED,
            entity_type="bill",
            entity_id=bill_id,
            correlation_id=correlation_id,
            description="Bill removed and its balance contribution reverted",
            details={
                "payment_method_id": str(payment_method_id),
                "balance_delta": balance_delta,
            },
            is_user_action=True,
        )

    @staticmethod
    def bill_operation_failed(
        operation: str,
        error_message: str,
        bill_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BILL_OPERATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="bill",
            entity_id=bill_id,
            correlation_id=correlation_id,
            description=f"Bill {operation} failed and was rolled back",
            error_message=error_message,
            details={"operation": operation},
        )

    @staticmethod
    def import_started(
        row_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_STARTED,
            entity_type="import",
            correlation_id=correlation_id,
            description=f"Import started with {row_count} rows",
            details={"row_count": row_count},
            is_user_action=True,
        )

    @staticmethod
    def import_row_failed(
        line_number: int,
        issues: list[dict],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_ROW_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="import",
            correlation_id=correlation_id,
            description=f"Import row {line_number} rejected with {len(issues)} issues",
            details={
                "line_number": line_number,
                "issues": issues,
            },
        )

    @staticmethod
    def entity_auto_created(
        entity_type: str,
        entity_id: UUID,
        name: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTITY_AUTO_CREATED,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Created missing {entity_type} '{name}' during import",
            details={"name": name},
        )

    @staticmethod
    def import_completed(
        success: int,
        failed: int,
        skipped: int,
        cancelled: bool,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_COMPLETED,
            severity=AuditSeverity.WARNING if failed or cancelled else AuditSeverity.INFO,
            entity_type="import",
            correlation_id=correlation_id,
            description=(
                f"Import {'cancelled' if cancelled else 'completed'}: "
                f"{success} imported, {failed} failed, {skipped} skipped"
            ),
            details={
                "success": success,
                "failed": failed,
                "skipped": skipped,
                "cancelled": cancelled,
            },
        )

    @staticmethod
    def export_completed(
        bill_count: int,
        export_format: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPORT_COMPLETED,
            entity_type="export",
            description=f"Exported {bill_count} bills as {export_format}",
            details={"bill_count": bill_count, "format": export_format},
            is_user_action=True,
        )

    @staticmethod
    def backup_created(
        location: str,
        bill_count: int,
        automatic: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_CREATED,
            entity_type="backup",
            description=f"Backup written to {location}",
            details={
                "location": location,
                "bill_count": bill_count,
                "automatic": automatic,
            },
            is_user_action=not automatic,
        )

    @staticmethod
    def backup_failed(
        error_message: str,
        automatic: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="backup",
            description="Backup failed",
            error_message=error_message,
            details={"automatic": automatic},
        )

    @staticmethod
    def restore_completed(
        counts: dict[str, int],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_COMPLETED,
            severity=AuditSeverity.WARNING,
            entity_type="backup",
            description="All data replaced from backup",
            details=counts,
            is_user_action=True,
        )

    @staticmethod
    def restore_failed(
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="backup",
            description="Restore rejected; existing data left untouched",
            error_message=error_message,
        )

    @staticmethod
    def entity_changed(
        event_type: AuditEventType,
        entity_type: str,
        entity_id: UUID,
        name: str,
    ) -> AuditEvent:
        verb = {
            AuditEventType.ENTITY_CREATED: "created",
            AuditEventType.ENTITY_UPDATED: "updated",
            AuditEventType.ENTITY_DELETED: "deleted",
        }.get(event_type, "changed")
        return AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"{entity_type.replace('_', ' ').capitalize()} {verb}: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def data_initialized(
        counts: dict[str, int],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DATA_INITIALIZED,
            entity_type="store",
            description="Default owners, categories and payment methods created",
            details=counts,
            is_user_action=True,
        )

    @staticmethod
    def quick_expense_recorded(
        bill_id: UUID,
        label: str,
        payment_method_name: str,
        rule: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUICK_EXPENSE_RECORDED,
            entity_type="bill",
            entity_id=bill_id,
            description=f"Quick expense '{label}' charged to {payment_method_name}",
            details={
                "label": label,
                "payment_method": payment_method_name,
                "selection_rule": rule,
            },
            is_user_action=True,
        )

    @staticmethod
    def storage_fallback(
        backend: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_FALLBACK,
            severity=AuditSeverity.CRITICAL,
            entity_type="store",
            description=f"Storage backend '{backend}' unavailable; using in-memory store",
            error_message=error_message,
            details={"backend": backend},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
