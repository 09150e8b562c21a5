"""
Entity store factory.

Opens the configured backend. If persistent storage can't be opened the
app keeps working on an in-memory store; the caller is told so through
`StoreHandle.degraded` and an audit event is recorded.
"""

from dataclasses import dataclass
from typing import Optional, Union

import structlog

from expense_tracker.config import StorageSettings, get_settings
from expense_tracker.models.audit import AuditEventBuilder
from expense_tracker.services.storage.interface import StorageUnavailableError
from expense_tracker.services.storage.memory import InMemoryEntityStore
from expense_tracker.services.storage.sqlite import SQLiteEntityStore


logger = structlog.get_logger(__name__)


@dataclass
class StoreHandle:
    """The opened store and how it was obtained."""
    store: Union[SQLiteEntityStore, InMemoryEntityStore]
    backend: str
    degraded: bool = False
    error_message: Optional[str] = None


async def open_entity_store(settings: Optional[StorageSettings] = None) -> StoreHandle:
    """
    Open the entity store described by the settings.

    Falls back to InMemoryEntityStore when SQLite is unavailable.
    Never raises for an unavailable backend.
    """
    settings = settings or get_settings().storage

    if settings.backend == "memory":
        return StoreHandle(store=InMemoryEntityStore(), backend="memory")

    store = SQLiteEntityStore(
        settings.database_path,
        connect_attempts=settings.connect_attempts,
    )
    try:
        await store.connect()
    except StorageUnavailableError as e:
        fallback = InMemoryEntityStore()
        event = AuditEventBuilder.storage_fallback(backend="sqlite", error_message=str(e))
        logger.warning("audit_event", **event.to_log_dict())
        await fallback.append_event(event)
        return StoreHandle(
            store=fallback,
            backend="memory",
            degraded=True,
            error_message=str(e),
        )

    return StoreHandle(store=store, backend="sqlite")
