"""
Backup Service

Full-store JSON snapshots, restore, CSV export and the auto-backup loop.

DESIGN DECISION: Restore is all-or-nothing. The document is decoded and
validated completely, then the store is cleared and refilled inside a
single transaction. A bad file leaves existing data untouched.

The auto-backup loop is an asyncio task that only reads the store. Its
failures are logged and reported as False, never raised.
"""

import asyncio
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from expense_tracker.audit.logger import AuditLogger
from expense_tracker.codec.csv_codec import encode_bills
from expense_tracker.codec.snapshot import (
    BackupEnvelope,
    BackupFormatError,
    SnapshotData,
    decode_snapshot,
    encode_snapshot,
)
from expense_tracker.config import BackupSettings, ImportSettings, get_settings
from expense_tracker.ledger.engine import LedgerEngine
from expense_tracker.models.audit import AuditEventBuilder
from expense_tracker.models.entities import utcnow
from expense_tracker.models.reports import BillFilter, LedgerChange, LedgerChangeKind


logger = structlog.get_logger(__name__)


BACKUP_FILE_PREFIX = "bills_backup_"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
_BACKUP_NAME = re.compile(r"^bills_backup_(\d{8}_\d{6})\.json$")


def backup_file_name(moment: datetime) -> str:
    return f"{BACKUP_FILE_PREFIX}{moment.strftime(BACKUP_TIMESTAMP_FORMAT)}.json"


def parse_backup_file_name(name: str) -> Optional[datetime]:
    """Timestamp encoded in a backup file name, or None for other files."""
    match = _BACKUP_NAME.match(name)
    if not match:
        return None
    return datetime.strptime(match.group(1), BACKUP_TIMESTAMP_FORMAT)


class BackupService:
    """
    Creates and restores backups of the whole store.

    Usage:
        backups = BackupService(engine)
        path = await backups.write_backup()
        counts = await backups.restore(path.read_text(encoding="utf-8"))
    """

    def __init__(
        self,
        engine: LedgerEngine,
        settings: Optional[BackupSettings] = None,
        import_settings: Optional[ImportSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._engine = engine
        self._store = engine.store
        self._settings = settings or get_settings().backup
        self._import_settings = import_settings or get_settings().importing
        self._audit = audit_logger or AuditLogger()

    @property
    def directory(self) -> Path:
        return self._settings.directory_path

    async def create_snapshot(self) -> BackupEnvelope:
        """Read every collection into one envelope."""
        async with self._store.read_snapshot():
            data = SnapshotData(
                bills=await self._store.list_bills(),
                categories=await self._store.list_categories(),
                owners=await self._store.list_owners(),
                payment_methods=await self._store.list_payment_methods(),
            )
        return BackupEnvelope(timestamp=utcnow(), data=data)

    async def export_json(self) -> str:
        return encode_snapshot(await self.create_snapshot())

    @retry(
        retry=retry_if_exception_type(OSError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        reraise=True,
    )
    def _write_file(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    async def write_backup(self, automatic: bool = False) -> Path:
        """
        Write a snapshot file into the backup directory.

        Returns:
            Path of the written file

        Raises:
            OSError: The file could not be written after retries
        """
        envelope = await self.create_snapshot()
        path = self.directory / backup_file_name(datetime.now())
        try:
            await asyncio.to_thread(self._write_file, path, encode_snapshot(envelope))
        except OSError as e:
            await self._audit.log(AuditEventBuilder.backup_failed(
                error_message=str(e),
                automatic=automatic,
            ))
            raise

        await self._audit.log(AuditEventBuilder.backup_created(
            location=str(path),
            bill_count=len(envelope.data.bills),
            automatic=automatic,
        ))
        return path

    def list_backups(self) -> list[Path]:
        """Backup files in the directory, newest first."""
        if not self.directory.is_dir():
            return []
        found = []
        for path in self.directory.iterdir():
            moment = parse_backup_file_name(path.name)
            if moment is not None:
                found.append((moment, path))
        return [path for _, path in sorted(found, reverse=True)]

    def last_backup_time(self) -> Optional[datetime]:
        """Local time of the newest backup file, if any."""
        backups = self.list_backups()
        if not backups:
            return None
        return parse_backup_file_name(backups[0].name)

    async def restore(self, text: str) -> dict[str, int]:
        """
        Replace all data with the contents of a backup document.

        Returns:
            Count of restored entities per collection

        Raises:
            BackupFormatError: The document is not a valid backup; nothing
                was changed
        """
        try:
            envelope = decode_snapshot(text)
        except BackupFormatError as e:
            await self._audit.log(AuditEventBuilder.restore_failed(error_message=str(e)))
            raise

        data = envelope.data
        try:
            await self._store.replace_all(
                owners=data.owners,
                categories=data.categories,
                payment_methods=data.payment_methods,
                bills=data.bills,
            )
        except Exception as e:
            await self._audit.log(AuditEventBuilder.restore_failed(error_message=str(e)))
            raise

        counts = data.counts()
        await self._audit.log(AuditEventBuilder.restore_completed(counts))
        await self._engine.notify(LedgerChange(
            kind=LedgerChangeKind.DATA_RESTORED,
            payment_method_ids=[pm.id for pm in data.payment_methods],
        ))
        return counts

    async def export_csv(self, bill_filter: Optional[BillFilter] = None) -> str:
        """Render (optionally filtered) bills as CSV text."""
        async with self._store.read_snapshot():
            bills = await self._store.list_bills(bill_filter)
            categories = await self._store.list_categories()
            owners = await self._store.list_owners()
            methods = await self._store.list_payment_methods()

        text = encode_bills(bills, categories, owners, methods, self._import_settings)
        await self._audit.log(AuditEventBuilder.export_completed(
            bill_count=len(bills),
            export_format="csv",
        ))
        return text


class BackupScheduler:
    """
    Periodically writes a backup when the configured interval has passed.

    Usage:
        scheduler = BackupScheduler(backups)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        backups: BackupService,
        settings: Optional[BackupSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._backups = backups
        self._settings = settings or get_settings().backup
        self._audit = audit_logger or AuditLogger()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def should_backup(self, now: Optional[datetime] = None) -> bool:
        """True when auto-backup is on and the interval has elapsed."""
        if not self._settings.enabled or self._settings.interval_days == 0:
            return False
        last = self._backups.last_backup_time()
        if last is None:
            return True
        now = now or datetime.now()
        return now - last >= timedelta(days=self._settings.interval_days)

    async def perform_auto_backup(self) -> bool:
        """
        Write a backup if one is due.

        Returns:
            True if a backup was written
        """
        try:
            if not self.should_backup():
                return False
            path = await self._backups.write_backup(automatic=True)
            logger.info("auto_backup_written", path=str(path))
            return True
        except OSError as e:
            # write_backup already recorded the failure
            logger.error("auto_backup_failed", error=str(e))
            return False
        except Exception as e:
            logger.error("auto_backup_failed", error=str(e))
            await self._audit.log(AuditEventBuilder.backup_failed(
                error_message=str(e),
                automatic=True,
            ))
            return False

    async def _run(self) -> None:
        while True:
            await self.perform_auto_backup()
            await asyncio.sleep(self._settings.check_interval_seconds)

    def start(self) -> None:
        """Start the loop on the running event loop; no-op if already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "auto_backup_started",
            interval_days=self._settings.interval_days,
            check_interval_seconds=self._settings.check_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("auto_backup_stopped")


__all__ = [
    "BACKUP_FILE_PREFIX",
    "BackupFormatError",
    "BackupScheduler",
    "BackupService",
    "backup_file_name",
    "parse_backup_file_name",
]
