"""
Tests for snapshots, restore, CSV export and the auto-backup scheduler.
"""

import asyncio
import json
import pytest
from datetime import datetime
from decimal import Decimal

from expense_tracker.audit import AuditLogger
from expense_tracker.codec.snapshot import (
    SNAPSHOT_VERSION,
    BackupEnvelope,
    decode_snapshot,
    encode_snapshot,
)
from expense_tracker.codec.csv_codec import BOM, CSV_HEADER
from expense_tracker.config import BackupSettings
from expense_tracker.ledger import LedgerEngine
from expense_tracker.models.audit import AuditEventType
from expense_tracker.models.entities import Owner, TransactionType
from expense_tracker.models.reports import BillFilter, LedgerChangeKind
from expense_tracker.services.backup import (
    BackupFormatError,
    BackupScheduler,
    BackupService,
    backup_file_name,
    parse_backup_file_name,
)
from expense_tracker.services.storage import InMemoryEntityStore, SQLiteEntityStore


@pytest.fixture
def backups(engine, backup_settings, import_settings, audit_logger):
    return BackupService(
        engine,
        settings=backup_settings,
        import_settings=import_settings,
        audit_logger=audit_logger,
    )


async def event_types(store):
    return [e.event_type for e in await store.get_recent_events()]


class TestSnapshotCodec:
    """Tests for the backup document format."""

    def test_encode_decode(self):
        """An empty envelope decodes back to the same version and counts."""
        envelope = BackupEnvelope()
        decoded = decode_snapshot(encode_snapshot(envelope))
        assert decoded.version == SNAPSHOT_VERSION
        assert decoded.data.counts() == {
            "bills": 0, "categories": 0, "owners": 0, "payment_methods": 0
        }

    def test_missing_arrays_are_empty(self):
        """A data object without collections is an empty backup."""
        decoded = decode_snapshot(json.dumps({"version": SNAPSHOT_VERSION, "data": {}}))
        assert decoded.data.bills == []

    @pytest.mark.parametrize(
        "text, message",
        [
            ("{not json", "not valid JSON"),
            ("[]", "JSON object"),
            (json.dumps({"data": {}}), "missing 'version'"),
            (json.dumps({"version": SNAPSHOT_VERSION}), "missing 'data'"),
            (json.dumps({"version": "9.9", "data": {}}), "Unsupported backup version"),
            (
                json.dumps({"version": SNAPSHOT_VERSION, "data": {"owners": [{"id": "x"}]}}),
                "invalid",
            ),
        ],
    )
    def test_rejects_bad_documents(self, text, message):
        """Every malformed document raises BackupFormatError."""
        with pytest.raises(BackupFormatError, match=message):
            decode_snapshot(text)

    def test_backup_file_names(self):
        """File names encode local time to the second."""
        moment = datetime(2024, 3, 10, 8, 5, 9)
        name = backup_file_name(moment)
        assert name == "bills_backup_20240310_080509.json"
        assert parse_backup_file_name(name) == moment
        assert parse_backup_file_name("notes.json") is None


class TestBackupService:
    """Tests for writing and restoring backups."""

    @pytest.mark.asyncio
    async def test_restore_into_fresh_store(self, backups, backup_settings, engine, seeded, make_draft):
        """A restored store has the same entities and balances."""
        await engine.record_bill(make_draft(15))
        await engine.record_bill(make_draft(200, method=seeded.card))
        text = await backups.export_json()

        target = InMemoryEntityStore()
        target_audit = AuditLogger(target)
        target_engine = LedgerEngine(target, audit_logger=target_audit)
        changes = []
        target_engine.subscribe(changes.append)
        restorer = BackupService(target_engine, settings=backup_settings, audit_logger=target_audit)

        counts = await restorer.restore(text)
        assert counts == {"bills": 2, "categories": 4, "owners": 1, "payment_methods": 2}
        assert (await target.get_payment_method(seeded.cash.id)).balance == Decimal("985")
        card = await target.get_payment_method(seeded.card.id)
        assert card.outstanding_balance == Decimal("200")
        assert [c.kind for c in changes] == [LedgerChangeKind.DATA_RESTORED]
        assert AuditEventType.RESTORE_COMPLETED in await event_types(target)

    @pytest.mark.asyncio
    async def test_restore_replaces_existing_data(self, backups, store, seeded):
        """Restore clears what was there before."""
        await backups.restore(encode_snapshot(BackupEnvelope()))
        assert await store.is_empty()

    @pytest.mark.asyncio
    async def test_bad_restore_leaves_data_untouched(self, backups, store, seeded):
        """A rejected document changes nothing and is audited."""
        with pytest.raises(BackupFormatError):
            await backups.restore(json.dumps({"version": "2.0", "data": {}}))
        assert [o.name for o in await store.list_owners()] == ["Alice"]
        assert (await event_types(store))[0] == AuditEventType.RESTORE_FAILED

    @pytest.mark.asyncio
    async def test_write_backup(self, backups, store, seeded, backup_settings):
        """A backup file is written and becomes the newest backup."""
        assert backups.last_backup_time() is None
        path = await backups.write_backup()

        assert path.parent == backup_settings.directory_path
        assert parse_backup_file_name(path.name) is not None
        assert backups.list_backups() == [path]
        assert backups.last_backup_time() == parse_backup_file_name(path.name)
        restored = decode_snapshot(path.read_text(encoding="utf-8"))
        assert restored.data.counts()["owners"] == 1
        assert (await event_types(store))[0] == AuditEventType.BACKUP_CREATED

    @pytest.mark.asyncio
    async def test_list_backups_newest_first(self, backups, backup_settings):
        """Other files are ignored and backups are sorted by their timestamp."""
        directory = backup_settings.directory_path
        directory.mkdir(parents=True)
        older = directory / backup_file_name(datetime(2024, 1, 1, 9, 0, 0))
        newer = directory / backup_file_name(datetime(2024, 2, 1, 9, 0, 0))
        for path in (newer, older):
            path.write_text("{}", encoding="utf-8")
        (directory / "readme.txt").write_text("x", encoding="utf-8")

        assert backups.list_backups() == [newer, older]
        assert backups.last_backup_time() == datetime(2024, 2, 1, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_write_failure_is_audited(self, engine, store, audit_logger, tmp_path):
        """An unwritable directory raises OSError after logging backup_failed."""
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        service = BackupService(
            engine,
            settings=BackupSettings(directory=str(blocker / "backups")),
            audit_logger=audit_logger,
        )
        with pytest.raises(OSError):
            await service.write_backup()
        assert (await event_types(store))[0] == AuditEventType.BACKUP_FAILED

    @pytest.mark.asyncio
    async def test_export_csv(self, backups, store, engine, seeded, make_draft):
        """Filtered bills are exported with the BOM and header."""
        await engine.record_bill(make_draft(15))
        await engine.record_bill(make_draft(
            3000, transaction_type=TransactionType.INCOME, categories=[seeded.salary]
        ))
        text = await backups.export_csv(BillFilter(transaction_types=[TransactionType.EXPENSE]))

        assert text.startswith(BOM)
        lines = text[len(BOM):].strip().splitlines()
        assert lines[0] == ",".join(f'"{name}"' for name in CSV_HEADER)
        assert len(lines) == 2
        assert (await event_types(store))[0] == AuditEventType.EXPORT_COMPLETED


class TestSnapshotReads:
    """Backups and exports read without taking the writer's transaction."""

    @pytest.mark.asyncio
    async def test_snapshot_and_export_open_no_write_transaction(self, ledger, backup_settings, monkeypatch):
        """Only read scopes are opened while snapshotting and exporting."""
        store = ledger.store
        calls = []
        begin, begin_read = store._begin, store._begin_read

        async def spy_begin():
            calls.append("write")
            await begin()

        async def spy_begin_read():
            calls.append("read")
            await begin_read()

        monkeypatch.setattr(store, "_begin", spy_begin)
        monkeypatch.setattr(store, "_begin_read", spy_begin_read)

        service = BackupService(ledger.engine, settings=backup_settings)
        envelope = await service.create_snapshot()
        assert envelope.data.counts()["payment_methods"] == 2
        assert calls == ["read"]

        calls.clear()
        await service.export_csv()
        assert calls == ["read"]

    @pytest.mark.asyncio
    async def test_other_connection_can_write_during_snapshot(self, tmp_path):
        """A second SQLite connection commits while a snapshot is open."""
        path = str(tmp_path / "shared.db")
        reader = SQLiteEntityStore(path, connect_attempts=1)
        writer = SQLiteEntityStore(path, connect_attempts=1)
        await reader.connect()
        await writer.connect()
        try:
            await reader.save_owner(Owner(name="Alice"))
            async with reader.read_snapshot():
                assert [o.name for o in await reader.list_owners()] == ["Alice"]
                await writer.save_owner(Owner(name="Bob"))
                # the snapshot keeps its view
                assert [o.name for o in await reader.list_owners()] == ["Alice"]
            assert {o.name for o in await reader.list_owners()} == {"Alice", "Bob"}
        finally:
            await reader.close()
            await writer.close()


class TestBackupScheduler:
    """Tests for the auto-backup loop."""

    def test_disabled_interval(self, backups, tmp_path):
        """An interval of 0 never backs up."""
        scheduler = BackupScheduler(
            backups, settings=BackupSettings(directory=str(tmp_path), interval_days=0)
        )
        assert not scheduler.should_backup()

    def test_master_switch(self, backups, tmp_path):
        """enabled=False wins over the interval."""
        scheduler = BackupScheduler(
            backups,
            settings=BackupSettings(directory=str(tmp_path), interval_days=1, enabled=False),
        )
        assert not scheduler.should_backup()

    def test_interval_elapsed(self, backups, backup_settings):
        """Due with no backup, then again once a full day has passed."""
        scheduler = BackupScheduler(backups, settings=backup_settings)
        assert scheduler.should_backup()

        directory = backup_settings.directory_path
        directory.mkdir(parents=True)
        (directory / backup_file_name(datetime(2024, 3, 10, 8, 0, 0))).write_text("{}")
        assert not scheduler.should_backup(now=datetime(2024, 3, 11, 7, 59, 59))
        assert scheduler.should_backup(now=datetime(2024, 3, 11, 8, 0, 0))

    @pytest.mark.asyncio
    async def test_perform_auto_backup(self, backups, backup_settings, seeded):
        """The first run writes a backup, the second finds it fresh."""
        scheduler = BackupScheduler(backups, settings=backup_settings)
        assert await scheduler.perform_auto_backup()
        assert len(backups.list_backups()) == 1
        assert not await scheduler.perform_auto_backup()

    @pytest.mark.asyncio
    async def test_perform_auto_backup_swallows_write_errors(self, engine, audit_logger, tmp_path):
        """A failing write is reported as False."""
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        settings = BackupSettings(directory=str(blocker / "backups"), interval_days=1)
        service = BackupService(engine, settings=settings, audit_logger=audit_logger)
        scheduler = BackupScheduler(service, settings=settings, audit_logger=audit_logger)
        assert not await scheduler.perform_auto_backup()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, backups, backup_settings):
        """The loop runs as a task until stopped."""
        scheduler = BackupScheduler(backups, settings=backup_settings)
        scheduler.start()
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0)
        await scheduler.stop()
        assert not scheduler.running


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
