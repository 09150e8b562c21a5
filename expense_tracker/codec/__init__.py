"""Import/export codecs: CSV for spreadsheets, JSON for full backups."""

from expense_tracker.codec.csv_codec import (
    CSV_HEADER,
    RawRow,
    decode_bytes,
    decode_rows,
    encode_bills,
    export_amount,
)
from expense_tracker.codec.snapshot import (
    SNAPSHOT_VERSION,
    BackupEnvelope,
    BackupFormatError,
    SnapshotData,
    decode_snapshot,
    encode_snapshot,
)

__all__ = [
    "CSV_HEADER",
    "RawRow",
    "decode_bytes",
    "decode_rows",
    "encode_bills",
    "export_amount",
    "SNAPSHOT_VERSION",
    "BackupEnvelope",
    "BackupFormatError",
    "SnapshotData",
    "decode_snapshot",
    "encode_snapshot",
]
