"""
JSON Snapshot Codec

Full-store backups share one envelope with the original mobile app:

    {
      "version": "1.0",
      "timestamp": "...",
      "data": {
        "bills": [...],
        "categories": [...],
        "owners": [...],
        "paymentMethods": [...]
      }
    }

Field names inside `data` are camelCase. Decimals are written as strings
and read from either strings or JSON numbers without a float round trip.

DESIGN DECISION: Decoding validates the whole document before anything is
returned. A restore never starts from a half-parsed backup.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import Field, ValidationError

from expense_tracker.ledger.errors import LedgerError
from expense_tracker.models.entities import (
    Bill,
    Category,
    LedgerModel,
    Owner,
    PaymentMethod,
    utcnow,
)


SNAPSHOT_VERSION = "1.0"


class BackupFormatError(LedgerError):
    """The document is not a usable backup envelope."""
    pass


class SnapshotData(LedgerModel):
    bills: list[Bill] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    owners: list[Owner] = Field(default_factory=list)
    payment_methods: list[PaymentMethod] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "bills": len(self.bills),
            "categories": len(self.categories),
            "owners": len(self.owners),
            "payment_methods": len(self.payment_methods),
        }


class BackupEnvelope(LedgerModel):
    version: str = SNAPSHOT_VERSION
    timestamp: datetime = Field(default_factory=utcnow)
    data: SnapshotData = Field(default_factory=SnapshotData)


def encode_snapshot(envelope: BackupEnvelope) -> str:
    """Serialize an envelope as indented JSON."""
    return envelope.model_dump_json(by_alias=True, indent=2)


def decode_snapshot(text: str) -> BackupEnvelope:
    """
    Parse and validate a backup document.

    Missing arrays inside `data` are treated as empty.

    Raises:
        BackupFormatError: Not JSON, missing version or data, unsupported
            version, or any entity failing validation
    """
    try:
        document: Any = json.loads(text, parse_float=str)
    except json.JSONDecodeError as e:
        raise BackupFormatError(f"Backup is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise BackupFormatError("Backup must be a JSON object")
    if "version" not in document:
        raise BackupFormatError("Backup is missing 'version'")
    if not isinstance(document.get("data"), dict):
        raise BackupFormatError("Backup is missing 'data'")
    if str(document["version"]) != SNAPSHOT_VERSION:
        raise BackupFormatError(f"Unsupported backup version: {document['version']}")

    try:
        return BackupEnvelope.model_validate(document)
    except ValidationError as e:
        raise BackupFormatError(f"Backup contents are invalid: {e}") from e
