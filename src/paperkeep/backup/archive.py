"""
Archive format and result types shared by export and import.

Archive Layout:
    paperkeep-backup-<timestamp>.zip
        metadata.enc            # base64 ciphertext of the metadata JSON
        salt.txt                # key derivation salt, plain text
        attachments/
            {receipt_id}.{ext}  # one photo per receipt

Version 1.0.0 archives (the mobile app's format) name the photo directory
"images/" and use the keys "receipts"/"receiptCount" in the metadata. Both
spellings are accepted on import; only the current one is written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from paperkeep.security.crypto import DeviceKey, ExportPassword
from paperkeep.storage.models import Receipt, format_timestamp

FORMAT_VERSION = "2.0.0"
LEGACY_FORMAT_VERSION = "1.0.0"

METADATA_FILE = "metadata.enc"
SALT_FILE = "salt.txt"
ATTACHMENTS_DIR = "attachments"
LEGACY_ATTACHMENTS_DIR = "images"
REQUIRED_ENTRIES = (METADATA_FILE, SALT_FILE)

DEFAULT_ATTACHMENT_EXTENSION = ".jpg"


class ImportStrategy(str, Enum):
    """How to treat an archived receipt whose id already exists locally."""

    MERGE = "merge"
    REPLACE = "replace"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: ImportStrategy | str) -> ImportStrategy:
        """
        Convert a strategy name to an ImportStrategy.

        Raises:
            ValueError: If the name is not a known strategy.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown import strategy {value!r}. Valid: {valid}") from None


class RecordStatus(str, Enum):
    """Terminal state of one archived receipt during an import."""

    SKIPPED = "skipped"
    INSERTED = "inserted"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass
class RecordOutcome:
    """What happened to one archived receipt."""

    record_id: str | None
    status: RecordStatus
    error: str | None = None


@dataclass
class ImportResult:
    """
    Aggregated result of one import call.

    Attributes:
        imported: Receipts inserted or updated.
        skipped: Receipts left alone, including failed ones.
        errors: One message per failed receipt, in archive order.
        warnings: Archive-level problems that did not stop the import.
        outcomes: Per-receipt outcome, in archive order.
    """

    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    outcomes: list[RecordOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when no receipt failed."""
        return not self.errors and all(
            outcome.status is not RecordStatus.FAILED for outcome in self.outcomes
        )

    def record(self, outcome: RecordOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status in (RecordStatus.INSERTED, RecordStatus.UPDATED):
            self.imported += 1
        else:
            self.skipped += 1
        if outcome.status == RecordStatus.FAILED and outcome.error:
            self.errors.append(outcome.error)

    def display_errors(self, limit: int = 5) -> list[str]:
        """Return at most `limit` errors, with a trailing count of the rest."""
        if len(self.errors) <= limit:
            return list(self.errors)
        shown = self.errors[:limit]
        shown.append(f"... and {len(self.errors) - limit} more")
        return shown

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class ArchiveMetadata:
    """
    The decrypted archive payload.

    Records are kept as raw dictionaries so that one malformed entry fails
    on its own during import instead of rejecting the whole archive.
    """

    version: str
    export_date: str
    record_count: int
    records: list[dict[str, Any]]

    @classmethod
    def from_receipts(cls, receipts: list[Receipt]) -> ArchiveMetadata:
        return cls(
            version=FORMAT_VERSION,
            export_date=format_timestamp(datetime.now(UTC)),
            record_count=len(receipts),
            records=[receipt.to_dict() for receipt in receipts],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "exportDate": self.export_date,
            "recordCount": self.record_count,
            "records": self.records,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveMetadata:
        """
        Create from decrypted JSON.

        Raises:
            ValueError: If there is no record list.
        """
        records = data.get("records", data.get("receipts"))
        if not isinstance(records, list):
            raise ValueError("Metadata has no record list")

        declared = data.get("recordCount", data.get("receiptCount"))
        if isinstance(declared, bool) or not isinstance(declared, int):
            declared = len(records)

        return cls(
            version=str(data.get("version", LEGACY_FORMAT_VERSION)),
            export_date=str(data.get("exportDate", "")),
            record_count=declared,
            records=records,
        )

    @property
    def count_matches(self) -> bool:
        return self.record_count == len(self.records)

    def count_warning(self) -> str | None:
        """Describe a mismatch between the declared and actual record count."""
        if self.count_matches:
            return None
        return (
            f"Archive declares {self.record_count} receipts "
            f"but contains {len(self.records)}"
        )


def as_export_password(password: ExportPassword | str) -> ExportPassword:
    """
    Accept a plain string or ExportPassword for archive operations.

    Raises:
        TypeError: If given the device key or anything else.
    """
    if isinstance(password, ExportPassword):
        return password
    if isinstance(password, DeviceKey):
        raise TypeError("The device key cannot protect a portable archive")
    if isinstance(password, str):
        return ExportPassword(password)
    raise TypeError(f"Expected an export password, got {type(password).__name__}")
