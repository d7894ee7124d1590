"""
Backup and restore.

Portable, password-protected zip archives of every receipt and its photo.

Usage:
    from paperkeep.backup import BackupService

    service = BackupService(store, output_dir=Path("./backups"))
    path = service.export_data("correct horse battery")
    result = service.import_data(path, "correct horse battery", strategy="merge")
"""

from paperkeep.backup.archive import (
    FORMAT_VERSION,
    ArchiveMetadata,
    ImportResult,
    ImportStrategy,
    RecordOutcome,
    RecordStatus,
)
from paperkeep.backup.reader import ArchiveReader, MissingAttachmentError
from paperkeep.backup.service import BackupService
from paperkeep.backup.writer import ArchiveWriter

__all__ = [
    "BackupService",
    "ArchiveWriter",
    "ArchiveReader",
    "ArchiveMetadata",
    "ImportResult",
    "ImportStrategy",
    "RecordOutcome",
    "RecordStatus",
    "MissingAttachmentError",
    "FORMAT_VERSION",
]
