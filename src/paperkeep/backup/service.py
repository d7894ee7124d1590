"""
Backup service: the export/import surface used by the CLI.

BackupService wires the receipt store to the archive writer and reader. It is
constructed explicitly (usually from Settings) rather than shared as a
module-level instance.
"""

from __future__ import annotations

import logging
from pathlib import Path

from paperkeep.backup.archive import ImportResult, ImportStrategy
from paperkeep.backup.reader import ArchiveReader
from paperkeep.backup.writer import ArchiveWriter
from paperkeep.config.settings import DEFAULT_KDF_ITERATIONS, Settings
from paperkeep.errors import NothingToExportError, PaperkeepError
from paperkeep.security.crypto import ExportPassword, validate_password
from paperkeep.storage.models import Receipt, StorageInfo
from paperkeep.storage.receipt_store import ReceiptStore

logger = logging.getLogger(__name__)


class BackupService:
    """
    Export, import and inspect Paperkeep backups.

    Example:
        service = BackupService.from_settings(load_config())
        path = service.export_data("correct horse battery")
        result = service.import_data(path, "correct horse battery", "skip")
    """

    def __init__(
        self,
        store: ReceiptStore,
        output_dir: Path | str,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
        temp_root: Path | str | None = None,
    ) -> None:
        self.store = store
        self.writer = ArchiveWriter(output_dir, kdf_iterations, temp_root)
        self.reader = ArchiveReader(temp_root)

    @classmethod
    def from_settings(cls, settings: Settings) -> BackupService:
        return cls(
            store=ReceiptStore(Path(settings.data_dir).expanduser()),
            output_dir=Path(settings.export.output_dir).expanduser(),
            kdf_iterations=settings.export.kdf_iterations,
        )

    def export_data(self, password: ExportPassword | str) -> Path:
        """
        Export every receipt to a new archive.

        Returns:
            Path of the archive.

        Raises:
            NothingToExportError: If the store is empty.
            ValueError: If the password does not meet the length policy.
            ExportError: If writing the archive fails.
        """
        value = password.value if isinstance(password, ExportPassword) else password
        if isinstance(value, str):
            valid, message = validate_password(value)
            if not valid:
                raise ValueError(message)

        receipts = self.store.list_receipts()
        if not receipts:
            raise NothingToExportError("No receipts to export")

        return self.writer.export(receipts, self._resolve_attachment, password)

    def import_data(
        self,
        archive_path: Path | str,
        password: ExportPassword | str,
        strategy: ImportStrategy | str = ImportStrategy.MERGE,
    ) -> ImportResult:
        """Import an archive into the store. See ArchiveReader.import_archive."""
        return self.reader.import_archive(
            archive_path,
            password,
            strategy,
            self.store.list_receipts(),
            self.store,
        )

    def validate_backup(self, archive_path: Path | str, password: ExportPassword | str) -> bool:
        """
        Check that an archive opens with the given password.

        Returns False instead of raising for malformed archives and wrong
        passwords. The store is not touched.
        """
        try:
            self.reader.read_metadata(archive_path, password)
        except PaperkeepError as e:
            logger.debug(f"Backup validation failed: {e}")
            return False
        return True

    def get_storage_info(self) -> StorageInfo:
        return self.store.get_storage_info()

    def _resolve_attachment(self, receipt: Receipt) -> Path | None:
        return self.store.get_image(receipt.id)
