"""
Import: restore receipts from a backup archive.

Import runs in two phases. The archive is first checked and decrypted as a
whole; any structural or decryption problem aborts before the store is
touched. Each archived receipt is then reconciled with the local store on its
own, so one bad receipt is reported and skipped without stopping the rest.

Conflict Strategies (for a receipt id that already exists locally):
    - skip: leave the local receipt alone
    - replace: swap the local receipt for the archived one in one transaction,
      restarting its history; the local photo goes once the swap commits
    - merge: update the local receipt in place with the archived fields,
      replacing its photo only when the archive has one
"""

from __future__ import annotations

import json
import logging
import tempfile
import zipfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from typing import Any

from paperkeep.backup.archive import (
    ATTACHMENTS_DIR,
    LEGACY_ATTACHMENTS_DIR,
    METADATA_FILE,
    REQUIRED_ENTRIES,
    SALT_FILE,
    ArchiveMetadata,
    ImportResult,
    ImportStrategy,
    RecordOutcome,
    RecordStatus,
    as_export_password,
)
from paperkeep.errors import (
    ArchiveIOError,
    ArchiveStructureError,
    ErrorCode,
    IncorrectPasswordError,
    PaperkeepError,
)
from paperkeep.security.crypto import DecryptionError, ExportPassword, cipher_for_salt
from paperkeep.storage.models import Receipt
from paperkeep.storage.receipt_store import ReceiptStore

logger = logging.getLogger(__name__)


class MissingAttachmentError(PaperkeepError):
    """Raised when an archived receipt refers to a photo the archive does not contain."""

    default_code = ErrorCode.EXPORT_INVALID_ZIP_STRUCTURE
    default_recoverable = False


class ArchiveReader:
    """
    Reads and restores backup archives.

    Example:
        reader = ArchiveReader()
        reader.verify_structure(path)  # no password needed
        result = reader.import_archive(
            path, "hunter22", "merge", store.list_receipts(), store
        )
        print(result.imported, result.skipped, result.errors)
    """

    def __init__(self, temp_root: Path | str | None = None) -> None:
        """
        Args:
            temp_root: Parent directory for staging (system temp dir if None).
        """
        self.temp_root = Path(temp_root) if temp_root is not None else None

    def verify_structure(self, archive_path: Path | str) -> None:
        """
        Check that a file is a readable archive with the required entries.

        No password is needed and no key is derived.

        Raises:
            ArchiveStructureError: If the file is missing, not a zip archive,
                lacks metadata.enc or salt.txt, or holds unsafe paths.
            ArchiveIOError: If the file cannot be read.
        """
        archive_path = Path(archive_path)
        with self._open(archive_path):
            pass

    def read_metadata(
        self, archive_path: Path | str, password: ExportPassword | str
    ) -> ArchiveMetadata:
        """
        Decrypt an archive's metadata without touching the local store.

        Raises:
            ArchiveStructureError: If the archive is malformed.
            IncorrectPasswordError: If the password is wrong or the payload corrupt.
        """
        password = as_export_password(password)
        archive_path = Path(archive_path)

        with self._open(archive_path) as zf:
            try:
                ciphertext = zf.read(METADATA_FILE).decode("utf-8", errors="replace")
                salt_bytes = zf.read(SALT_FILE)
            except (OSError, zipfile.BadZipFile) as e:
                raise ArchiveStructureError(f"Failed to read {archive_path}: {e}") from e

        return self._decrypt_metadata(ciphertext, salt_bytes, password)

    def import_archive(
        self,
        archive_path: Path | str,
        password: ExportPassword | str,
        strategy: ImportStrategy | str,
        existing_records: Iterable[Receipt],
        store: ReceiptStore,
    ) -> ImportResult:
        """
        Restore an archive into the store.

        Args:
            archive_path: Archive to import.
            password: Password the archive was exported with.
            strategy: merge, replace or skip (see module docstring).
            existing_records: Receipts currently in the store.
            store: Store to write into.

        Returns:
            ImportResult with per-receipt outcomes.

        Raises:
            ArchiveStructureError: If the archive is malformed.
            IncorrectPasswordError: If the password is wrong or the payload
                corrupt. The store is not modified.
            ArchiveIOError: If staging fails at the filesystem level.
            ValueError: If the strategy is unknown.
            TypeError: If given the device key instead of a password.
        """
        strategy = ImportStrategy.parse(strategy)
        password = as_export_password(password)
        archive_path = Path(archive_path)

        try:
            if self.temp_root is not None:
                self.temp_root.mkdir(parents=True, exist_ok=True)

            with tempfile.TemporaryDirectory(
                prefix="paperkeep-import-", dir=self.temp_root
            ) as temp_dir:
                staging = Path(temp_dir)

                with self._open(archive_path) as zf:
                    zf.extractall(staging)

                metadata = self._decrypt_metadata(
                    (staging / METADATA_FILE).read_text(encoding="utf-8", errors="replace"),
                    (staging / SALT_FILE).read_bytes(),
                    password,
                )
                attachments = self._index_attachments(staging)
                existing_ids = {record.id for record in existing_records}

                result = ImportResult()
                warning = metadata.count_warning()
                if warning:
                    result.warnings.append(warning)
                for entry in metadata.records:
                    result.record(
                        self._import_record(entry, strategy, existing_ids, attachments, store)
                    )

        except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise ArchiveStructureError(f"Failed to extract {archive_path}: {e}") from e
        except OSError as e:
            raise ArchiveIOError.from_os_error("Import", e) from e

        logger.info(
            f"Imported {result.imported} receipts from {archive_path.name} "
            f"({result.skipped} skipped, {len(result.errors)} failed, strategy={strategy.value})"
        )
        return result

    # -------------------------------------------------------------------------
    # Archive access
    # -------------------------------------------------------------------------

    def _open(self, archive_path: Path) -> zipfile.ZipFile:
        """Open an archive after checking its structure. Caller closes it."""
        if not archive_path.is_file():
            raise ArchiveStructureError(f"Backup file not found: {archive_path}")

        try:
            if not zipfile.is_zipfile(archive_path):
                raise ArchiveStructureError(f"Not a zip archive: {archive_path}")
            zf = zipfile.ZipFile(archive_path)
        except zipfile.BadZipFile as e:
            raise ArchiveStructureError(f"Not a zip archive: {archive_path}") from e
        except OSError as e:
            raise ArchiveIOError.from_os_error(f"Opening {archive_path}", e) from e

        try:
            self._check_members(zf)
        except ArchiveStructureError:
            zf.close()
            raise
        return zf

    @staticmethod
    def _check_members(zf: zipfile.ZipFile) -> None:
        names = zf.namelist()
        for name in names:
            parts = PurePosixPath(name).parts
            if name.startswith("/") or "\\" in name or ".." in parts or name[1:2] == ":":
                raise ArchiveStructureError(f"Unsafe path in archive: {name!r}")

        missing = [entry for entry in REQUIRED_ENTRIES if entry not in names]
        if missing:
            raise ArchiveStructureError(
                f"Invalid backup file: missing {', '.join(missing)}"
            )

    def _decrypt_metadata(
        self, ciphertext: str, salt_bytes: bytes, password: ExportPassword
    ) -> ArchiveMetadata:
        try:
            cipher, salt = cipher_for_salt(salt_bytes.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ArchiveStructureError(f"Invalid salt entry: {e}") from e

        logger.debug(f"Decrypting metadata with {cipher.name} cipher")
        key = cipher.derive(password.to_bytes(), salt)
        try:
            plaintext = cipher.decrypt(ciphertext, key)
            data = json.loads(plaintext.decode(cipher.text_encoding))
        except (DecryptionError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IncorrectPasswordError("Decryption failed") from e

        if not isinstance(data, dict):
            raise ArchiveStructureError("Invalid backup file: metadata is not an object")
        try:
            metadata = ArchiveMetadata.from_dict(data)
        except ValueError as e:
            raise ArchiveStructureError(f"Invalid backup file: {e}") from e

        warning = metadata.count_warning()
        if warning:
            logger.warning(warning)
        return metadata

    @staticmethod
    def _index_attachments(staging: Path) -> dict[str, Path]:
        """Map receipt id to photo file, preferring the current directory name."""
        attachments: dict[str, Path] = {}
        for dirname in (ATTACHMENTS_DIR, LEGACY_ATTACHMENTS_DIR):
            directory = staging / dirname
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.is_file() and not path.name.startswith("."):
                    attachments.setdefault(path.stem, path)
        return attachments

    # -------------------------------------------------------------------------
    # Per-receipt reconciliation
    # -------------------------------------------------------------------------

    def _import_record(
        self,
        entry: Any,
        strategy: ImportStrategy,
        existing_ids: set[str],
        attachments: dict[str, Path],
        store: ReceiptStore,
    ) -> RecordOutcome:
        record_id = entry.get("id") if isinstance(entry, dict) else None
        if not isinstance(record_id, str):
            record_id = None

        try:
            receipt = Receipt.from_dict(entry)
            exists = receipt.id in existing_ids

            if exists and strategy is ImportStrategy.SKIP:
                logger.debug(f"Skipping existing receipt {receipt.id}")
                return RecordOutcome(receipt.id, RecordStatus.SKIPPED)

            attachment = attachments.get(receipt.id)
            if attachment is None and receipt.image_uri:
                raise MissingAttachmentError(
                    f"photo for receipt {receipt.id} is missing from the archive"
                )

            if exists and strategy is ImportStrategy.MERGE:
                if attachment is None:
                    current = store.get_receipt(receipt.id)
                    receipt.image_uri = current.image_uri if current else None
                store.update_receipt(receipt, image=attachment)
                return RecordOutcome(receipt.id, RecordStatus.UPDATED)

            if exists:
                store.replace_receipt(receipt, image=attachment)
                return RecordOutcome(receipt.id, RecordStatus.INSERTED)

            receipt.image_uri = None
            store.save_receipt(receipt, image=attachment)
            existing_ids.add(receipt.id)
            return RecordOutcome(receipt.id, RecordStatus.INSERTED)

        except Exception as e:
            label = record_id if record_id is not None else "<unknown>"
            logger.warning(f"Failed to import receipt {label}: {e}")
            return RecordOutcome(
                record_id,
                RecordStatus.FAILED,
                error=f"Failed to import receipt {label}: {e}",
            )
