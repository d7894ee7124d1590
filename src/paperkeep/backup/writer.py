"""
Export: package receipts and photos into a password-protected archive.

The metadata is encrypted with a key derived from the export password and a
salt generated fresh for this export. Everything is staged in a temporary
directory, zipped next to the destination, and only then renamed into place,
so the output directory never holds a partial archive.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import zipfile
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

from paperkeep.backup.archive import (
    ATTACHMENTS_DIR,
    DEFAULT_ATTACHMENT_EXTENSION,
    METADATA_FILE,
    SALT_FILE,
    ArchiveMetadata,
    as_export_password,
)
from paperkeep.config.settings import DEFAULT_KDF_ITERATIONS
from paperkeep.errors import ExportError, NothingToExportError
from paperkeep.security.crypto import (
    ExportPassword,
    FernetCipher,
    encode_salt,
    generate_salt,
)
from paperkeep.storage.models import Receipt

logger = logging.getLogger(__name__)

AttachmentResolver = Callable[[Receipt], Path | str | None]

ARCHIVE_PREFIX = "paperkeep-backup"


class ArchiveWriter:
    """
    Writes backup archives.

    Example:
        writer = ArchiveWriter(output_dir=Path("~/Documents").expanduser())
        path = writer.export(store.list_receipts(), lambda r: store.get_image(r.id), "hunter22")

    Attributes:
        output_dir: Directory the finished archive is placed in.
        kdf_iterations: PBKDF2 work factor for the archive key.
        temp_root: Parent directory for staging (system temp dir if None).
    """

    def __init__(
        self,
        output_dir: Path | str,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
        temp_root: Path | str | None = None,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.kdf_iterations = kdf_iterations
        self.temp_root = Path(temp_root) if temp_root is not None else None

    def export(
        self,
        records: Iterable[Receipt],
        attachment_resolver: AttachmentResolver,
        password: ExportPassword | str,
    ) -> Path:
        """
        Export receipts and their photos to a new archive.

        Args:
            records: Receipts to export.
            attachment_resolver: Returns the photo for a receipt, or None.
            password: Export password. The device key is refused.

        Returns:
            Path of the finished archive.

        Raises:
            NothingToExportError: If there are no receipts.
            ExportError: If any file operation fails. Nothing is left behind.
            TypeError: If given the device key instead of a password.
        """
        password = as_export_password(password)
        records = list(records)
        if not records:
            raise NothingToExportError("No receipts to export")

        cipher = FernetCipher(self.kdf_iterations)
        salt = generate_salt()

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            if self.temp_root is not None:
                self.temp_root.mkdir(parents=True, exist_ok=True)

            with tempfile.TemporaryDirectory(
                prefix="paperkeep-export-", dir=self.temp_root
            ) as temp_dir:
                staging = Path(temp_dir)

                exported = self._stage_attachments(staging, records, attachment_resolver)
                metadata = ArchiveMetadata.from_receipts(exported)
                plaintext = json.dumps(metadata.to_dict(), indent=2).encode("utf-8")

                key = cipher.derive(password.to_bytes(), salt.encode("ascii"))
                (staging / METADATA_FILE).write_text(
                    cipher.encrypt(plaintext, key), encoding="ascii"
                )
                (staging / SALT_FILE).write_text(
                    encode_salt(salt, self.kdf_iterations), encoding="ascii"
                )

                archive_path = self._write_archive(staging)

        except OSError as e:
            logger.error(f"Export failed: {e}")
            raise ExportError.from_os_error("Export", e) from e

        logger.info(
            f"Exported {len(records)} receipts to {archive_path} "
            f"({archive_path.stat().st_size:,} bytes)"
        )
        return archive_path

    def _stage_attachments(
        self,
        staging: Path,
        records: list[Receipt],
        attachment_resolver: AttachmentResolver,
    ) -> list[Receipt]:
        """Copy each receipt's photo into the staging area.

        Returns the receipts as they should be serialized: a receipt whose
        photo cannot be resolved is exported without one.
        """
        attachments_dir = staging / ATTACHMENTS_DIR
        attachments_dir.mkdir()

        exported: list[Receipt] = []
        for receipt in records:
            source = attachment_resolver(receipt)
            if source is None:
                if receipt.image_uri:
                    logger.warning(
                        f"Photo for receipt {receipt.id} not found, exporting without it"
                    )
                    receipt = replace(receipt, image_uri=None)
                exported.append(receipt)
                continue

            source = Path(source)
            extension = source.suffix.lower() or DEFAULT_ATTACHMENT_EXTENSION
            shutil.copyfile(source, attachments_dir / f"{receipt.id}{extension}")
            exported.append(receipt)

        return exported

    def _write_archive(self, staging: Path) -> Path:
        """Zip the staging area and move the result into the output directory."""
        destination = self._archive_path()
        partial = destination.with_name(f".{destination.name}.partial")

        try:
            with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for path in sorted(staging.rglob("*")):
                    zf.write(path, arcname=path.relative_to(staging).as_posix())
            os.replace(partial, destination)
        except OSError:
            partial.unlink(missing_ok=True)
            raise

        return destination

    def _archive_path(self) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        candidate = self.output_dir / f"{ARCHIVE_PREFIX}-{timestamp}.zip"
        counter = 1
        while candidate.exists():
            candidate = self.output_dir / f"{ARCHIVE_PREFIX}-{timestamp}-{counter}.zip"
            counter += 1
        return candidate
