"""
Receipt storage engine for Paperkeep.

This module provides the ReceiptStore class which keeps receipts on disk
using a hybrid approach:
    - SQLite database for receipt metadata
    - Image files for receipt photos, named after the receipt id

Storage Structure:
    data/
        paperkeep.db                # SQLite database
        images/
            {receipt_id}.{ext}      # One photo per receipt

Design Decisions:
    - Each write is its own transaction, so an interrupted batch leaves
      every receipt either fully written or untouched
    - Image copies go through a temp file + rename to avoid partial files,
      and are only renamed into place after the row they belong to commits
    - The revision column is internal bookkeeping, not part of Receipt: it
      counts in-place updates and restarts at 1 when a receipt is re-inserted

Thread Safety:
    Connection-per-operation. The store does no locking of its own; a single
    writer is assumed.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from paperkeep.errors import ErrorCode, PaperkeepError
from paperkeep.storage.models import (
    Receipt,
    StorageInfo,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class StorageError(PaperkeepError):
    """Base exception for storage errors."""

    default_code = ErrorCode.STORAGE_ERROR
    default_user_message = "Failed to access receipt storage. Please try again."


class ReceiptNotFoundError(StorageError):
    """Raised when a requested receipt does not exist."""

    pass


class DuplicateReceiptError(StorageError):
    """Raised when inserting a receipt whose id already exists."""

    default_user_message = "A receipt with this id already exists"


# Database schema version for migrations
SCHEMA_VERSION = 1

DATABASE_FILE = "paperkeep.db"
IMAGES_DIR = "images"
INSERT_RECEIPT_SQL = """
INSERT INTO receipts (
    id, store_name, date, total_amount, tags_json, notes,
    ocr_text, image_uri, created_at, updated_at, revision
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
"""

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    store_name TEXT NOT NULL,
    date TEXT NOT NULL,
    total_amount INTEGER NOT NULL CHECK (total_amount >= 0),
    tags_json TEXT NOT NULL,
    notes TEXT,
    ocr_text TEXT NOT NULL,
    image_uri TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_receipts_date ON receipts(date);
"""


class ReceiptStore:
    """
    Persistent storage for receipts and their photos.

    Example:
        store = ReceiptStore(data_dir=Path("./data"))

        image_uri = store.save_image(Path("/tmp/photo.jpg"), "r-1")
        store.save_receipt(Receipt(id="r-1", ..., image_uri=image_uri))

        receipts = store.list_receipts()
        info = store.get_storage_info()

    Attributes:
        data_dir: Base directory for all data storage.
        db_path: Path to the SQLite database file.
        images_dir: Directory for receipt photos.
    """

    def __init__(self, data_dir: Path | str | None = None) -> None:
        """
        Initialize the receipt store.

        Args:
            data_dir: Base directory for data storage. Defaults to ~/.paperkeep/data
        """
        if data_dir is None:
            data_dir = Path.home() / ".paperkeep" / "data"
        elif isinstance(data_dir, str):
            data_dir = Path(data_dir)

        self.data_dir = data_dir
        self.db_path = data_dir / DATABASE_FILE
        self.images_dir = data_dir / IMAGES_DIR

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.images_dir.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(CREATE_TABLES_SQL)

            cursor = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = cursor.fetchone()

            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is older than "
                    f"expected version {SCHEMA_VERSION}"
                )

            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection.

        Yields:
            SQLite connection with row factory set.
        """
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Receipt operations
    # -------------------------------------------------------------------------

    def list_receipts(self) -> list[Receipt]:
        """Return every receipt, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM receipts ORDER BY created_at, id"
            ).fetchall()
        return [self._row_to_receipt(row) for row in rows]

    def get_receipt(self, receipt_id: str) -> Receipt | None:
        """Return a receipt by id, or None if it does not exist."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM receipts WHERE id = ?", (receipt_id,)
            ).fetchone()
        return self._row_to_receipt(row) if row else None

    def save_receipt(self, receipt: Receipt, image: Path | str | None = None) -> None:
        """
        Insert a new receipt, optionally together with its photo.

        When `image` is given the photo is staged first and only moved into
        place once the row is committed, so a duplicate id leaves the
        existing receipt's photo alone. Without `image`, `receipt.image_uri`
        is stored as given.

        Raises:
            DuplicateReceiptError: If a receipt with the same id exists.
            StorageError: If the database write or photo copy fails.
        """
        receipt.validate()
        staged = destination = None
        if image is not None:
            staged, destination = self._stage_image(image, receipt.id)
        stored = replace(receipt, image_uri=str(destination)) if destination else receipt

        try:
            with self._get_connection() as conn:
                conn.execute(INSERT_RECEIPT_SQL, self._receipt_params(stored))
                conn.commit()
        except sqlite3.IntegrityError as e:
            self._discard(staged)
            raise DuplicateReceiptError(f"Receipt already exists: {receipt.id}") from e
        except sqlite3.Error as e:
            self._discard(staged)
            raise StorageError(f"Failed to save receipt {receipt.id}: {e}") from e

        if staged is not None:
            self._install_image(staged, destination, receipt.id)
            receipt.image_uri = stored.image_uri

        logger.debug(f"Saved receipt {receipt.id}")

    def replace_receipt(self, receipt: Receipt, image: Path | str | None = None) -> None:
        """
        Swap an existing receipt for a fresh copy, restarting its revision.

        The new photo is staged before anything is removed and the row swap
        is one transaction. A failed copy or write leaves the current
        receipt and its photo as they were. The old photo is removed once
        the swap is committed; `receipt.image_uri` is set to the new photo,
        or None without one.

        Raises:
            ReceiptNotFoundError: If no receipt with that id exists.
            StorageError: If the database write or photo copy fails.
        """
        receipt.validate()
        staged = destination = None
        if image is not None:
            staged, destination = self._stage_image(image, receipt.id)
        stored = replace(receipt, image_uri=str(destination) if destination else None)

        try:
            with self._get_connection() as conn:
                deleted = conn.execute(
                    "DELETE FROM receipts WHERE id = ?", (receipt.id,)
                ).rowcount
                if deleted:
                    conn.execute(INSERT_RECEIPT_SQL, self._receipt_params(stored))
                    conn.commit()
        except sqlite3.Error as e:
            self._discard(staged)
            raise StorageError(f"Failed to replace receipt {receipt.id}: {e}") from e

        if not deleted:
            self._discard(staged)
            raise ReceiptNotFoundError(f"Receipt not found: {receipt.id}")

        if staged is not None:
            self._install_image(staged, destination, receipt.id)
        else:
            self.delete_image(receipt.id)
        receipt.image_uri = stored.image_uri

        logger.debug(f"Replaced receipt {receipt.id}")

    def update_receipt(self, receipt: Receipt, image: Path | str | None = None) -> None:
        """
        Overwrite an existing receipt's fields in place.

        A new photo given as `image` is staged and swapped in after the
        update commits.

        Raises:
            ReceiptNotFoundError: If no receipt with that id exists.
            StorageError: If the database write or photo copy fails.
        """
        receipt.validate()
        staged = destination = None
        if image is not None:
            staged, destination = self._stage_image(image, receipt.id)
        stored = replace(receipt, image_uri=str(destination)) if destination else receipt
        params = self._receipt_params(stored)
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE receipts SET
                        store_name = ?, date = ?, total_amount = ?, tags_json = ?,
                        notes = ?, ocr_text = ?, image_uri = ?, created_at = ?,
                        updated_at = ?, revision = revision + 1
                    WHERE id = ?
                    """,
                    (*params[1:], params[0]),
                )
                conn.commit()
                updated = cursor.rowcount
        except sqlite3.Error as e:
            self._discard(staged)
            raise StorageError(f"Failed to update receipt {receipt.id}: {e}") from e

        if updated == 0:
            self._discard(staged)
            raise ReceiptNotFoundError(f"Receipt not found: {receipt.id}")

        if staged is not None:
            self._install_image(staged, destination, receipt.id)
            receipt.image_uri = stored.image_uri

        logger.debug(f"Updated receipt {receipt.id}")

    def delete_receipt(self, receipt_id: str) -> None:
        """
        Delete a receipt and its photo.

        Raises:
            ReceiptNotFoundError: If no receipt with that id exists.
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM receipts WHERE id = ?", (receipt_id,))
                conn.commit()
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete receipt {receipt_id}: {e}") from e

        if deleted == 0:
            raise ReceiptNotFoundError(f"Receipt not found: {receipt_id}")

        self.delete_image(receipt_id)
        logger.debug(f"Deleted receipt {receipt_id}")

    def get_revision(self, receipt_id: str) -> int | None:
        """Return how many times a receipt has been written since insertion."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT revision FROM receipts WHERE id = ?", (receipt_id,)
            ).fetchone()
        return int(row["revision"]) if row else None

    # -------------------------------------------------------------------------
    # Image operations
    # -------------------------------------------------------------------------

    def save_image(self, source: Path | str, receipt_id: str) -> str:
        """
        Copy a photo into storage as the receipt's image.

        Any previous image for the receipt is removed, whatever its extension.

        Args:
            source: Photo to copy.
            receipt_id: Receipt the photo belongs to.

        Returns:
            Path of the stored image.

        Raises:
            StorageError: If the photo cannot be copied.
        """
        staged, destination = self._stage_image(source, receipt_id)
        self._install_image(staged, destination, receipt_id)
        return str(destination)

    def get_image(self, receipt_id: str) -> Path | None:
        """Return the stored photo for a receipt, or None if there is none."""
        images = self._stored_images(receipt_id)
        return images[0] if images else None

    def delete_image(self, receipt_id: str, keep: Path | None = None) -> None:
        """Remove every stored photo for a receipt except `keep`."""
        for candidate in self._stored_images(receipt_id):
            if candidate == keep:
                continue
            try:
                candidate.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(
                    f"Failed to delete image {candidate}: {e}",
                    code=ErrorCode.STORAGE_FILE_SYSTEM_ERROR,
                ) from e

    def _stored_images(self, receipt_id: str) -> list[Path]:
        # Photos are "<id><ext>" for any extension; staged copies are
        # ".<id><ext>.tmp" and never match.
        self._image_path(receipt_id, "")
        return sorted(
            path
            for path in self.images_dir.iterdir()
            if path.is_file() and path.stem == receipt_id
        )

    def _stage_image(self, source: Path | str, receipt_id: str) -> tuple[Path, Path]:
        """Copy a photo next to its final name. Returns (staged, destination)."""
        source = Path(source)
        extension = source.suffix.lower() or ".jpg"
        destination = self._image_path(receipt_id, extension)
        staged = destination.with_name(f".{destination.name}.tmp")

        try:
            shutil.copyfile(source, staged)
        except OSError as e:
            self._discard(staged)
            raise StorageError(
                f"Failed to save image for {receipt_id}: {e}",
                code=ErrorCode.STORAGE_FILE_SYSTEM_ERROR,
            ) from e
        return staged, destination

    def _install_image(self, staged: Path, destination: Path, receipt_id: str) -> None:
        """Move a staged photo into place and drop any older photo."""
        try:
            os.replace(staged, destination)
        except OSError as e:
            self._discard(staged)
            raise StorageError(
                f"Failed to save image for {receipt_id}: {e}",
                code=ErrorCode.STORAGE_FILE_SYSTEM_ERROR,
            ) from e
        self.delete_image(receipt_id, keep=destination)

    @staticmethod
    def _discard(staged: Path | None) -> None:
        if staged is None:
            return
        try:
            staged.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove staged image {staged}: {e}")

    def get_storage_info(self) -> StorageInfo:
        """Summarize storage usage (database plus images). Read-only."""
        images = [p for p in self.images_dir.iterdir() if p.is_file() and not p.name.startswith(".")]
        total_bytes = sum(p.stat().st_size for p in images)
        if self.db_path.exists():
            total_bytes += self.db_path.stat().st_size

        with self._get_connection() as conn:
            (record_count,) = conn.execute("SELECT COUNT(*) FROM receipts").fetchone()

        return StorageInfo(
            total_bytes=total_bytes,
            attachment_count=len(images),
            record_count=record_count,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _image_path(self, receipt_id: str, extension: str) -> Path:
        if not receipt_id or "/" in receipt_id or "\\" in receipt_id or receipt_id in (".", ".."):
            raise ValueError(f"Invalid receipt id for image storage: {receipt_id!r}")
        return self.images_dir / f"{receipt_id}{extension}"

    @staticmethod
    def _receipt_params(receipt: Receipt) -> tuple[Any, ...]:
        return (
            receipt.id,
            receipt.store_name,
            format_timestamp(receipt.date),
            receipt.total_amount,
            json.dumps(receipt.tags),
            receipt.notes,
            receipt.ocr_text,
            receipt.image_uri,
            format_timestamp(receipt.created_at),
            format_timestamp(receipt.updated_at),
        )

    @staticmethod
    def _row_to_receipt(row: sqlite3.Row) -> Receipt:
        return Receipt(
            id=row["id"],
            store_name=row["store_name"],
            date=parse_timestamp(row["date"], "date"),
            total_amount=row["total_amount"],
            tags=json.loads(row["tags_json"]),
            notes=row["notes"],
            ocr_text=row["ocr_text"],
            image_uri=row["image_uri"],
            created_at=parse_timestamp(row["created_at"], "created_at"),
            updated_at=parse_timestamp(row["updated_at"], "updated_at"),
        )
