"""
Receipt storage engine.

This module provides persistent storage for receipts using a hybrid approach:
SQLite for receipt metadata, plain files for receipt photos.

Storage Structure:
    data/
        paperkeep.db                # SQLite database
        images/
            {receipt_id}.{ext}      # Receipt photos

Usage:
    from paperkeep.storage import ReceiptStore

    store = ReceiptStore()
    receipts = store.list_receipts()
    info = store.get_storage_info()
"""

from paperkeep.storage.models import Receipt, StorageInfo
from paperkeep.storage.receipt_store import (
    DuplicateReceiptError,
    ReceiptNotFoundError,
    ReceiptStore,
    StorageError,
)

__all__ = [
    # Main store class
    "ReceiptStore",
    # Data models
    "Receipt",
    "StorageInfo",
    # Exceptions
    "StorageError",
    "ReceiptNotFoundError",
    "DuplicateReceiptError",
]
