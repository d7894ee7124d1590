"""
Data models for receipt storage.

Schema Design Decisions:
    - IDs are opaque strings, unique within a store, and double as attachment
      file names, so they may not contain path separators
    - Amounts are integer minor currency units (cents), never floats
    - Timestamps are timezone-aware UTC datetimes; naive values are taken
      to be UTC
    - Serialized form uses the archive's camelCase keys and ISO-8601
      timestamps with millisecond precision and a trailing "Z"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def format_timestamp(value: datetime) -> str:
    """Format a datetime as canonical ISO-8601 UTC text (e.g. 2024-01-15T10:30:00.000Z)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any, name: str) -> datetime:
    """
    Parse ISO-8601 text into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a string or not a valid timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid {name}: {value!r}") from e
    else:
        raise ValueError(f"Invalid {name}: expected ISO-8601 text, got {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass
class Receipt:
    """
    One receipt's extracted data.

    Attributes:
        id: Unique identifier.
        store_name: Merchant name.
        date: Purchase date.
        total_amount: Total in minor currency units (non-negative).
        tags: Ordered free-text tags.
        notes: Optional free-text notes.
        ocr_text: Raw text extracted from the photo (may be empty).
        image_uri: Path of the receipt photo, or None if there is none.
        created_at: When the receipt was first saved.
        updated_at: When the receipt was last modified.
    """

    id: str
    store_name: str
    date: datetime
    total_amount: int
    tags: list[str] = field(default_factory=list)
    notes: str | None = None
    ocr_text: str = ""
    image_uri: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Check the receipt's invariants.

        Raises:
            ValueError: If any field is missing or malformed.
        """
        if not isinstance(self.id, str) or not self.id:
            raise ValueError("Receipt id is required")
        if "/" in self.id or "\\" in self.id or self.id in (".", ".."):
            raise ValueError(f"Receipt id may not contain path separators: {self.id!r}")
        if not isinstance(self.store_name, str) or not self.store_name:
            raise ValueError("Store name is required")
        if isinstance(self.total_amount, bool) or not isinstance(self.total_amount, int):
            raise ValueError(
                f"Total amount must be an integer number of cents, got {self.total_amount!r}"
            )
        if self.total_amount < 0:
            raise ValueError(f"Total amount must not be negative, got {self.total_amount}")
        if not isinstance(self.tags, list) or not all(isinstance(t, str) for t in self.tags):
            raise ValueError("Tags must be a list of strings")
        if self.notes is not None and not isinstance(self.notes, str):
            raise ValueError("Notes must be text")
        if not isinstance(self.ocr_text, str):
            raise ValueError("OCR text must be text (can be empty)")
        for name in ("date", "created_at", "updated_at"):
            if not isinstance(getattr(self, name), datetime):
                raise ValueError(f"{name} must be a datetime")

    def to_dict(self) -> dict[str, Any]:
        """Convert to the archive's JSON representation."""
        return {
            "id": self.id,
            "storeName": self.store_name,
            "date": format_timestamp(self.date),
            "totalAmount": self.total_amount,
            "tags": list(self.tags),
            "notes": self.notes,
            "ocrText": self.ocr_text,
            "imageUri": self.image_uri,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Receipt:
        """
        Create from the archive's JSON representation.

        Raises:
            ValueError: If required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Receipt entry must be an object, got {type(data).__name__}")
        if "id" not in data:
            raise ValueError("Receipt id is required")

        return cls(
            id=data["id"],
            store_name=data.get("storeName", ""),
            date=parse_timestamp(data.get("date"), "date"),
            total_amount=data.get("totalAmount"),  # type: ignore[arg-type]
            tags=data.get("tags") if data.get("tags") is not None else [],
            notes=data.get("notes"),
            ocr_text=data.get("ocrText") if data.get("ocrText") is not None else "",
            image_uri=data.get("imageUri") or None,
            created_at=parse_timestamp(data.get("createdAt"), "createdAt"),
            updated_at=parse_timestamp(data.get("updatedAt"), "updatedAt"),
        )


@dataclass
class StorageInfo:
    """Read-only summary of local storage usage."""

    total_bytes: int
    attachment_count: int
    record_count: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total_bytes": self.total_bytes,
            "attachment_count": self.attachment_count,
            "record_count": self.record_count,
        }
