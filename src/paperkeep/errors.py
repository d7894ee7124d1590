"""
Error types shared across Paperkeep.

Every error that can reach the user carries a stable ErrorCode, a flag saying
whether retrying can help, and a friendly message suitable for display. The
technical message (str(error)) is meant for logs.

Error Categories:
    - structural: the archive is missing entries or holds malformed metadata.
      Retrying does not help; the user needs a valid archive.
    - cryptographic-ambiguous: decryption produced something unusable. A wrong
      password and a corrupted archive are reported identically.
    - resource: disk full, permission denied. The user can fix and retry.
    - user: nothing to export.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable identifiers for user-facing error conditions."""

    STORAGE_INSUFFICIENT_SPACE = "STORAGE_INSUFFICIENT_SPACE"
    STORAGE_PERMISSION_DENIED = "STORAGE_PERMISSION_DENIED"
    STORAGE_FILE_SYSTEM_ERROR = "STORAGE_FILE_SYSTEM_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"

    EXPORT_NO_DATA = "EXPORT_NO_DATA"
    EXPORT_INVALID_ZIP_STRUCTURE = "EXPORT_INVALID_ZIP_STRUCTURE"
    EXPORT_CORRUPTED_DATA = "EXPORT_CORRUPTED_DATA"
    EXPORT_INSUFFICIENT_STORAGE = "EXPORT_INSUFFICIENT_STORAGE"

    KEYSTORE_UNAVAILABLE = "KEYSTORE_UNAVAILABLE"
    KEYSTORE_ERROR = "KEYSTORE_ERROR"


class PaperkeepError(Exception):
    """
    Base exception for all Paperkeep errors.

    Attributes:
        message: Technical description, suitable for logs.
        code: Stable error code.
        recoverable: True if the user can fix the cause and retry.
        user_message: Friendly message for display.
    """

    default_code = ErrorCode.STORAGE_ERROR
    default_user_message = "Something went wrong. Please try again."
    default_recoverable = True

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        recoverable: bool | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.recoverable = (
            self.default_recoverable if recoverable is None else recoverable
        )
        self.user_message = user_message or self.default_user_message


class NothingToExportError(PaperkeepError):
    """Raised when an export is requested but there are no receipts."""

    default_code = ErrorCode.EXPORT_NO_DATA
    default_user_message = "You have no receipts to export"
    default_recoverable = False


class ArchiveStructureError(PaperkeepError):
    """Raised when an archive is missing required entries or is malformed."""

    default_code = ErrorCode.EXPORT_INVALID_ZIP_STRUCTURE
    default_user_message = "This file is not a valid Paperkeep backup"
    default_recoverable = False


class IncorrectPasswordError(PaperkeepError):
    """
    Raised when the archive payload cannot be decrypted into valid metadata.

    A wrong password and a corrupted archive are deliberately indistinguishable.
    """

    default_code = ErrorCode.EXPORT_CORRUPTED_DATA
    default_user_message = "Incorrect password or corrupted backup file"
    default_recoverable = False


class ArchiveIOError(PaperkeepError):
    """Raised when reading or writing archive data fails at the filesystem level."""

    default_code = ErrorCode.EXPORT_INSUFFICIENT_STORAGE
    default_user_message = "Failed to import data. Please try again."

    @classmethod
    def from_os_error(cls, action: str, error: OSError) -> ArchiveIOError:
        """Build an error for a failed filesystem action, classifying permissions."""
        if isinstance(error, PermissionError):
            return cls(
                f"{action} failed: {error}",
                code=ErrorCode.STORAGE_PERMISSION_DENIED,
            )
        return cls(f"{action} failed: {error}")


class ExportError(ArchiveIOError):
    """Raised when an export fails part-way. No archive is left behind."""

    default_user_message = "Failed to export data. Please try again."
