"""
Error taxonomy for NextUp.

Every failure raised by the library carries a machine-readable ``code`` so the
application shell can branch on it without parsing messages.

Families:
- Storage errors: raised by the key-value store (I/O failures, corruption,
  retries exhausted, migrations, backup/restore).
- Collection errors: raised by the data manager (validation, invariant
  violations, wrapped storage failures).
- Catalog errors: raised by the catalog HTTP client (transient, auth, quota,
  not found).
"""

from enum import Enum
from typing import List, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # Storage layer
    READ_ERROR = "READ_ERROR"
    WRITE_ERROR = "WRITE_ERROR"
    DELETE_ERROR = "DELETE_ERROR"
    CLEAR_ERROR = "CLEAR_ERROR"
    DATA_CORRUPTION = "DATA_CORRUPTION"
    INVALID_DATA = "INVALID_DATA"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    MIGRATION_ERROR = "MIGRATION_ERROR"
    BACKUP_ERROR = "BACKUP_ERROR"
    RESTORE_ERROR = "RESTORE_ERROR"

    # Collection manager: validation and invariants
    INVALID_PROFILE_DATA = "INVALID_PROFILE_DATA"
    PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"
    DUPLICATE_ITEM = "DUPLICATE_ITEM"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    INVALID_RATING = "INVALID_RATING"
    NOTES_TOO_LONG = "NOTES_TOO_LONG"
    INVALID_PROGRESS = "INVALID_PROGRESS"

    # Collection manager: wrapped storage failures
    LOAD_STATE_ERROR = "LOAD_STATE_ERROR"
    SAVE_STATE_ERROR = "SAVE_STATE_ERROR"
    GET_PROFILE_ERROR = "GET_PROFILE_ERROR"
    SAVE_PROFILE_ERROR = "SAVE_PROFILE_ERROR"
    GET_COLLECTIONS_ERROR = "GET_COLLECTIONS_ERROR"
    SAVE_COLLECTIONS_ERROR = "SAVE_COLLECTIONS_ERROR"
    ADD_ITEM_ERROR = "ADD_ITEM_ERROR"
    REMOVE_ITEM_ERROR = "REMOVE_ITEM_ERROR"
    UPDATE_STATUS_ERROR = "UPDATE_STATUS_ERROR"
    UPDATE_FIELD_ERROR = "UPDATE_FIELD_ERROR"
    CLEAR_COLLECTION_ERROR = "CLEAR_COLLECTION_ERROR"


class NextUpError(Exception):
    """Base exception for all NextUp errors."""

    def __init__(self, message: str, code: ErrorCode,
                 original_error: Optional[Exception] = None):
        self.message = message
        self.code = code
        self.original_error = original_error
        super().__init__(message)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(NextUpError):
    """Failure in the key-value store."""


class DataCorruptionError(StorageError):
    """A stored value could not be decoded. The key has already been purged."""

    def __init__(self, message: str, key: str,
                 original_error: Optional[Exception] = None):
        self.key = key
        super().__init__(message, ErrorCode.DATA_CORRUPTION, original_error)


class MaxRetriesExceededError(StorageError):
    """Every attempt of a storage operation failed."""

    def __init__(self, message: str, attempts: int,
                 original_error: Optional[Exception] = None):
        self.attempts = attempts
        super().__init__(message, ErrorCode.MAX_RETRIES_EXCEEDED, original_error)


class MigrationError(StorageError):
    """A data migration step failed; later steps were not applied."""

    def __init__(self, message: str, version: int, last_applied_version: int,
                 original_error: Optional[Exception] = None):
        self.version = version
        self.last_applied_version = last_applied_version
        super().__init__(message, ErrorCode.MIGRATION_ERROR, original_error)


# ---------------------------------------------------------------------------
# Collection manager
# ---------------------------------------------------------------------------

class CollectionError(NextUpError):
    """Failure in the collection manager."""


class ValidationError(CollectionError):
    """
    Input failed validation.

    ``errors`` holds every violated rule, not just the first one.
    """

    def __init__(self, message: str, code: ErrorCode,
                 errors: Optional[List[str]] = None):
        self.errors = list(errors) if errors else [message]
        super().__init__(message, code)


class DuplicateItemError(CollectionError):
    """The media item is already tracked in one of the collections."""

    def __init__(self, media_id: int):
        self.media_id = media_id
        super().__init__(
            f"Media item {media_id} already exists in collection",
            ErrorCode.DUPLICATE_ITEM,
        )


class ItemNotFoundError(CollectionError):
    """No collection item with the given id exists."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(
            f"Item {item_id} not found in any collection",
            ErrorCode.ITEM_NOT_FOUND,
        )


class ProfileNotFoundError(CollectionError):
    """No user profile has been created yet."""

    def __init__(self):
        super().__init__("No user profile found to update", ErrorCode.PROFILE_NOT_FOUND)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class APIErrorType(Enum):
    """Classification of catalog API errors."""
    TRANSIENT = "transient"  # network issues, 5xx
    AUTH = "auth"  # 401, 403
    QUOTA = "quota"  # 429
    NOT_FOUND = "not_found"  # 404
    UNKNOWN = "unknown"


class APIError(Exception):
    """Base exception for catalog API errors."""

    def __init__(self, message: str, error_type: APIErrorType, status_code: Optional[int] = None,
                 original_error: Optional[Exception] = None):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error
        super().__init__(message)


class TransientError(APIError):
    """Temporary error that may succeed on retry."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 original_error: Optional[Exception] = None):
        super().__init__(message, APIErrorType.TRANSIENT, status_code, original_error)


class AuthError(APIError):
    """Missing or rejected catalog credentials."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, APIErrorType.AUTH, status_code)


class QuotaError(APIError):
    """Catalog rate limit exceeded."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, APIErrorType.QUOTA, status_code)


class NotFoundError(APIError):
    """Catalog resource not found."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, APIErrorType.NOT_FOUND, status_code)
