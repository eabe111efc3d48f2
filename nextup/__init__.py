"""
NextUp - personal movie and TV tracking

Storage, collection management, statistics and catalog search for an app
that tracks what a user has watched, is watching and will watch.
"""

__version__ = "1.0.0"

from .errors import (
    ErrorCode,
    NextUpError,
    StorageError,
    CollectionError,
    ValidationError,
    DuplicateItemError,
    ItemNotFoundError,
    ProfileNotFoundError,
)
from .storage import StorageManager, MemoryBackend, FileBackend, Migration
from .data_manager import DataManager, ValidationResult, validate_user_profile
from .events import EventBus, EventType
from .schemas import CollectionItem, CollectionStatus, MediaItem, MediaType, UserProfile

__all__ = [
    "ErrorCode",
    "NextUpError",
    "StorageError",
    "CollectionError",
    "ValidationError",
    "DuplicateItemError",
    "ItemNotFoundError",
    "ProfileNotFoundError",
    "StorageManager",
    "MemoryBackend",
    "FileBackend",
    "Migration",
    "DataManager",
    "ValidationResult",
    "validate_user_profile",
    "EventBus",
    "EventType",
    "CollectionItem",
    "CollectionStatus",
    "MediaItem",
    "MediaType",
    "UserProfile",
]
