"""
Data manager for NextUp: user profile and status collections.

The DataManager is the single authority for profile and collection
mutations. It validates input, enforces the collection invariants, persists
through the StorageManager and publishes change events.

Invariants:
- One collection item per media id across watched, watching and will_watch
- An item lives in exactly one partition; status changes move it
- watched_date is stamped on the first move to watched and cleared on leaving it
- updated_at never decreases; added_at never changes

Every mutation is a full read-modify-write of the ``collections`` record,
serialized by a re-entrant lock so that one mutation always sees the
committed result of the previous one. Events are emitted only after the write
succeeded.

Reads are lenient: a corrupted or malformed profile is treated as absent and
malformed collection items are dropped from the result. Both cases are logged
and counted in ``nextup_lenient_read_drops_total``.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as SchemaError

from nextup.errors import (
    CollectionError,
    DataCorruptionError,
    DuplicateItemError,
    ErrorCode,
    ItemNotFoundError,
    ProfileNotFoundError,
    StorageError,
    ValidationError,
)
from nextup.events import (
    CollectionClearedEvent,
    DataChangeListener,
    EventBus,
    ItemAddedEvent,
    ItemRemovedEvent,
    ItemUpdatedEvent,
    ProfileUpdatedEvent,
    Subscription,
)
from nextup.helpers import (
    create_collection_item,
    find_collection_item_by_media_id,
    generate_id,
    touch,
    update_collection_item_status,
    utc_now,
)
from nextup.logging_config import get_logger
from nextup.metrics import track_lenient_drop
from nextup.schemas import (
    COLLECTIONS_KEY,
    IS_FIRST_LAUNCH_KEY,
    MAX_AGE,
    MAX_NAME_LENGTH,
    MAX_NOTES_LENGTH,
    MAX_PROGRESS,
    MAX_RATING,
    MIN_AGE,
    MIN_NAME_LENGTH,
    MIN_PROGRESS,
    MIN_RATING,
    USER_PROFILE_KEY,
    AppState,
    AppStateUpdate,
    CollectionItem,
    Collections,
    CollectionStatus,
    MediaItem,
    UserProfile,
)
from nextup.storage import StorageManager

logger = get_logger(__name__)

UPDATABLE_PROFILE_FIELDS = frozenset({"name", "age", "preferred_genres"})
GENRE_CONTAINERS = (list, tuple, set)


@dataclass
class ValidationResult:
    """
    Outcome of validating profile data.

    Attributes:
        is_valid: True when no rule was violated
        errors: One message per violated rule
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_user_profile(profile: Union[UserProfile, Mapping[str, Any]],
                          require_system_fields: bool = True) -> ValidationResult:
    """
    Check profile data against every rule and report all violations.

    Rules:
    - name present, trimmed length between 1 and 50
    - age an integer between 1 and 120
    - at least one preferred genre id
    - id, created_at and updated_at present (when ``require_system_fields``)

    Args:
        profile: A UserProfile or a mapping with snake_case keys
        require_system_fields: Also require the stamped system fields

    Returns:
        ValidationResult listing every violated rule
    """
    data = profile.model_dump() if isinstance(profile, UserProfile) else dict(profile)
    errors: List[str] = []

    name = data.get("name")
    trimmed = name.strip() if isinstance(name, str) else ""
    if len(trimmed) < MIN_NAME_LENGTH:
        errors.append("Name is required")
    elif len(trimmed) > MAX_NAME_LENGTH:
        errors.append(f"Name cannot exceed {MAX_NAME_LENGTH} characters")

    age = data.get("age")
    if not _is_int(age) or not MIN_AGE <= age <= MAX_AGE:
        errors.append(f"Age must be between {MIN_AGE} and {MAX_AGE}")

    genres = data.get("preferred_genres")
    if not genres:
        errors.append("At least one preferred genre is required")
    elif not isinstance(genres, GENRE_CONTAINERS) or not all(_is_int(genre) for genre in genres):
        errors.append("Preferred genres must be genre ids")

    if require_system_fields and not (data.get("id") and data.get("created_at") and data.get("updated_at")):
        errors.append("Profile is missing required system fields")

    return ValidationResult(is_valid=not errors, errors=errors)


def _dedupe_genres(genres: Any) -> Any:
    if isinstance(genres, GENRE_CONTAINERS):
        return list(dict.fromkeys(genres))
    return genres


def _raise_if_invalid(result: ValidationResult) -> None:
    if not result.is_valid:
        raise ValidationError(
            f"Invalid profile data: {', '.join(result.errors)}",
            ErrorCode.INVALID_PROFILE_DATA,
            result.errors,
        )


class DataManager:
    """High-level profile and collection operations over a StorageManager."""

    def __init__(self, storage: StorageManager, events: Optional[EventBus] = None):
        """
        Args:
            storage: Key-value store holding all app state
            events: Event bus for change notifications (default: a private bus)
        """
        self.storage = storage
        self.events = events if events is not None else EventBus()
        self._write_lock = threading.RLock()
        self._cached_app_state: Optional[AppState] = None
        self._mutation_depth = 0

    # ========== Plumbing ==========

    def add_listener(self, listener: DataChangeListener) -> Subscription:
        """Subscribe to change events. Call ``unsubscribe()`` on the handle to stop."""
        return self.events.subscribe(listener)

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        with self._write_lock:
            outermost = self._mutation_depth == 0
            had_cache = self._cached_app_state is not None
            self._cached_app_state = None
            self._mutation_depth += 1
            try:
                yield
            finally:
                self._mutation_depth -= 1
            if outermost and had_cache:
                self._reload_cache()

    def _reload_cache(self) -> None:
        try:
            self.load_app_state()
        except CollectionError as e:
            logger.warning("app_state_reload_failed", code=e.code.value, error=e.message)

    @contextmanager
    def _storage_errors(self, code: ErrorCode, action: str) -> Iterator[None]:
        """Wrap storage failures into a CollectionError carrying ``code``."""
        try:
            yield
        except StorageError as e:
            logger.error("storage_failure", action=action, code=e.code.value, error=e.message)
            raise CollectionError(f"Failed to {action}: {e.message}", code, e) from e

    @property
    def cached_app_state(self) -> Optional[AppState]:
        """
        State from the last load_app_state.

        A successful mutation reloads it when it was populated. It is None
        before the first load, after a failed mutation, or when the reload
        could not read storage.
        """
        return self._cached_app_state

    # ========== App State ==========

    def load_app_state(self) -> AppState:
        """Load profile, collections and first-launch flag in one snapshot."""
        with self._write_lock:
            with self._storage_errors(ErrorCode.LOAD_STATE_ERROR, "load app state"):
                state = AppState(
                    user=self._load_user_profile(),
                    collections=self._load_collections(),
                    is_first_launch=self.is_first_launch(),
                )
            self._cached_app_state = state
            return state

    def save_app_state(self, update: Union[AppStateUpdate, Mapping[str, Any]]) -> None:
        """
        Persist the sub-fields explicitly present in ``update``.

        ``user`` set to None removes the profile. Only a profile change emits
        an event (PROFILE_UPDATED).
        """
        if not isinstance(update, AppStateUpdate):
            update = AppStateUpdate.model_validate(update)
        provided = update.model_fields_set

        with self._mutation():
            if "user" in provided and update.user is not None:
                _raise_if_invalid(validate_user_profile(update.user))
            if "collections" in provided and update.collections is not None:
                self._check_unique_media(update.collections)

            with self._storage_errors(ErrorCode.SAVE_STATE_ERROR, "save app state"):
                if "user" in provided:
                    self._write_profile(update.user)
                if "collections" in provided and update.collections is not None:
                    self.storage.set(COLLECTIONS_KEY, update.collections.to_storage())
                if "is_first_launch" in provided and update.is_first_launch is not None:
                    self.storage.set(IS_FIRST_LAUNCH_KEY, update.is_first_launch)

            if "user" in provided:
                self.events.emit(ProfileUpdatedEvent(profile=update.user))

    # ========== User Profile ==========

    def _load_user_profile(self) -> Optional[UserProfile]:
        try:
            raw = self.storage.get(USER_PROFILE_KEY)
        except DataCorruptionError:
            logger.warning("profile_corrupted", action="treated_as_absent")
            track_lenient_drop("user_profile")
            return None

        if raw is None:
            return None

        try:
            return UserProfile.model_validate(raw)
        except SchemaError as e:
            logger.warning("profile_invalid", action="cleared", error_count=e.error_count())
            track_lenient_drop("user_profile")
            self.storage.remove(USER_PROFILE_KEY)
            return None

    def _write_profile(self, profile: Optional[UserProfile]) -> None:
        if profile is None:
            self.storage.remove(USER_PROFILE_KEY)
        else:
            self.storage.set(USER_PROFILE_KEY, profile.to_storage())

    def get_user_profile(self) -> Optional[UserProfile]:
        """Stored profile, or None if absent, corrupted or malformed."""
        with self._storage_errors(ErrorCode.GET_PROFILE_ERROR, "get user profile"):
            return self._load_user_profile()

    def save_user_profile(self, profile: Optional[UserProfile]) -> None:
        """Validate and persist ``profile``; None removes it. Emits PROFILE_UPDATED."""
        with self._mutation():
            if profile is not None:
                _raise_if_invalid(validate_user_profile(profile))

            with self._storage_errors(ErrorCode.SAVE_PROFILE_ERROR, "save user profile"):
                self._write_profile(profile)

            logger.info("profile_saved", profile_id=profile.id if profile else None)
            self.events.emit(ProfileUpdatedEvent(profile=profile))

    def create_user_profile(self, name: str, age: int, preferred_genres) -> UserProfile:
        """
        Create and persist the user profile.

        Raises:
            ValidationError: INVALID_PROFILE_DATA, with every violated rule
        """
        now = utc_now()
        data = {
            "id": generate_id(),
            "name": name.strip() if isinstance(name, str) else name,
            "age": age,
            "preferred_genres": _dedupe_genres(preferred_genres),
            "created_at": now,
            "updated_at": now,
        }
        _raise_if_invalid(validate_user_profile(data))

        profile = UserProfile(**data)
        self.save_user_profile(profile)
        return profile

    def update_user_profile(self, updates: Optional[Mapping[str, Any]] = None, **kwargs) -> UserProfile:
        """
        Merge ``updates`` (name, age, preferred_genres) onto the stored profile.

        Raises:
            ValidationError: Unknown or system fields, or invalid merged data
            ProfileNotFoundError: No profile exists yet
        """
        changes = {**(updates or {}), **kwargs}
        rejected = sorted(set(changes) - UPDATABLE_PROFILE_FIELDS)
        if rejected:
            raise ValidationError(
                f"Invalid profile data: fields cannot be updated: {', '.join(rejected)}",
                ErrorCode.INVALID_PROFILE_DATA,
            )

        if isinstance(changes.get("name"), str):
            changes["name"] = changes["name"].strip()
        if changes.get("preferred_genres") is not None:
            changes["preferred_genres"] = _dedupe_genres(changes["preferred_genres"])

        with self._mutation():
            with self._storage_errors(ErrorCode.GET_PROFILE_ERROR, "get user profile"):
                current = self._load_user_profile()
            if current is None:
                raise ProfileNotFoundError()

            merged = {**current.model_dump(), **changes, "updated_at": touch(current.updated_at)}
            _raise_if_invalid(validate_user_profile(merged))

            profile = UserProfile(**merged)
            self.save_user_profile(profile)
            return profile

    def is_first_launch(self) -> bool:
        """True unless first launch was explicitly completed. Unreadable counts as True."""
        try:
            value = self.storage.get(IS_FIRST_LAUNCH_KEY)
        except StorageError as e:
            logger.warning("first_launch_unreadable", error=e.message)
            return True
        return value is not False

    def complete_first_launch(self) -> None:
        with self._mutation():
            with self._storage_errors(ErrorCode.SAVE_STATE_ERROR, "complete first launch"):
                self.storage.set(IS_FIRST_LAUNCH_KEY, False)

    # ========== Collections ==========

    def _load_collections(self) -> Collections:
        try:
            raw = self.storage.get(COLLECTIONS_KEY)
        except DataCorruptionError:
            logger.warning("collections_corrupted", action="treated_as_empty")
            track_lenient_drop("collections")
            return Collections()

        if raw is None:
            return Collections()
        if not isinstance(raw, dict):
            logger.warning("collections_malformed", action="treated_as_empty", found=type(raw).__name__)
            track_lenient_drop("collections")
            return Collections()

        partitions = {}
        dropped = 0
        for status in CollectionStatus:
            entries = raw.get(status.value) or []
            if not isinstance(entries, list):
                entries = []
                dropped += 1
            valid = []
            for entry in entries:
                try:
                    valid.append(CollectionItem.model_validate(entry))
                except SchemaError:
                    dropped += 1
            partitions[status.value] = valid

        if dropped:
            logger.warning("lenient_read_dropped_items", count=dropped)
            track_lenient_drop("collection_item", dropped)
        return Collections(**partitions)

    def _persist_collections(self, collections: Collections) -> None:
        self.storage.set(COLLECTIONS_KEY, collections.to_storage())

    @staticmethod
    def _locate(collections: Collections, item_id: str) -> Optional[Tuple[CollectionStatus, int]]:
        for status in CollectionStatus:
            for index, item in enumerate(collections.partition(status)):
                if item.id == item_id:
                    return status, index
        return None

    @staticmethod
    def _check_unique_media(collections: Collections) -> None:
        seen = set()
        for item in collections.all_items():
            if item.media_item.id in seen:
                raise DuplicateItemError(item.media_item.id)
            seen.add(item.media_item.id)

    def get_all_collections(self) -> Collections:
        """All three partitions; malformed items are dropped, corruption reads as empty."""
        with self._storage_errors(ErrorCode.GET_COLLECTIONS_ERROR, "get collections"):
            return self._load_collections()

    def save_all_collections(self, collections: Union[Collections, Mapping[str, Any]]) -> None:
        """
        Replace the whole collections record.

        Raises:
            DuplicateItemError: The record tracks a media id more than once
        """
        if not isinstance(collections, Collections):
            collections = Collections.model_validate(collections)
        self._check_unique_media(collections)

        with self._mutation():
            with self._storage_errors(ErrorCode.SAVE_COLLECTIONS_ERROR, "save collections"):
                self._persist_collections(collections)

    def add_item(self, media_item: Union[MediaItem, Mapping[str, Any]], status: CollectionStatus) -> CollectionItem:
        """
        Start tracking ``media_item`` in ``status``.

        Raises:
            DuplicateItemError: The media id is already tracked in any partition
        """
        if not isinstance(media_item, MediaItem):
            media_item = MediaItem.model_validate(media_item)
        status = CollectionStatus(status)

        with self._mutation():
            with self._storage_errors(ErrorCode.ADD_ITEM_ERROR, "add item to collection"):
                collections = self._load_collections()
                if find_collection_item_by_media_id(media_item.id, collections.all_items()):
                    raise DuplicateItemError(media_item.id)

                new_item = create_collection_item(media_item, status)
                collections.partition(status).append(new_item)
                self._persist_collections(collections)

            logger.info("item_added", item_id=new_item.id, media_id=media_item.id, status=status.value)
            self.events.emit(ItemAddedEvent(item=new_item))
            return new_item

    def remove_item(self, item_id: str) -> None:
        """
        Stop tracking the item with ``item_id``.

        Raises:
            ItemNotFoundError: No partition holds the item
        """
        with self._mutation():
            with self._storage_errors(ErrorCode.REMOVE_ITEM_ERROR, "remove item"):
                collections = self._load_collections()
                location = self._locate(collections, item_id)
                if location is None:
                    raise ItemNotFoundError(item_id)

                status, index = location
                del collections.partition(status)[index]
                self._persist_collections(collections)

            logger.info("item_removed", item_id=item_id, status=status.value)
            self.events.emit(ItemRemovedEvent(item_id=item_id))

    def update_item_status(self, item_id: str, new_status: CollectionStatus) -> CollectionItem:
        """
        Move an item to ``new_status``.

        The item is re-appended even when the status does not change, which
        still bumps ``updated_at``.

        Raises:
            ItemNotFoundError: No partition holds the item
        """
        new_status = CollectionStatus(new_status)

        with self._mutation():
            with self._storage_errors(ErrorCode.UPDATE_STATUS_ERROR, "update item status"):
                collections = self._load_collections()
                location = self._locate(collections, item_id)
                if location is None:
                    raise ItemNotFoundError(item_id)

                status, index = location
                item = collections.partition(status).pop(index)
                updated_item = update_collection_item_status(item, new_status)
                collections.partition(new_status).append(updated_item)
                self._persist_collections(collections)

            logger.info("item_status_updated", item_id=item_id, old_status=status.value, new_status=new_status.value)
            self.events.emit(ItemUpdatedEvent(item=updated_item))
            return updated_item

    def update_item_rating(self, item_id: str, rating: int) -> CollectionItem:
        if not _is_int(rating) or not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(
                f"Rating must be between {MIN_RATING} and {MAX_RATING}",
                ErrorCode.INVALID_RATING,
            )
        return self._update_item_field(item_id, user_rating=rating)

    def update_item_notes(self, item_id: str, notes: str) -> CollectionItem:
        """Store ``notes`` trimmed. The length limit applies before trimming."""
        if not isinstance(notes, str):
            raise TypeError(f"notes must be a string, got {type(notes).__name__}")
        if len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(
                f"Notes cannot exceed {MAX_NOTES_LENGTH} characters",
                ErrorCode.NOTES_TOO_LONG,
            )
        return self._update_item_field(item_id, notes=notes.strip())

    def update_item_progress(self, item_id: str, progress: int) -> CollectionItem:
        if not _is_int(progress) or not MIN_PROGRESS <= progress <= MAX_PROGRESS:
            raise ValidationError(
                f"Progress must be between {MIN_PROGRESS} and {MAX_PROGRESS}",
                ErrorCode.INVALID_PROGRESS,
            )
        return self._update_item_field(item_id, progress=progress)

    def _update_item_field(self, item_id: str, **updates) -> CollectionItem:
        with self._mutation():
            with self._storage_errors(ErrorCode.UPDATE_FIELD_ERROR, "update item field"):
                collections = self._load_collections()
                location = self._locate(collections, item_id)
                if location is None:
                    raise ItemNotFoundError(item_id)

                status, index = location
                partition = collections.partition(status)
                item = partition[index]
                updated_item = item.model_copy(update={**updates, "updated_at": touch(item.updated_at)})
                partition[index] = updated_item
                self._persist_collections(collections)

            logger.info("item_updated", item_id=item_id, fields=sorted(updates))
            self.events.emit(ItemUpdatedEvent(item=updated_item))
            return updated_item

    def get_items_by_status(self, status: CollectionStatus) -> List[CollectionItem]:
        return list(self.get_all_collections().partition(status))

    def find_item_by_media_id(self, media_id: int) -> Optional[CollectionItem]:
        return find_collection_item_by_media_id(media_id, self.get_all_collections().all_items())

    def get_all_items(self) -> List[CollectionItem]:
        """Every tracked item: watched, then watching, then will_watch."""
        return self.get_all_collections().all_items()

    def clear_collection(self, status: CollectionStatus) -> None:
        """Empty one partition. Emits COLLECTION_CLEARED."""
        status = CollectionStatus(status)

        with self._mutation():
            with self._storage_errors(ErrorCode.CLEAR_COLLECTION_ERROR, "clear collection"):
                collections = self._load_collections()
                cleared = len(collections.partition(status))
                collections.partition(status).clear()
                self._persist_collections(collections)

            logger.info("collection_cleared", status=status.value, count=cleared)
            self.events.emit(CollectionClearedEvent(status=status))
