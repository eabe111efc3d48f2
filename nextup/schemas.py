"""
Data schemas for NextUp.

Pydantic models for the user profile, catalog media items, tracked collection
items and the aggregate app state. Python attributes are snake_case; the
persisted JSON uses camelCase keys (``model_dump(by_alias=True)``) so stored
data keeps the layout used by the mobile client.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# Validation bounds
MIN_NAME_LENGTH = 1
MAX_NAME_LENGTH = 50
MIN_AGE = 1
MAX_AGE = 120
MIN_RATING = 1
MAX_RATING = 10
MAX_NOTES_LENGTH = 500
MIN_PROGRESS = 0
MAX_PROGRESS = 100

# Logical storage keys
USER_PROFILE_KEY = "user_profile"
COLLECTIONS_KEY = "collections"
IS_FIRST_LAUNCH_KEY = "is_first_launch"


class MediaType(str, Enum):
    MOVIE = "movie"
    TV = "tv"


class CollectionStatus(str, Enum):
    WATCHED = "watched"
    WATCHING = "watching"
    WILL_WATCH = "will_watch"


class ThemePreference(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


class CamelModel(BaseModel):
    """Base model: camelCase aliases on disk, timezone-aware timestamps."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def ensure_utc(cls, v: Any) -> Any:
        """Treat naive timestamps as UTC so they compare with stamped ones."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_storage(self) -> dict:
        """JSON-compatible dict with on-disk key names."""
        return self.model_dump(mode="json", by_alias=True)


class UserProfile(CamelModel):
    """
    The single user of the installation.

    Only the shape is enforced here; the business rules (name length, age
    range, at least one genre) live in ``validate_user_profile`` so that every
    violation can be reported at once.
    """
    id: str = Field(..., description="Opaque profile identifier")
    name: str = Field(..., description="Display name")
    age: int = Field(..., description="Age in years")
    preferred_genres: List[int] = Field(default_factory=list, description="TMDB genre ids")
    created_at: datetime
    updated_at: datetime


class MediaItem(CamelModel):
    """A catalog entry (movie or TV show). Immutable once embedded in an item."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Catalog (TMDB) id")
    title: str
    overview: str = ""
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    release_date: str = Field("", description="Release or first air date, YYYY-MM-DD")
    vote_average: float = Field(0.0, ge=0, le=10, description="Catalog vote average")
    genre_ids: List[int] = Field(default_factory=list)
    media_type: MediaType
    original_language: str = ""


class CollectionItem(CamelModel):
    """A user's tracking record for one media item."""
    id: str
    media_item: MediaItem
    status: CollectionStatus
    added_at: datetime
    updated_at: datetime
    user_rating: Optional[int] = Field(None, ge=MIN_RATING, le=MAX_RATING)
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)
    watched_date: Optional[datetime] = None
    progress: Optional[int] = Field(None, ge=MIN_PROGRESS, le=MAX_PROGRESS)


class Collections(BaseModel):
    """The three disjoint status partitions, persisted as one record."""
    watched: List[CollectionItem] = Field(default_factory=list)
    watching: List[CollectionItem] = Field(default_factory=list)
    will_watch: List[CollectionItem] = Field(default_factory=list)

    def partition(self, status: CollectionStatus) -> List[CollectionItem]:
        """Return the (mutable) list for ``status``."""
        return getattr(self, CollectionStatus(status).value)

    def all_items(self) -> List[CollectionItem]:
        return [*self.watched, *self.watching, *self.will_watch]

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class AppState(CamelModel):
    """Aggregate of everything the application shell needs at startup."""
    user: Optional[UserProfile] = None
    collections: Collections = Field(default_factory=Collections)
    theme: ThemePreference = ThemePreference.SYSTEM
    is_first_launch: bool = True


class AppStateUpdate(CamelModel):
    """
    Partial app state.

    Only fields set explicitly are written; ``user=None`` passed explicitly
    removes the profile, while omitting ``user`` leaves it untouched.
    """
    user: Optional[UserProfile] = None
    collections: Optional[Collections] = None
    is_first_launch: Optional[bool] = None


class CatalogSearchResponse(CamelModel):
    """One page of catalog search results."""
    page: int = 1
    results: List[MediaItem] = Field(default_factory=list)
    total_pages: int = 0
    total_results: int = 0
