"""
Utility functions for NextUp collections.
"""

import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from nextup.schemas import CollectionItem, CollectionStatus, MediaItem


def generate_id() -> str:
    """Generate a unique identifier."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def create_collection_item(media_item: MediaItem, status: CollectionStatus) -> CollectionItem:
    """Build a new collection item for ``media_item`` in ``status``."""
    now = utc_now()
    status = CollectionStatus(status)
    return CollectionItem(
        id=generate_id(),
        media_item=media_item,
        status=status,
        added_at=now,
        updated_at=now,
        watched_date=now if status == CollectionStatus.WATCHED else None,
    )


def touch(previous: datetime) -> datetime:
    """
    New ``updated_at`` value for an item last updated at ``previous``.

    Never earlier than ``previous``, even if the wall clock stepped back.
    """
    return max(utc_now(), previous)


def update_collection_item_status(item: CollectionItem, new_status: CollectionStatus) -> CollectionItem:
    """
    Return a copy of ``item`` moved to ``new_status``.

    Moving to watched stamps ``watched_date`` unless one is already set;
    moving anywhere else clears it.
    """
    new_status = CollectionStatus(new_status)
    updated_at = touch(item.updated_at)

    if new_status == CollectionStatus.WATCHED:
        watched_date = item.watched_date or updated_at
    else:
        watched_date = None

    return item.model_copy(update={
        "status": new_status,
        "updated_at": updated_at,
        "watched_date": watched_date,
    })


def find_collection_item_by_media_id(media_id: int, collection: Iterable[CollectionItem]) -> Optional[CollectionItem]:
    for item in collection:
        if item.media_item.id == media_id:
            return item
    return None


def is_media_in_collection(media_id: int, collection: Iterable[CollectionItem]) -> bool:
    return find_collection_item_by_media_id(media_id, collection) is not None


def sort_collection_by_date_added(items: Iterable[CollectionItem]) -> List[CollectionItem]:
    """Newest first."""
    return sorted(items, key=lambda item: item.added_at, reverse=True)


def sort_collection_by_title(items: Iterable[CollectionItem]) -> List[CollectionItem]:
    """Case-insensitive A-Z."""
    return sorted(items, key=lambda item: item.media_item.title.casefold())


def sort_collection_by_rating(items: Iterable[CollectionItem]) -> List[CollectionItem]:
    """Highest catalog vote average first."""
    return sorted(items, key=lambda item: item.media_item.vote_average, reverse=True)
