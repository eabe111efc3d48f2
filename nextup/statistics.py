"""
Watch statistics for NextUp.

Pure functions over collection items; nothing here touches storage. Day
boundaries (streaks, monthly buckets) are computed in UTC.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from nextup.logging_config import get_logger
from nextup.schemas import CollectionItem, Collections, CollectionStatus, MediaType

logger = get_logger(__name__)

# Placeholder watch-time heuristic
MOVIE_HOURS = 2
TV_SHOW_HOURS = 10
TOP_GENRES_LIMIT = 5


@dataclass
class GenreCount:
    genre_id: int
    count: int


@dataclass
class WatchHistoryEntry:
    media_item_id: int
    title: str
    watched_date: datetime
    media_type: MediaType
    poster_path: Optional[str] = None
    rating: Optional[int] = None


@dataclass
class WatchStatistics:
    """
    Aggregates over a user's collections.

    ``average_rating`` is the mean *catalog* vote average of watched items
    (items with a zero vote average are ignored). ``average_user_rating`` is
    the mean of the user's own 1-10 ratings.
    """
    total_watched: int = 0
    total_watching: int = 0
    total_will_watch: int = 0
    total_movies: int = 0
    total_tv_shows: int = 0
    total_hours_watched: int = 0
    average_rating: float = 0.0
    average_user_rating: Optional[float] = None
    top_genres: List[GenreCount] = field(default_factory=list)
    favorite_years: List[int] = field(default_factory=list)
    viewing_streak: int = 0
    last_watch_date: Optional[datetime] = None
    genre_breakdown: Dict[str, int] = field(default_factory=dict)
    year_distribution: Dict[int, int] = field(default_factory=dict)
    monthly_activity: Dict[str, int] = field(default_factory=dict)
    yearly_activity: Dict[int, int] = field(default_factory=dict)


def _release_year(item: CollectionItem) -> Optional[int]:
    """Year from a ``YYYY-MM-DD`` release date, None when missing or malformed."""
    prefix = item.media_item.release_date[:4]
    if len(prefix) == 4 and prefix.isdigit():
        return int(prefix)
    return None


def _utc_day(moment: datetime) -> date:
    return moment.astimezone(timezone.utc).date()


def _count_media_type(items: Sequence[CollectionItem], media_type: MediaType) -> int:
    return sum(1 for item in items if item.media_item.media_type == media_type)


def _total_hours(items: Sequence[CollectionItem]) -> int:
    return sum(MOVIE_HOURS if item.media_item.media_type == MediaType.MOVIE else TV_SHOW_HOURS
               for item in items)


def _average_vote(items: Sequence[CollectionItem]) -> float:
    votes = [item.media_item.vote_average for item in items if item.media_item.vote_average]
    if not votes:
        return 0.0
    return round(sum(votes) / len(votes), 1)


def _average_user_rating(items: Sequence[CollectionItem]) -> Optional[float]:
    ratings = [item.user_rating for item in items if item.user_rating is not None]
    if not ratings:
        return None
    return round(sum(ratings) / len(ratings), 1)


def _genre_counts(items: Sequence[CollectionItem]) -> Counter:
    counts: Counter = Counter()
    for item in items:
        counts.update(item.media_item.genre_ids)
    return counts


def _year_distribution(items: Sequence[CollectionItem]) -> Dict[int, int]:
    years = (_release_year(item) for item in items)
    return dict(Counter(year for year in years if year is not None))


def _favorite_years(distribution: Dict[int, int]) -> List[int]:
    """Every release year tied for the highest count, in first-seen order."""
    if not distribution:
        return []
    top = max(distribution.values())
    return [year for year, count in distribution.items() if count == top]


def viewing_streak(items: Iterable[CollectionItem], today: Optional[date] = None) -> int:
    """
    Consecutive days with at least one watch, ending at the latest watch day.

    The streak is 0 when the latest watch day is neither today nor yesterday.
    """
    today = today or datetime.now(timezone.utc).date()
    days = sorted({_utc_day(item.watched_date) for item in items if item.watched_date}, reverse=True)
    if not days or (today - days[0]).days > 1:
        return 0

    streak = 1
    for newer, older in zip(days, days[1:]):
        if newer - older != timedelta(days=1):
            break
        streak += 1
    return streak


def _activity(items: Sequence[CollectionItem], fmt: str) -> Dict[str, int]:
    return dict(Counter(
        item.watched_date.astimezone(timezone.utc).strftime(fmt)
        for item in items if item.watched_date
    ))


def calculate_statistics(
    watched: Sequence[CollectionItem],
    watching: Sequence[CollectionItem] = (),
    will_watch: Sequence[CollectionItem] = (),
    today: Optional[date] = None,
) -> WatchStatistics:
    """
    Compute statistics from the three partitions.

    Everything except the partition totals is derived from ``watched``.

    Args:
        watched: Items in the watched partition
        watching: Items in the watching partition
        will_watch: Items in the will_watch partition
        today: UTC day the viewing streak is measured against (default: now)
    """
    watched = list(watched)
    genres = _genre_counts(watched)
    years = _year_distribution(watched)
    watch_dates = [item.watched_date for item in watched if item.watched_date]

    stats = WatchStatistics(
        total_watched=len(watched),
        total_watching=len(watching),
        total_will_watch=len(will_watch),
        total_movies=_count_media_type(watched, MediaType.MOVIE),
        total_tv_shows=_count_media_type(watched, MediaType.TV),
        total_hours_watched=_total_hours(watched),
        average_rating=_average_vote(watched),
        average_user_rating=_average_user_rating(watched),
        top_genres=[GenreCount(genre_id, count) for genre_id, count in genres.most_common(TOP_GENRES_LIMIT)],
        favorite_years=_favorite_years(years),
        viewing_streak=viewing_streak(watched, today),
        last_watch_date=max(watch_dates) if watch_dates else None,
        genre_breakdown={f"genre_{genre_id}": count for genre_id, count in genres.items()},
        year_distribution=years,
        monthly_activity=_activity(watched, "%Y-%m"),
        yearly_activity={int(year): count for year, count in _activity(watched, "%Y").items()},
    )

    logger.debug("statistics_calculated", total_watched=stats.total_watched, streak=stats.viewing_streak)
    return stats


def get_watch_history(items: Iterable[CollectionItem]) -> List[WatchHistoryEntry]:
    """Entries for items with a watched date, newest first."""
    history = [
        WatchHistoryEntry(
            media_item_id=item.media_item.id,
            title=item.media_item.title,
            watched_date=item.watched_date,
            media_type=item.media_item.media_type,
            poster_path=item.media_item.poster_path,
            rating=item.user_rating,
        )
        for item in items
        if item.watched_date
    ]
    history.sort(key=lambda entry: entry.watched_date, reverse=True)
    return history


def summarize_collections(collections: Collections) -> Dict[str, int]:
    """Item counts across all partitions: total, per status, movies and tv."""
    items = collections.all_items()
    summary = {
        "total": len(items),
        "movies": _count_media_type(items, MediaType.MOVIE),
        "tv": _count_media_type(items, MediaType.TV),
    }
    for status in CollectionStatus:
        summary[status.value] = len(collections.partition(status))
    return summary
