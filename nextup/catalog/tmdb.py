"""
TMDB catalog: search and detail lookups returning NextUp media items.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError as SchemaError

from nextup.catalog.http_client import CatalogHTTPClient
from nextup.errors import AuthError
from nextup.metrics import track_catalog_request
from nextup.schemas import CatalogSearchResponse, MediaItem, MediaType

logger = logging.getLogger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"
IMAGE_BASE_URL = "https://image.tmdb.org/t/p/"
POSTER_SIZES = {"small": "w185", "medium": "w342", "large": "w500", "original": "original"}
BACKDROP_SIZES = {"small": "w300", "medium": "w780", "large": "w1280", "original": "original"}
UNKNOWN_TITLE = "Unknown Title"

_QUERY_DISALLOWED = re.compile(r"[^\w\s-]")


def get_image_url(path: Optional[str], size: str = POSTER_SIZES["medium"]) -> Optional[str]:
    """Full image URL for a TMDB ``poster_path``/``backdrop_path``, None without a path."""
    if not path:
        return None
    return f"{IMAGE_BASE_URL}{size}{path}"


def sanitize_search_query(query: str) -> str:
    """Trim and drop everything except word characters, whitespace and hyphens."""
    return _QUERY_DISALLOWED.sub("", query.strip())


def to_media_item(record: Dict[str, Any], media_type: Optional[MediaType] = None) -> MediaItem:
    """
    Build a MediaItem from a raw TMDB movie or TV record.

    Movies carry ``title``/``release_date`` while TV shows carry
    ``name``/``first_air_date``. Detail records list ``genres`` objects
    instead of ``genre_ids``.

    Raises:
        pydantic.ValidationError: The record lacks an id or a usable media type
    """
    genre_ids = record.get("genre_ids")
    if genre_ids is None:
        genre_ids = [genre["id"] for genre in record.get("genres") or [] if "id" in genre]

    return MediaItem(
        id=record.get("id"),
        title=record.get("title") or record.get("name") or UNKNOWN_TITLE,
        overview=record.get("overview") or "",
        poster_path=record.get("poster_path"),
        backdrop_path=record.get("backdrop_path"),
        release_date=record.get("release_date") or record.get("first_air_date") or "",
        vote_average=record.get("vote_average") or 0.0,
        genre_ids=genre_ids,
        media_type=media_type or record.get("media_type"),
        original_language=record.get("original_language") or "",
    )


@dataclass
class MediaDetails:
    """A detail lookup: the media item plus any appended sub-resources."""
    item: MediaItem
    extras: Dict[str, Any] = field(default_factory=dict)


class TMDBCatalog:
    """
    TMDB v3 API client.

    Credentials are either a v3 API key (sent as the ``api_key`` query
    parameter) or a v4 read access token (a JWT, sent as a bearer header).

    Configuration via environment variables:
    - TMDB_API_KEY: API key or read access token
    - TMDB_LANGUAGE: Response language (default: en-US)
    """

    def __init__(self, api_key: Optional[str] = None, language: Optional[str] = None,
                 client: Optional[CatalogHTTPClient] = None):
        self.api_key = api_key if api_key is not None else os.getenv("TMDB_API_KEY")
        self.language = language or os.getenv("TMDB_LANGUAGE", "en-US")
        self.client = client or CatalogHTTPClient()

    @property
    def uses_bearer_token(self) -> bool:
        return bool(self.api_key) and self.api_key.startswith("eyJ")

    def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise AuthError("TMDB API key not configured")

        query = {"language": self.language, **(params or {})}
        headers = {"Accept": "application/json"}
        if self.uses_bearer_token:
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            query["api_key"] = self.api_key

        return self.client.get_json(f"{TMDB_BASE_URL}{endpoint}", params=query, headers=headers, api_name="TMDB")

    def _search(self, endpoint: str, query: str, page: int, media_type: Optional[MediaType]) -> CatalogSearchResponse:
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if not query or not query.strip():
            return CatalogSearchResponse()

        data = self._request(endpoint, {"query": query.strip(), "page": page, "include_adult": "false"})

        results = []
        skipped = 0
        for record in data.get("results") or []:
            record_type = media_type or record.get("media_type")
            if record_type not in (MediaType.MOVIE.value, MediaType.TV.value):
                continue
            try:
                results.append(to_media_item(record, MediaType(record_type)))
            except SchemaError:
                skipped += 1

        if skipped:
            logger.warning(f"TMDB {endpoint}: skipped {skipped} malformed result(s)")

        return CatalogSearchResponse(
            page=data.get("page", page),
            results=results,
            total_pages=data.get("total_pages", 0),
            total_results=data.get("total_results", 0),
        )

    @track_catalog_request("search_multi")
    def search_multi(self, query: str, page: int = 1) -> CatalogSearchResponse:
        """Search movies and TV shows together; people and other kinds are dropped."""
        return self._search("/search/multi", query, page, None)

    @track_catalog_request("search_movies")
    def search_movies(self, query: str, page: int = 1) -> CatalogSearchResponse:
        return self._search("/search/movie", query, page, MediaType.MOVIE)

    @track_catalog_request("search_tv")
    def search_tv(self, query: str, page: int = 1) -> CatalogSearchResponse:
        return self._search("/search/tv", query, page, MediaType.TV)

    def _details(self, media_type: MediaType, media_id: int, extras: Iterable[str]) -> MediaDetails:
        extras = list(extras)
        params = {"append_to_response": ",".join(extras)} if extras else None
        data = self._request(f"/{media_type.value}/{media_id}", params)
        return MediaDetails(
            item=to_media_item(data, media_type),
            extras={name: data[name] for name in extras if name in data},
        )

    @track_catalog_request("movie_details")
    def get_movie_details(self, movie_id: int, extras: Iterable[str] = ()) -> MediaDetails:
        """
        Look up one movie.

        Args:
            movie_id: TMDB movie id
            extras: Sub-resources to append, e.g. ("credits", "videos")
        """
        return self._details(MediaType.MOVIE, movie_id, extras)

    @track_catalog_request("tv_details")
    def get_tv_details(self, tv_id: int, extras: Iterable[str] = ()) -> MediaDetails:
        return self._details(MediaType.TV, tv_id, extras)

    def get_details(self, media_id: int, media_type: MediaType, extras: Iterable[str] = ()) -> MediaDetails:
        if MediaType(media_type) == MediaType.MOVIE:
            return self.get_movie_details(media_id, extras)
        return self.get_tv_details(media_id, extras)
