from nextup.catalog.http_client import CatalogHTTPClient
from nextup.catalog.tmdb import (
    MediaDetails,
    TMDBCatalog,
    get_image_url,
    sanitize_search_query,
    to_media_item,
)

__all__ = [
    "CatalogHTTPClient",
    "MediaDetails",
    "TMDBCatalog",
    "get_image_url",
    "sanitize_search_query",
    "to_media_item",
]
