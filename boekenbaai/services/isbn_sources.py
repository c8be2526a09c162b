"""Bibliographic metadata sources queried by the ISBN metadata cache.

Each source answers ``fetch(isbn)`` with a loosely shaped payload (later
normalized by ``normalize_isbn_metadata``), ``None`` when the ISBN is unknown
to it, or raises ``MetadataSourceError`` when the service cannot be reached or
answers with an unexpected status.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from boekenbaai.config import Settings, settings as default_settings
from boekenbaai.errors import ExternalServiceError
from boekenbaai.services.http_client import PooledHTTPClient, get_http_client

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Awaitable[PooledHTTPClient]]


class MetadataSourceError(ExternalServiceError):
    """Raised when a metadata source fails for reasons other than not-found."""


class RateLimitExceeded(MetadataSourceError):
    """Raised when a metadata source answers 429."""


class MetadataSource:
    """Base class for metadata sources; subclasses implement ``fetch``."""

    name = "source"

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self._client_factory = client_factory or get_http_client

    async def fetch(self, isbn: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        client = await self._client_factory()
        try:
            response = await client.get_with_retry(url, params=params)
        except httpx.HTTPError as exc:
            raise MetadataSourceError(f"{self.name} is unreachable: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code == 429:
            raise RateLimitExceeded(f"{self.name} rate limit exceeded")
        if response.status_code != 200:
            raise MetadataSourceError(f"{self.name} answered HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise MetadataSourceError(f"{self.name} returned invalid JSON") from exc


class GoogleBooksSource(MetadataSource):
    """Google Books volumes API."""

    name = "google_books"
    base_url = "https://www.googleapis.com/books/v1"

    def __init__(self, api_key: Optional[str] = None, client_factory: Optional[ClientFactory] = None):
        super().__init__(client_factory)
        self.api_key = api_key

    async def fetch(self, isbn: str) -> Optional[Dict[str, Any]]:
        params: Dict[str, Any] = {"q": f"isbn:{isbn}", "maxResults": 1}
        if self.api_key:
            params["key"] = self.api_key

        response = await self._get_json(f"{self.base_url}/volumes", params)
        if not response or response.get("totalItems", 0) == 0:
            logger.info(f"Book not found in Google Books: ISBN {isbn}")
            return None
        items = response.get("items") or []
        if not items:
            return None
        return self._parse_volume_info(items[0], isbn)

    def _parse_volume_info(self, volume_data: Dict[str, Any], isbn: str) -> Dict[str, Any]:
        volume_info = volume_data.get("volumeInfo", {})
        return {
            "barcode": isbn,
            "title": volume_info.get("title", ""),
            "authors": volume_info.get("authors", []),
            "description": volume_info.get("description", ""),
            "publisher": volume_info.get("publisher", ""),
            "publishedDate": volume_info.get("publishedDate"),
            "pageCount": volume_info.get("pageCount"),
            "language": volume_info.get("language", ""),
            "imageLinks": volume_info.get("imageLinks", {}),
            "categories": volume_info.get("categories", []),
            "source": self.name,
        }


class OpenLibrarySource(MetadataSource):
    """Open Library books API (``jscmd=data``)."""

    name = "open_library"
    base_url = "https://openlibrary.org"

    async def fetch(self, isbn: str) -> Optional[Dict[str, Any]]:
        params = {"bibkeys": f"ISBN:{isbn}", "format": "json", "jscmd": "data"}
        response = await self._get_json(f"{self.base_url}/api/books", params)
        book_json = (response or {}).get(f"ISBN:{isbn}")
        if not book_json:
            logger.info(f"Book not found in Open Library: ISBN {isbn}")
            return None
        return {
            "barcode": isbn,
            "title": book_json.get("title", ""),
            "authors": book_json.get("authors", []),
            "description": book_json.get("notes") or book_json.get("description", ""),
            "publishers": book_json.get("publishers", []),
            "publish_date": book_json.get("publish_date"),
            "number_of_pages": book_json.get("number_of_pages"),
            "languages": book_json.get("languages", []),
            "cover": book_json.get("cover", {}),
            "subjects": (book_json.get("subjects") or [])[:10],
            "source": self.name,
        }


def build_default_sources(config: Optional[Settings] = None) -> List[MetadataSource]:
    """Sources in priority order according to the feature flags."""
    config = config or default_settings
    if config.isbn_offline:
        return []
    sources: List[MetadataSource] = []
    if config.enable_google_books:
        sources.append(GoogleBooksSource(api_key=config.google_books_api_key))
    if config.enable_open_library:
        sources.append(OpenLibrarySource())
    return sources
