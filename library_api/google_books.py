import logging
import os
import re
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

from library_api.exceptions import ExternalCatalogError

load_dotenv()

GOOGLE_BOOKS_BASE_URL = "https://www.googleapis.com/books/v1"
GOOGLE_BOOKS_API_KEY = os.getenv("GOOGLE_BOOKS_API_KEY")
GOOGLE_BOOKS_TIMEOUT = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))
EXTERNAL_SOURCE = "google_books"

# Prefer the highest resolution cover available
IMAGE_LINK_KEYS = ["extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail"]
METADATA_KEYS = [
    "publisher",
    "pageCount",
    "language",
    "categories",
    "authors",
    "averageRating",
    "ratingsCount",
    "infoLink",
]

logger = logging.getLogger(__name__)


def normalize_published_date(value: Optional[str]) -> Optional[date]:
    """Google reports "2006", "2006-05" or "2006-05-23"; missing parts become 01."""
    if not value:
        return None
    match = re.match(r"^(\d{4})(?:-(\d{2}))?(?:-(\d{2}))?", value)
    if not match:
        return None
    year, month, day = match.groups()
    try:
        return date(int(year), int(month or 1), int(day or 1))
    except ValueError:
        return None


def best_cover_url(image_links: Dict[str, str]) -> Optional[str]:
    for key in IMAGE_LINK_KEYS:
        url = image_links.get(key)
        if url:
            if url.startswith("http://"):
                url = "https://" + url[len("http://"):]
            return url
    return None


class GoogleBooksClient:
    """Thin synchronous client for the Google Books volumes API."""

    def __init__(
        self,
        api_key: Optional[str] = GOOGLE_BOOKS_API_KEY,
        timeout: float = GOOGLE_BOOKS_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.client = httpx.Client(
            base_url=GOOGLE_BOOKS_BASE_URL, timeout=timeout, transport=transport
        )

    def close(self):
        self.client.close()

    def _get_volumes(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self.api_key:
            params["key"] = self.api_key
        try:
            response = self.client.get("/volumes", params=params)
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.error(f"Google Books request timed out: {params.get('q')}")
            raise ExternalCatalogError("Google Books request timed out")
        except httpx.HTTPStatusError as e:
            logger.error(f"Google Books request failed: {e.response.status_code} - {e.response.text}")
            raise ExternalCatalogError(
                f"Google Books request failed with status {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            logger.error(f"Google Books request failed: {e}")
            raise ExternalCatalogError("Google Books is unreachable")
        return response.json().get("items") or []

    def search(self, query: str, max_results: int = 10) -> List[Dict[str, Any]]:
        return self._get_volumes({"q": query, "maxResults": max_results})

    def _search_by_isbn(self, isbn: str) -> Optional[Dict[str, Any]]:
        volumes = self._get_volumes({"q": f"isbn:{isbn}", "maxResults": 1})
        return volumes[0] if volumes else None

    def search_by_isbn13(self, isbn13: str) -> Optional[Dict[str, Any]]:
        return self._search_by_isbn(isbn13)

    def search_by_isbn10(self, isbn10: str) -> Optional[Dict[str, Any]]:
        return self._search_by_isbn(isbn10)

    @staticmethod
    def to_book_data(volume: Dict[str, Any]) -> Dict[str, Any]:
        """Map a volume resource onto the columns of a Book."""
        info = volume.get("volumeInfo") or {}
        identifiers = {
            item.get("type"): item.get("identifier")
            for item in info.get("industryIdentifiers") or []
        }
        categories = info.get("categories") or []

        return {
            "title": (info.get("title") or "Untitled")[:255],
            "isbn10": identifiers.get("ISBN_10"),
            "isbn13": identifiers.get("ISBN_13"),
            "genre": categories[0][:100] if categories else None,
            "publication_date": normalize_published_date(info.get("publishedDate")),
            "description": info.get("description"),
            "cover_image_url": best_cover_url(info.get("imageLinks") or {}),
            "external_source": EXTERNAL_SOURCE,
            "external_id": volume.get("id"),
            "external_metadata": {key: info.get(key) for key in METADATA_KEYS if key in info},
        }


def get_catalog():
    catalog = GoogleBooksClient()
    try:
        yield catalog
    finally:
        catalog.close()
