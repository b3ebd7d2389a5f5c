"""
Google Places API (v1) client for grid-cell venue discovery.

Nearby search per place type around a cell centroid, merged and
deduplicated by place id; place details (with reviews) fetched for the
top venues only, cached for the whole run so a venue returned by
overlapping cell searches is billed once.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

from services.ingest.clients.base import RateLimiter, RetryPolicy, log_retry, with_retry
from services.ingest.config import PLACE_TYPES
from services.ingest.types import (
    CatalogEntry,
    CatalogEntryDetail,
    Coordinate,
    ReviewSnippet,
)

logger = logging.getLogger(__name__)

NEARBY_SEARCH_URL = "https://places.googleapis.com/v1/places:searchNearby"
PLACE_DETAILS_URL = "https://places.googleapis.com/v1/places"

NEARBY_SEARCH_FIELDS = ",".join([
    "places.id",
    "places.displayName",
    "places.rating",
    "places.userRatingCount",
    "places.types",
    "places.location",
])

PLACE_DETAILS_FIELDS = ",".join([
    "id",
    "displayName",
    "rating",
    "userRatingCount",
    "types",
    "location",
    "reviews.text.text",
    "reviews.rating",
    "reviews.relativePublishTimeDescription",
])


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _parse_location(raw: Any) -> Optional[Coordinate]:
    if not isinstance(raw, dict):
        return None
    lat = raw.get("latitude")
    lng = raw.get("longitude")
    if lat is None or lng is None:
        return None
    return Coordinate(lat=float(lat), lng=float(lng))


def _entry_fields(raw: dict[str, Any]) -> dict[str, Any]:
    display = raw.get("displayName") or {}
    rating = raw.get("rating")
    count = raw.get("userRatingCount")
    return {
        "id": raw["id"],
        "name": display.get("text") if isinstance(display, dict) else None,
        "rating": float(rating) if rating is not None else None,
        "rating_count": int(count) if count is not None else None,
        "types": list(raw.get("types") or []),
        "location": _parse_location(raw.get("location")),
    }


def parse_place(raw: dict[str, Any]) -> Optional[CatalogEntry]:
    """Map a nearby-search place to a CatalogEntry. None if it has no id or bad fields."""
    if not raw.get("id"):
        logger.warning("Skipping place without id: %s", str(raw)[:200])
        return None
    try:
        fields = _entry_fields(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Skipping malformed place %s: %s", raw["id"], exc)
        return None
    return CatalogEntry(**fields)


def parse_place_details(raw: dict[str, Any]) -> CatalogEntryDetail:
    reviews = []
    for review in raw.get("reviews") or []:
        text_obj = review.get("text") or {}
        reviews.append(ReviewSnippet(
            text=text_obj.get("text") if isinstance(text_obj, dict) else None,
            rating=review.get("rating"),
            relative_time=review.get("relativePublishTimeDescription"),
        ))
    return CatalogEntryDetail(**_entry_fields(raw), reviews=reviews)


# ---------------------------------------------------------------------------
# Run-scoped details cache
# ---------------------------------------------------------------------------

class DetailsCache:
    """
    Place details keyed by place id, living for one run only.

    Unbounded by default (distinct venues per city run are in the low
    thousands). With max_entries set, least recently used entries are evicted.
    Ids whose lookup failed are remembered too, so they are not re-billed.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, CatalogEntryDetail]" = OrderedDict()
        self._failed: set[str] = set()

    def get(self, place_id: str) -> Optional[CatalogEntryDetail]:
        detail = self._entries.get(place_id)
        if detail is not None:
            self._entries.move_to_end(place_id)
        return detail

    def put(self, place_id: str, detail: CatalogEntryDetail) -> None:
        self._entries[place_id] = detail
        self._entries.move_to_end(place_id)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted %s from details cache", evicted)

    def mark_failed(self, place_id: str) -> None:
        self._failed.add(place_id)

    def has_failed(self, place_id: str) -> bool:
        return place_id in self._failed

    def __contains__(self, place_id: str) -> bool:
        return place_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._failed.clear()


@dataclass
class PlacesStats:
    search_calls: int = 0
    details_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    details_failed: int = 0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GooglePlacesClient:
    """
    Places catalog client: nearby search + place details.

    Every outbound call takes a token from the shared limiter and runs
    inside with_retry. Search failures propagate (they fail the cell);
    details failures degrade to None.
    """

    def __init__(
        self,
        api_key: str,
        rate_limiter: RateLimiter,
        *,
        http_client: httpx.AsyncClient,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[DetailsCache] = None,
        search_radius_meters: int = 212,
        max_results_per_type: int = 10,
    ):
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache if cache is not None else DetailsCache()
        self.search_radius_meters = search_radius_meters
        self.max_results_per_type = max_results_per_type
        self.stats = PlacesStats()
        self._client = http_client

    def reset(self) -> None:
        """Drop run-scoped state: cached details, failed ids and counters."""
        self.cache.clear()
        self.stats = PlacesStats()

    @property
    def cache_size(self) -> int:
        return len(self.cache)

    def _headers(self, field_mask: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": field_mask,
        }

    async def _post_json(self, url: str, body: dict[str, Any], field_mask: str) -> dict[str, Any]:
        response = await self._client.post(url, json=body, headers=self._headers(field_mask))
        response.raise_for_status()
        return response.json()

    async def _get_json(self, url: str, field_mask: str) -> dict[str, Any]:
        response = await self._client.get(url, headers=self._headers(field_mask))
        response.raise_for_status()
        return response.json()

    async def search(self, coordinate: Coordinate, category: str) -> list[CatalogEntry]:
        """Nearby search for a single place type around a coordinate."""
        await self.rate_limiter.acquire()

        body = {
            "includedTypes": [category],
            "maxResultCount": self.max_results_per_type,
            "locationRestriction": {
                "circle": {
                    "center": {"latitude": coordinate.lat, "longitude": coordinate.lng},
                    "radius": self.search_radius_meters,
                },
            },
        }

        self.stats.search_calls += 1
        data = await with_retry(
            lambda: self._post_json(NEARBY_SEARCH_URL, body, NEARBY_SEARCH_FIELDS),
            self.retry_policy,
            on_retry=log_retry(f"nearby search ({category})", self.retry_policy),
        )

        entries = []
        for raw in data.get("places") or []:
            entry = parse_place(raw)
            if entry is not None:
                entries.append(entry)
        return entries

    async def search_all_categories(
        self,
        coordinate: Coordinate,
        categories: Iterable[str] = PLACE_TYPES,
    ) -> list[CatalogEntry]:
        """Search every category in order; first occurrence of a place id wins."""
        merged: list[CatalogEntry] = []
        seen: set[str] = set()

        for category in categories:
            for entry in await self.search(coordinate, category):
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                merged.append(entry)

        return merged

    async def get_details(self, place_id: str) -> Optional[CatalogEntryDetail]:
        """Place details with reviews. Cached per run; None on failure."""
        cached = self.cache.get(place_id)
        if cached is not None:
            self.stats.cache_hits += 1
            return cached
        if self.cache.has_failed(place_id):
            self.stats.cache_hits += 1
            return None

        self.stats.cache_misses += 1
        await self.rate_limiter.acquire()

        url = f"{PLACE_DETAILS_URL}/{place_id}"
        self.stats.details_calls += 1
        try:
            data = await with_retry(
                lambda: self._get_json(url, PLACE_DETAILS_FIELDS),
                self.retry_policy,
                on_retry=log_retry(f"place details ({place_id})", self.retry_policy),
            )
            detail = parse_place_details({"id": place_id, **data})
        except Exception as exc:
            self.stats.details_failed += 1
            self.cache.mark_failed(place_id)
            logger.error("Failed to get details for %s: %s", place_id, exc)
            return None

        self.cache.put(place_id, detail)
        return detail
