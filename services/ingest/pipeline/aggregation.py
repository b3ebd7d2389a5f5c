"""Pure selection and aggregation steps for one cell. No I/O."""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from services.ingest.config import (
    CATEGORY_PRIORITY,
    RANK_WEIGHT_RATING,
    RANK_WEIGHT_RATING_COUNT,
)
from services.ingest.types import CatalogEntry, CatalogEntryDetail, GeoCell, VenueRecord

REVIEW_SEPARATOR = "\n\n"


@dataclass
class ReviewAggregate:
    text: str
    # Non-empty snippets seen, including ones that did not fit in text
    count: int


def filter_qualified(entries: Iterable[CatalogEntry], min_rating_count: int) -> list[CatalogEntry]:
    return [e for e in entries if (e.rating_count or 0) >= min_rating_count]


def composite_score(entry: CatalogEntry) -> float:
    return (
        (entry.rating_count or 0) * RANK_WEIGHT_RATING_COUNT
        + (entry.rating or 0) * RANK_WEIGHT_RATING
    )


def rank_venues(entries: Iterable[CatalogEntry]) -> list[CatalogEntry]:
    """Highest composite score first. sorted() is stable, so ties keep input order."""
    return sorted(entries, key=composite_score, reverse=True)


def select_top(ranked: Sequence[CatalogEntry], k: int) -> list[CatalogEntry]:
    return list(ranked[:k])


def aggregate_reviews(details: Iterable[CatalogEntryDetail], max_chars: int) -> ReviewAggregate:
    """
    Join review snippets (in details order) up to max_chars.

    Stops at the first snippet that would overflow the budget rather than
    cutting it; the count still covers every non-empty snippet.
    """
    snippets: list[str] = []
    for detail in details:
        for review in detail.reviews:
            text = (review.text or "").strip()
            if text:
                snippets.append(text)

    included: list[str] = []
    length = 0
    for snippet in snippets:
        added = len(snippet) + (len(REVIEW_SEPARATOR) if included else 0)
        if length + added > max_chars:
            break
        included.append(snippet)
        length += added

    return ReviewAggregate(text=REVIEW_SEPARATOR.join(included), count=len(snippets))


def primary_category(types: Optional[Sequence[str]]) -> Optional[str]:
    if not types:
        return None
    for category in CATEGORY_PRIORITY:
        if category in types:
            return category
    return types[0]


def to_venue_record(entry: CatalogEntry, cell: GeoCell) -> VenueRecord:
    """Catalog entry -> persisted venue. Falls back to the cell centroid for location."""
    return VenueRecord(
        external_id=entry.id,
        cell_id=cell.id,
        name=entry.name or "Unknown",
        category=primary_category(entry.types),
        rating=entry.rating,
        rating_count=entry.rating_count,
        location=entry.location or cell.centroid,
    )
