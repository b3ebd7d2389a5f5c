"""
Data model for the city ingestion pipeline.

GeoCell comes from the store and is read-only here. CatalogEntry and
CatalogEntryDetail are transient catalog results; VenueRecord and
VibeScoreSet are what gets persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from services.ingest.config import VIBE_DIMENSIONS

# dimension -> score in [0, 1] or None
VibeScores = dict[str, Optional[float]]


def empty_vibe_scores() -> VibeScores:
    """All-null scores for cells with no usable signal."""
    return {dim: None for dim in VIBE_DIMENSIONS}


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def to_wkt(self) -> str:
        return f"POINT({self.lng} {self.lat})"


@dataclass(frozen=True)
class GeoCell:
    id: str
    area_id: str
    centroid: Coordinate


@dataclass
class CatalogEntry:
    """A venue as returned by nearby search."""
    id: str
    name: Optional[str] = None
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    types: list[str] = field(default_factory=list)
    location: Optional[Coordinate] = None


@dataclass
class ReviewSnippet:
    text: Optional[str] = None
    rating: Optional[float] = None
    relative_time: Optional[str] = None


@dataclass
class CatalogEntryDetail(CatalogEntry):
    """Place details: the entry plus its (catalog-bounded) review list."""
    reviews: list[ReviewSnippet] = field(default_factory=list)


@dataclass
class VenueRecord:
    external_id: str
    cell_id: str
    name: str
    category: Optional[str]
    rating: Optional[float]
    rating_count: Optional[int]
    location: Coordinate


@dataclass
class VibeScoreSet:
    cell_id: str
    scores: VibeScores
    source_review_count: int
    model_name: Optional[str]
    computed_at: datetime


@dataclass
class FailureRecord:
    cell_id: str
    error: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {"cellId": self.cell_id, "error": self.error, "timestamp": self.timestamp}


@dataclass(frozen=True)
class RunOptions:
    """Options for one ingestion run. Fixed for the run's duration."""
    area_slug: str
    force: bool = False
    dry_run: bool = False
    offset: int = 0
    limit: Optional[int] = None
