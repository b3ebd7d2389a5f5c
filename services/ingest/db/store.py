"""
Cell store: the pipeline's narrow read/write interface to Postgres/PostGIS.

Tables (created elsewhere): cities, grid_cells, venues, cell_vibes.
The pipeline only ever goes through CellStore; PostgresCellStore is the
asyncpg-backed implementation.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import asyncpg

from services.ingest.config import VIBE_DIMENSIONS
from services.ingest.types import Coordinate, GeoCell, VenueRecord, VibeScoreSet

logger = logging.getLogger(__name__)

_POINT_WKT = re.compile(r"POINT\s*\(\s*([-\d.eE+]+)\s+([-\d.eE+]+)\s*\)", re.IGNORECASE)


def parse_point_wkt(wkt: Optional[str]) -> Optional[Coordinate]:
    """Parse "POINT(lng lat)" into a Coordinate. None when it doesn't parse."""
    if not wkt:
        return None
    match = _POINT_WKT.search(wkt)
    if not match:
        return None
    try:
        lng = float(match.group(1))
        lat = float(match.group(2))
    except ValueError:
        return None
    return Coordinate(lat=lat, lng=lng)


class CellStore(ABC):
    """Everything the ingestion pipeline reads from or writes to the store."""

    @abstractmethod
    async def resolve_area_id(self, slug: str) -> Optional[str]:
        ...

    @abstractmethod
    async def list_cells_for_area(self, area_id: str) -> list[GeoCell]:
        """All cells of an area, west to east then south to north."""

    @abstractmethod
    async def list_scored_cell_ids(self, cell_ids: list[str]) -> set[str]:
        ...

    @abstractmethod
    async def upsert_venues(self, records: list[VenueRecord]) -> None:
        """Insert or overwrite venues keyed by external id (last write wins)."""

    @abstractmethod
    async def replace_cell_scores(self, score_set: VibeScoreSet) -> None:
        """Remove any prior score row for the cell, then insert this one."""


class PostgresCellStore(CellStore):
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def resolve_area_id(self, slug: str) -> Optional[str]:
        row = await self.pool.fetchrow("SELECT id FROM cities WHERE slug = $1", slug)
        return str(row["id"]) if row else None

    async def list_cells_for_area(self, area_id: str) -> list[GeoCell]:
        rows = await self.pool.fetch(
            """
            SELECT gc.id, gc.city_id, ST_AsText(gc.centroid) AS centroid
            FROM grid_cells gc
            WHERE gc.city_id = $1
            ORDER BY ST_X(gc.centroid), ST_Y(gc.centroid)
            """,
            area_id,
        )

        cells: list[GeoCell] = []
        for row in rows:
            centroid = parse_point_wkt(row["centroid"])
            if centroid is None:
                logger.warning(
                    "Skipping cell %s: unparseable centroid %r", row["id"], row["centroid"],
                )
                continue
            cells.append(GeoCell(id=str(row["id"]), area_id=str(row["city_id"]), centroid=centroid))
        return cells

    async def list_scored_cell_ids(self, cell_ids: list[str]) -> set[str]:
        if not cell_ids:
            return set()
        rows = await self.pool.fetch(
            "SELECT grid_cell_id FROM cell_vibes WHERE grid_cell_id = ANY($1::uuid[])",
            cell_ids,
        )
        return {str(row["grid_cell_id"]) for row in rows}

    async def upsert_venues(self, records: Iterable[VenueRecord]) -> None:
        rows = [
            (
                r.external_id,
                r.cell_id,
                r.name,
                r.category,
                r.rating,
                r.rating_count,
                r.location.lng,
                r.location.lat,
            )
            for r in records
        ]
        if not rows:
            return

        await self.pool.executemany(
            """
            INSERT INTO venues (
                google_place_id, grid_cell_id, name, category,
                rating, review_count, location
            ) VALUES ($1, $2, $3, $4, $5, $6, ST_SetSRID(ST_MakePoint($7, $8), 4326))
            ON CONFLICT (google_place_id) DO UPDATE SET
                grid_cell_id = EXCLUDED.grid_cell_id,
                name = EXCLUDED.name,
                category = EXCLUDED.category,
                rating = EXCLUDED.rating,
                review_count = EXCLUDED.review_count,
                location = EXCLUDED.location
            """,
            rows,
        )

    async def replace_cell_scores(self, score_set: VibeScoreSet) -> None:
        columns = ", ".join(VIBE_DIMENSIONS)
        dim_count = len(VIBE_DIMENSIONS)
        placeholders = ", ".join(f"${i}" for i in range(2, dim_count + 5))
        values = [score_set.scores.get(dim) for dim in VIBE_DIMENSIONS]

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM cell_vibes WHERE grid_cell_id = $1",
                    score_set.cell_id,
                )
                await conn.execute(
                    f"""
                    INSERT INTO cell_vibes (
                        grid_cell_id, {columns},
                        source_review_count, model_name, computed_at
                    ) VALUES ($1, {placeholders})
                    """,
                    score_set.cell_id,
                    *values,
                    score_set.source_review_count,
                    score_set.model_name,
                    score_set.computed_at,
                )
