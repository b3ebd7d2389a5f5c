"""
City ingestion orchestrator.

Walks a city's grid cells and turns each into persisted venues plus one
vibe score row, using the Places catalog and the LLM vibe scorer.

Run states: init -> loading -> processing -> summarizing -> done

Per-cell steps (in order):
  1. Search: nearby search for every place type, deduped by place id
  2. Persist venues: every discovered venue, qualified or not
  3. No qualified venues -> persist null scores and stop here
  4. Fetch details: top-ranked qualified venues only (cached per run)
  5. Aggregate: review text under a character budget
  6. Classify: one LLM call per cell, never per venue
  7. Persist scores: delete-then-insert, one live row per cell

Resume:
  - Cells that already have a score row are skipped unless force=True
  - Cells are processed one at a time and persisted as they finish, so a
    killed run picks up where it stopped on the next invocation
  - A failing cell is recorded in the failure ledger; the run continues

Usage:
    python -m services.ingest.pipeline.city_ingest san-francisco
    python -m services.ingest.pipeline.city_ingest san-francisco --force
    python -m services.ingest.pipeline.city_ingest san-francisco --dry-run --limit 10
    python -m services.ingest.pipeline.city_ingest san-francisco --skip 200
"""

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import anthropic
import asyncpg
import httpx

from services.ingest.clients.base import RateLimiter, RetryPolicy
from services.ingest.clients.google_places import DetailsCache, GooglePlacesClient
from services.ingest.clients.vibe_scorer import VibeScorer
from services.ingest.config import PLACE_TYPES, VIBE_DIMENSIONS_VERSION, Settings
from services.ingest.db.store import CellStore, PostgresCellStore
from services.ingest.errors import AreaNotFoundError, ConfigurationError
from services.ingest.pipeline.aggregation import (
    aggregate_reviews,
    filter_qualified,
    rank_venues,
    select_top,
    to_venue_record,
)
from services.ingest.pipeline.failure_ledger import FailureLedger
from services.ingest.types import (
    GeoCell,
    RunOptions,
    VibeScoreSet,
    VibeScores,
    empty_vibe_scores,
)

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    LOADING = "loading"
    PROCESSING = "processing"
    SUMMARIZING = "summarizing"
    DONE = "done"


class CellStep(str, Enum):
    SEARCH_ALL = "search_all"
    PERSIST_VENUES = "persist_venues"
    PERSIST_NULL_SCORES = "persist_null_scores"
    FETCH_DETAILS = "fetch_details"
    AGGREGATE = "aggregate"
    CLASSIFY = "classify"
    PERSIST_SCORES = "persist_scores"


# ---------------------------------------------------------------------------
# Run context and results
# ---------------------------------------------------------------------------

@dataclass
class IngestContext:
    """Everything one run needs. Built once per run and passed explicitly."""
    settings: Settings
    store: CellStore
    places: GooglePlacesClient
    scorer: VibeScorer
    ledger: FailureLedger = field(default_factory=FailureLedger)


@dataclass
class CellOutcome:
    cell_id: str
    venues_found: int = 0
    qualified: int = 0
    reviews_seen: int = 0
    scored: bool = False
    # Last step entered; tells where a failed cell stopped
    step: CellStep = CellStep.SEARCH_ALL


@dataclass
class LoadedCells:
    cells: list[GeoCell]
    total: int
    skipped_existing: int


@dataclass
class RunSummary:
    """Final result of an ingestion run."""
    area: str
    dry_run: bool = False
    cells_total: int = 0
    cells_skipped_existing: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    venues_discovered: int = 0
    cells_null_scored: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_size: int = 0
    search_calls: int = 0
    details_calls: int = 0
    classifier_calls: int = 0
    estimated_llm_cost_usd: float = 0.0
    duration_s: float = 0.0
    failure_ledger_path: Optional[str] = None
    errors: list[str] = field(default_factory=list)


def build_context(
    settings: Settings,
    store: CellStore,
    http_client: httpx.AsyncClient,
    anthropic_client: anthropic.AsyncAnthropic,
) -> IngestContext:
    """Wire clients, limiters and the run-scoped details cache from settings."""
    retry_policy = RetryPolicy.from_settings(settings)

    places = GooglePlacesClient(
        settings.google_places_api_key,
        RateLimiter(settings.places_requests_per_second),
        http_client=http_client,
        retry_policy=retry_policy,
        cache=DetailsCache(settings.details_cache_max_entries),
        search_radius_meters=settings.search_radius_meters,
        max_results_per_type=settings.max_results_per_type,
    )
    scorer = VibeScorer(
        anthropic_client,
        RateLimiter(settings.llm_requests_per_second),
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
        retry_policy=retry_policy,
    )
    return IngestContext(settings=settings, store=store, places=places, scorer=scorer)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

async def load_cells(store: CellStore, options: RunOptions) -> LoadedCells:
    """
    Resolve the area and pick the cells this run will process.

    Order is geographic and stable, so offset always skips the same
    leading cells. Already-scored cells are dropped before offset/limit
    unless force is set.

    Raises:
        AreaNotFoundError if the slug is unknown.
    """
    area_id = await store.resolve_area_id(options.area_slug)
    if area_id is None:
        raise AreaNotFoundError(options.area_slug)
    logger.info("City ID: %s", area_id)

    cells = await store.list_cells_for_area(area_id)
    total = len(cells)

    skipped = 0
    if not options.force:
        scored = await store.list_scored_cell_ids([c.id for c in cells])
        cells = [c for c in cells if c.id not in scored]
        skipped = total - len(cells)
        if skipped:
            logger.info("Skipping %d already processed cells", skipped)

    if options.offset:
        cells = cells[options.offset:]
    if options.limit is not None:
        cells = cells[:options.limit]

    return LoadedCells(cells=cells, total=total, skipped_existing=skipped)


# ---------------------------------------------------------------------------
# Per-cell pipeline
# ---------------------------------------------------------------------------

async def _persist_scores(
    ctx: IngestContext,
    cell: GeoCell,
    scores: VibeScores,
    review_count: int,
    model_name: Optional[str],
    dry_run: bool,
) -> None:
    if dry_run:
        return
    await ctx.store.replace_cell_scores(VibeScoreSet(
        cell_id=cell.id,
        scores=scores,
        source_review_count=review_count,
        model_name=model_name,
        computed_at=datetime.now(timezone.utc),
    ))


async def process_cell(
    ctx: IngestContext,
    cell: GeoCell,
    options: RunOptions,
    outcome: Optional[CellOutcome] = None,
) -> CellOutcome:
    """Run the full search -> score -> persist sequence for one cell."""
    settings = ctx.settings
    if outcome is None:
        outcome = CellOutcome(cell_id=cell.id)
    logger.info("  Centroid: %.4f, %.4f", cell.centroid.lat, cell.centroid.lng)

    # Step 1: search every place type
    outcome.step = CellStep.SEARCH_ALL
    entries = await ctx.places.search_all_categories(cell.centroid, PLACE_TYPES)
    outcome.venues_found = len(entries)
    logger.info("  Found %d unique places", len(entries))

    qualified = filter_qualified(entries, settings.min_review_count)
    outcome.qualified = len(qualified)
    logger.info(
        "  Qualified venues (>=%d reviews): %d", settings.min_review_count, len(qualified),
    )

    # Step 2: persist all discovered venues
    outcome.step = CellStep.PERSIST_VENUES
    if not options.dry_run and entries:
        await ctx.store.upsert_venues([to_venue_record(e, cell) for e in entries])

    # Step 3: nothing qualified -> null scores
    if not qualified:
        logger.info("  No qualified venues - writing null scores")
        outcome.step = CellStep.PERSIST_NULL_SCORES
        await _persist_scores(ctx, cell, empty_vibe_scores(), 0, None, options.dry_run)
        return outcome

    # Step 4: details for the top venues
    outcome.step = CellStep.FETCH_DETAILS
    top = select_top(rank_venues(qualified), settings.top_venues_per_cell)
    logger.info("  Fetching details for %d top venues...", len(top))
    details = []
    for entry in top:
        detail = await ctx.places.get_details(entry.id)
        if detail is not None:
            details.append(detail)

    # Step 5: aggregate review text
    outcome.step = CellStep.AGGREGATE
    aggregate = aggregate_reviews(details, settings.max_review_chars)
    outcome.reviews_seen = aggregate.count
    logger.info(
        "  Aggregated %d reviews (%d chars)", aggregate.count, len(aggregate.text),
    )

    # Step 6: one classifier call for the whole cell
    if not aggregate.text:
        logger.info("  No review text - writing null scores")
        outcome.step = CellStep.PERSIST_NULL_SCORES
        await _persist_scores(
            ctx, cell, empty_vibe_scores(), aggregate.count, None, options.dry_run,
        )
        return outcome

    outcome.step = CellStep.CLASSIFY
    logger.info("  Scoring vibes with LLM...")
    scores = await ctx.scorer.score_vibes(aggregate.text)
    logger.info("  Scores: %s", scores)

    # Step 7: replace the cell's score row
    outcome.step = CellStep.PERSIST_SCORES
    await _persist_scores(
        ctx, cell, scores, aggregate.count, ctx.scorer.model, options.dry_run,
    )
    outcome.scored = True
    return outcome


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------

def _set_state(state: RunState) -> RunState:
    logger.debug("Run state -> %s", state.value)
    return state


async def run_ingestion(ctx: IngestContext, options: RunOptions) -> RunSummary:
    """
    Ingest one city's grid cells.

    Args:
        ctx: Per-run context (settings, store, clients, ledger).
        options: Area selector plus force / dry-run / offset / limit.

    Returns:
        RunSummary with counts, cache and cost statistics.

    Raises:
        AreaNotFoundError before any cell is processed if the area is unknown.
    """
    t0 = time.monotonic()
    _set_state(RunState.INIT)
    # Counters, caches and the ledger belong to one run
    ctx.ledger = FailureLedger()
    ctx.places.reset()
    ctx.scorer.reset_stats()
    summary = RunSummary(area=options.area_slug, dry_run=options.dry_run)

    logger.info(
        "=== City ingest: %s (dimensions %s) ===", options.area_slug, VIBE_DIMENSIONS_VERSION,
    )
    logger.info(
        "Options: force=%s dry_run=%s offset=%d limit=%s",
        options.force, options.dry_run, options.offset, options.limit,
    )

    _set_state(RunState.LOADING)
    loaded = await load_cells(ctx.store, options)
    summary.cells_total = loaded.total
    summary.cells_skipped_existing = loaded.skipped_existing
    cells = loaded.cells
    logger.info("Processing %d cells", len(cells))

    _set_state(RunState.PROCESSING)
    for index, cell in enumerate(cells, 1):
        summary.processed += 1
        logger.info("[%d/%d] Cell %s", index, len(cells), cell.id)

        outcome = CellOutcome(cell_id=cell.id)
        try:
            await process_cell(ctx, cell, options, outcome)
            summary.succeeded += 1
            summary.venues_discovered += outcome.venues_found
            if not outcome.scored:
                summary.cells_null_scored += 1
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            summary.failed += 1
            summary.errors.append(f"{cell.id}: {error}")
            ctx.ledger.record(cell.id, error)
            logger.exception(
                "  ERROR processing cell %s at %s: %s", cell.id, outcome.step.value, exc,
            )

        if index < len(cells) and ctx.settings.inter_cell_delay_s > 0:
            await asyncio.sleep(ctx.settings.inter_cell_delay_s)

    _set_state(RunState.SUMMARIZING)
    places_stats = ctx.places.stats
    summary.cache_hits = places_stats.cache_hits
    summary.cache_misses = places_stats.cache_misses
    summary.cache_size = ctx.places.cache_size
    summary.search_calls = places_stats.search_calls
    summary.details_calls = places_stats.details_calls
    summary.classifier_calls = ctx.scorer.stats.calls
    summary.estimated_llm_cost_usd = round(ctx.scorer.stats.estimated_cost_usd, 4)

    ledger_path = ctx.ledger.save(Path(ctx.settings.failure_ledger_dir))
    summary.failure_ledger_path = str(ledger_path) if ledger_path else None
    summary.duration_s = round(time.monotonic() - t0, 2)

    logger.info(
        "=== City ingest %s: processed=%d succeeded=%d failed=%d skipped_existing=%d "
        "| venues=%d null_scored=%d | dimensions=%s | %.1fs ===",
        options.area_slug,
        summary.processed,
        summary.succeeded,
        summary.failed,
        summary.cells_skipped_existing,
        summary.venues_discovered,
        summary.cells_null_scored,
        VIBE_DIMENSIONS_VERSION,
        summary.duration_s,
    )
    logger.info(
        "Details cache: size=%d hits=%d misses=%d | calls: search=%d details=%d llm=%d "
        "| LLM tokens in=%d out=%d, est. cost=$%.4f",
        summary.cache_size,
        summary.cache_hits,
        summary.cache_misses,
        summary.search_calls,
        summary.details_calls,
        summary.classifier_calls,
        ctx.scorer.stats.input_tokens,
        ctx.scorer.stats.output_tokens,
        summary.estimated_llm_cost_usd,
    )
    if options.dry_run:
        logger.info("(Dry run - no data written to database)")

    ctx.places.cache.clear()
    _set_state(RunState.DONE)
    return summary


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value}")
    return number


def parse_args(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(description="Ingest a city's grid cells into vibe scores")
    parser.add_argument("area", help="City slug (e.g. san-francisco)")
    parser.add_argument("--force", action="store_true", help="Reprocess cells that already have scores")
    parser.add_argument("--dry-run", action="store_true", help="Log only, no database writes")
    parser.add_argument("--limit", type=_positive_int, default=None, help="Process at most N cells")
    parser.add_argument(
        "--skip", type=_non_negative_int, default=0,
        help="Skip the first N cells in geographic order (west to east)",
    )
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for city ingestion. Returns the process exit code."""
    from dotenv import load_dotenv

    load_dotenv(".env.local")
    load_dotenv()

    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    settings = Settings()
    if args.database_url:
        settings.database_url = args.database_url

    try:
        settings.require_credentials()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1

    options = RunOptions(
        area_slug=args.area,
        force=args.force,
        dry_run=args.dry_run,
        offset=args.skip,
        limit=args.limit,
    )

    pool = await asyncpg.create_pool(settings.database_url, min_size=1, max_size=2)
    try:
        async with httpx.AsyncClient(timeout=settings.places_timeout_s) as http_client:
            anthropic_client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                max_retries=0,
                timeout=settings.llm_timeout_s,
            )
            ctx = build_context(settings, PostgresCellStore(pool), http_client, anthropic_client)
            try:
                summary = await run_ingestion(ctx, options)
            except AreaNotFoundError as exc:
                logger.error("%s", exc)
                return 1
            finally:
                await anthropic_client.close()

        logger.info("Ingest complete: %s", summary)
        return 0
    finally:
        await pool.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
