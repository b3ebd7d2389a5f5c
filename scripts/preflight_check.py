#!/usr/bin/env python3
"""
Preflight check: run before a city ingest.

Makes one real call to each external dependency so a bad key or an
unreachable database shows up before hundreds of cells fail one by one.

Usage:
    python3 scripts/preflight_check.py                      # credentials + services
    python3 scripts/preflight_check.py --area san-francisco # + area resolves, has cells

Exits 0 if all checks pass. Exits 1 if any check fails.
"""

import argparse
import asyncio
import sys
from typing import Awaitable, Callable, Optional, Union

import anthropic
import asyncpg
import httpx
from dotenv import load_dotenv

from services.ingest.clients.base import RateLimiter, RetryPolicy
from services.ingest.clients.google_places import GooglePlacesClient
from services.ingest.clients.vibe_scorer import VibeScorer
from services.ingest.config import Settings
from services.ingest.db.store import PostgresCellStore
from services.ingest.types import Coordinate

# ANSI colors
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
RESET = "\033[0m"

PASS = f"{GREEN}PASS{RESET}"
FAIL = f"{RED}FAIL{RESET}"
WARN = f"{YELLOW}WARN{RESET}"

# Union Square, San Francisco
PROBE_POINT = Coordinate(lat=37.7879, lng=-122.4075)
PROBE_REVIEW = "Packed on Friday nights, loud music, great cocktails, mostly locals."

CheckResult = Union[bool, str, None]

failures: list[str] = []


async def check(label: str, fn: Callable[[], Awaitable[CheckResult]]) -> None:
    """Run a check coroutine, print result, accumulate failures."""
    try:
        result = await fn()
        if result is True or result is None:
            print(f"  {PASS}  {label}")
        elif isinstance(result, str) and result.startswith("WARN"):
            print(f"  {WARN}  {label}: {result[5:].strip()}")
        else:
            print(f"  {FAIL}  {label}: {result}")
            failures.append(label)
    except Exception as e:
        print(f"  {FAIL}  {label}: {e}")
        failures.append(label)


async def run_checks(settings: Settings, area: Optional[str]) -> None:
    # Single attempt per call: preflight wants the first error, not a retry loop
    no_retry = RetryPolicy(max_retries=0)

    async def credentials() -> CheckResult:
        missing = settings.missing_credentials()
        if missing:
            return f"not set: {', '.join(missing)}"
        if not settings.anthropic_api_key.startswith("sk-ant-"):
            return f"WARN ANTHROPIC_API_KEY looks wrong (prefix: {settings.anthropic_api_key[:8]}...)"
        return True

    await check("Credentials configured", credentials)
    if failures:
        return

    async with httpx.AsyncClient(timeout=settings.places_timeout_s) as http_client:
        places = GooglePlacesClient(
            settings.google_places_api_key,
            RateLimiter(settings.places_requests_per_second),
            http_client=http_client,
            retry_policy=no_retry,
            search_radius_meters=500,
            max_results_per_type=3,
        )
        found: list[str] = []

        async def nearby_search() -> CheckResult:
            entries = await places.search(PROBE_POINT, "bar")
            found.extend(e.id for e in entries)
            if not entries:
                return "WARN search succeeded but returned no places"
            return True

        async def place_details() -> CheckResult:
            if not found:
                return "WARN skipped (no place id from search)"
            detail = await places.get_details(found[0])
            if detail is None:
                return f"details lookup failed for {found[0]}"
            return True

        await check("Places nearby search", nearby_search)
        await check("Places details", place_details)

    anthropic_client = anthropic.AsyncAnthropic(
        api_key=settings.anthropic_api_key, max_retries=0, timeout=settings.llm_timeout_s,
    )
    scorer = VibeScorer(
        anthropic_client,
        RateLimiter(settings.llm_requests_per_second),
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
        retry_policy=no_retry,
    )

    async def classifier() -> CheckResult:
        scores = await scorer.score_vibes(PROBE_REVIEW)
        if all(v is None for v in scores.values()):
            return "response parsed to all-null scores"
        return True

    try:
        await check(f"LLM vibe scoring ({settings.llm_model})", classifier)
    finally:
        await anthropic_client.close()

    async def database() -> CheckResult:
        conn = await asyncpg.connect(settings.database_url)
        try:
            await conn.fetchval("SELECT 1 FROM cell_vibes LIMIT 0")
        finally:
            await conn.close()
        return True

    await check("Database reachable (cell_vibes)", database)

    if area:
        async def area_cells() -> CheckResult:
            pool = await asyncpg.create_pool(settings.database_url, min_size=1, max_size=1)
            try:
                store = PostgresCellStore(pool)
                area_id = await store.resolve_area_id(area)
                if area_id is None:
                    return f"city not found: {area}"
                cells = await store.list_cells_for_area(area_id)
                if not cells:
                    return f"city {area} has no grid cells"
                print(f"        {len(cells)} cells")
            finally:
                await pool.close()
            return True

        await check(f"Area '{area}' resolves", area_cells)


def main() -> None:
    load_dotenv(".env.local")
    load_dotenv()

    parser = argparse.ArgumentParser(description="Preflight checks for city ingestion")
    parser.add_argument("--area", help="City slug to verify (optional)")
    args = parser.parse_args()

    print("Preflight checks\n")
    asyncio.run(run_checks(Settings(), args.area))

    print()
    if failures:
        print(f"{FAIL}  {len(failures)} check(s) failed: {', '.join(failures)}")
        sys.exit(1)
    print(f"{PASS}  All checks passed")


if __name__ == "__main__":
    main()
