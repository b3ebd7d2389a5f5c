"""
Ingestion configuration via pydantic-settings.
Tunables read from environment variables with sensible defaults for local dev;
the fixed search taxonomy and vibe dimensions live here as module constants.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from services.ingest.errors import ConfigurationError

# Place types searched in every grid cell, in priority order.
# Order matters: a venue returned under several types keeps the first one.
PLACE_TYPES: tuple[str, ...] = (
    "restaurant",
    "bar",
    "cafe",
    "night_club",
    "park",
    "tourist_attraction",
)

# Preferred primary category when a venue carries several types
CATEGORY_PRIORITY: tuple[str, ...] = (
    "night_club",
    "bar",
    "restaurant",
    "cafe",
    "park",
    "tourist_attraction",
)

# Closed vibe taxonomy. Bump the version whenever the set changes.
VIBE_DIMENSIONS_VERSION = "vibes-v2"
VIBE_DIMENSIONS: tuple[str, ...] = (
    "lively",
    "social",
    "upscale",
    "casual",
    "trendy",
    "local",
    "photogenic",
)

# Composite ranking weights: 0.7 * ratingCount + 0.3 * rating
RANK_WEIGHT_RATING_COUNT = 0.7
RANK_WEIGHT_RATING = 0.3


class Settings(BaseSettings):
    # Store
    database_url: str = ""

    # Credentials
    google_places_api_key: str = ""
    anthropic_api_key: str = ""

    # Classifier
    llm_model: str = "claude-haiku-4-5-20251001"
    llm_max_tokens: int = 256
    llm_timeout_s: float = 30.0

    # Catalog
    places_timeout_s: float = 30.0
    search_radius_meters: int = 212  # covers a ~300m cell diagonally
    max_results_per_type: int = Field(default=10, ge=1, le=20)

    # Rate limiting (requests per second, token bucket per service)
    places_requests_per_second: float = Field(default=8.0, gt=0)
    llm_requests_per_second: float = Field(default=3.0, gt=0)
    inter_cell_delay_s: float = Field(default=0.5, ge=0)

    # Retry
    retry_max_retries: int = Field(default=3, ge=0)
    retry_initial_delay_s: float = Field(default=1.0, ge=0)
    retry_max_delay_s: float = Field(default=10.0, ge=0)
    retry_status_codes: list[int] = Field(default=[429, 500, 503])

    # Selection / aggregation
    min_review_count: int = Field(default=10, ge=0)
    top_venues_per_cell: int = Field(default=5, ge=1)
    max_review_chars: int = Field(default=8000, ge=1)

    # Details cache: None keeps every entry for the run
    details_cache_max_entries: Optional[int] = Field(default=None, ge=1)

    # Out-of-band report of failed cells
    failure_ledger_dir: str = "data/failed_cells"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    def missing_credentials(self) -> list[str]:
        """Names of required env vars that are unset."""
        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not self.google_places_api_key:
            missing.append("GOOGLE_PLACES_API_KEY")
        if not self.anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY")
        return missing

    def require_credentials(self) -> None:
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(
                f"Missing environment variables: {', '.join(missing)}"
            )
