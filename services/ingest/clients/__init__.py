"""
External service clients for the ingestion pipeline.

Both clients share:
- Token bucket rate limiting (one limiter per service)
- Retry with bounded exponential backoff
"""

from .base import (
    RateLimiter,
    RetryPolicy,
    is_retryable_error,
    with_retry,
)
from .google_places import DetailsCache, GooglePlacesClient
from .vibe_scorer import VibeScorer, parse_vibe_scores

__all__ = [
    "RateLimiter",
    "RetryPolicy",
    "is_retryable_error",
    "with_retry",
    "DetailsCache",
    "GooglePlacesClient",
    "VibeScorer",
    "parse_vibe_scores",
]
