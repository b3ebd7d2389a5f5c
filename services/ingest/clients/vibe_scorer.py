"""
LLM vibe scoring for grid cells.

One call per cell: the cell's aggregated review text goes to the
Anthropic Messages API with a fixed instruction, and the model answers
with one score per vibe dimension. The response is parsed leniently:
a malformed answer yields null scores, never an exception.

Parsing rules:
  - Use the first balanced {...} object in the output (the model may wrap
    it in prose or code fences)
  - A dimension is kept only if it is a number within [0, 1]
  - Kept values are rounded to 2 decimals; everything else is None
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

import anthropic

from services.ingest.clients.base import RateLimiter, RetryPolicy, log_retry, with_retry
from services.ingest.config import VIBE_DIMENSIONS
from services.ingest.types import VibeScores, empty_vibe_scores

logger = logging.getLogger(__name__)

# Haiku pricing (per 1M tokens)
INPUT_COST_PER_1M = 0.80   # USD
OUTPUT_COST_PER_1M = 4.00  # USD

SYSTEM_PROMPT = """You are a location vibe classifier. Analyze the following reviews and return vibe scores.

Score each dimension from 0.0 to 1.0:
- lively: Energy, noise, activity
- social: Group-oriented vs solo
- upscale: Price level, polish
- casual: Relaxed, informal
- trendy: New, popular, fashionable
- local: Neighborhood feel vs touristy
- photogenic: Visual/Instagram appeal

Respond with ONLY valid JSON:
{"lively":0.0,"social":0.0,"upscale":0.0,"casual":0.0,"trendy":0.0,"local":0.0,"photogenic":0.0}"""


def build_user_prompt(review_text: str) -> str:
    return f'Reviews:\n"""\n{review_text}\n"""'


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def find_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} substring, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)
    return None


def _valid_score(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0 or value > 1:
        return None
    return round(float(value), 2)


def parse_vibe_scores(text: str) -> VibeScores:
    """Parse model output into VibeScores. Never raises."""
    scores = empty_vibe_scores()

    candidate = find_json_object(text)
    if candidate is None:
        logger.error("No JSON found in LLM response: %s", text[:200])
        return scores

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse LLM response: %s | raw: %s", exc, text[:200])
        return scores

    if not isinstance(parsed, dict):
        logger.error("LLM response JSON is not an object: %s", text[:200])
        return scores

    for dim in VIBE_DIMENSIONS:
        scores[dim] = _valid_score(parsed.get(dim))

    return scores


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

@dataclass
class ScorerStats:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def estimated_cost_usd(self) -> float:
        return (
            (self.input_tokens / 1_000_000) * INPUT_COST_PER_1M
            + (self.output_tokens / 1_000_000) * OUTPUT_COST_PER_1M
        )


class VibeScorer:
    """Scores aggregated review text against the fixed vibe dimensions."""

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        rate_limiter: RateLimiter,
        *,
        model: str,
        max_tokens: int = 256,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self.model = model
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy()
        self.stats = ScorerStats()

    def reset_stats(self) -> None:
        self.stats = ScorerStats()

    async def _create(self, user_prompt: str):
        return await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": user_prompt}],
        )

    async def score_vibes(self, review_text: str) -> VibeScores:
        """
        Score one cell's review text.

        Raises:
            anthropic.APIError when the call fails terminally or retries run out.
            A response that cannot be parsed returns all-null scores instead.
        """
        await self.rate_limiter.acquire()

        user_prompt = build_user_prompt(review_text)
        self.stats.calls += 1
        response = await with_retry(
            lambda: self._create(user_prompt),
            self.retry_policy,
            on_retry=log_retry("LLM vibe scoring", self.retry_policy),
        )

        usage = getattr(response, "usage", None)
        if usage is not None:
            self.stats.input_tokens += usage.input_tokens or 0
            self.stats.output_tokens += usage.output_tokens or 0

        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", None) == "text"
        )
        return parse_vibe_scores(text)
