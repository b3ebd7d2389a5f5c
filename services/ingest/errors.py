"""Exceptions raised by the ingestion pipeline itself.

External failures surface as the client libraries' own exceptions
(httpx.HTTPStatusError, anthropic.APIStatusError, ...).
"""


class IngestError(Exception):
    pass


class ConfigurationError(IngestError):
    """Missing credentials or invalid settings. Fatal before any cell runs."""


class AreaNotFoundError(IngestError):
    """The requested area slug does not resolve to a known city."""

    def __init__(self, slug: str):
        super().__init__(f"City not found: {slug}")
        self.slug = slug
