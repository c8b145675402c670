"""Error taxonomy for the scrape pipeline.

Adapters translate playwright, httpx and SQLAlchemy exceptions into these
types so that the stages only ever handle one family of errors.
"""

from typing import Optional


class ScrapeError(Exception):
    """Base class for all pipeline errors."""


class RenderError(ScrapeError):
    """Browser session or page failure."""


class PageTimeoutError(ScrapeError, TimeoutError):
    """Navigation or selector wait exceeded its deadline."""

    def __init__(self, what: str, timeout: float):
        self.what = what
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {what}")


class FetchError(ScrapeError):
    """Vendor API request failed or returned an unusable body."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class StorageError(ScrapeError):
    """Persistence transport failure."""


class ValidationError(ScrapeError):
    """Malformed payload or unresolved foreign key."""
