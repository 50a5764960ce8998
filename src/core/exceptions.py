"""
Exceptions raised by the batch scrape engine.

Two families:
- BatchScrapeError and subclasses describe job/store level failures that are
  surfaced to the caller of a lifecycle or query operation.
- ScrapeError and subclasses describe a single page attempt failing; the
  scheduler feeds them to the retry policy and never lets them escape.
"""

from __future__ import annotations


class BatchScrapeError(Exception):
    """Base class for batch-level errors."""


class JobNotFoundError(BatchScrapeError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch job {batch_id} not found")
        self.batch_id = batch_id


class UrlResultNotFoundError(BatchScrapeError):
    def __init__(self, url_result_id: str) -> None:
        super().__init__(f"URL result {url_result_id} not found")
        self.url_result_id = url_result_id


class InvalidTransitionError(BatchScrapeError):
    """A lifecycle command is not allowed from the current status."""

    def __init__(self, action: str, status: str, detail: str | None = None) -> None:
        message = f"Cannot {action} a batch that is {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.action = action
        self.status = status


class StoreError(BatchScrapeError):
    """Durable storage read/write failed; the change did not take effect."""


class ScrapeError(Exception):
    """A single page scrape attempt failed."""

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class NonRetryableScrapeError(ScrapeError):
    """Retrying cannot help, e.g. a malformed URL or a 404."""

    retryable = False


class ScrapeTimeoutError(ScrapeError):
    """The page scraper did not answer within the attempt timeout."""
