"""
Retry decision for a failed page attempt.

Pure: no I/O, no clock. The scheduler applies the returned delay and bumps
retry_count before the retried attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from src.core.config import settings
from src.core.exceptions import ScrapeError

logger = logging.getLogger(__name__)

BASE_DELAY_SECONDS = settings.RETRY_BASE_DELAY_SECONDS
CAP_DELAY_SECONDS = settings.RETRY_MAX_DELAY_SECONDS


class RetryAction(StrEnum):
    retry = "retry"
    fail = "fail"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.retry


def compute_backoff_seconds(
    retry_count: int,
    base_delay: float = BASE_DELAY_SECONDS,
    cap_delay: float = CAP_DELAY_SECONDS,
) -> float:
    """Capped exponential backoff for the attempt after ``retry_count`` retries."""
    return float(min(base_delay * 2 ** max(0, retry_count), cap_delay))


def is_retryable(error: BaseException) -> bool:
    """Anything is retryable unless the scraper marked it otherwise."""
    if isinstance(error, ScrapeError):
        return error.retryable
    return True


def decide(
    error: BaseException,
    retry_count: int,
    max_retries: int,
    *,
    base_delay: float = BASE_DELAY_SECONDS,
    cap_delay: float = CAP_DELAY_SECONDS,
) -> RetryDecision:
    """Decide whether a failed attempt is retried, and after how long."""
    if not is_retryable(error):
        logger.debug("Not retrying non-retryable error: %s", error)
        return RetryDecision(RetryAction.fail)

    if retry_count >= max_retries:
        logger.debug("Retries exhausted (%d/%d): %s", retry_count, max_retries, error)
        return RetryDecision(RetryAction.fail)

    delay = compute_backoff_seconds(retry_count, base_delay, cap_delay)
    logger.debug(
        "Retrying in %.1fs (attempt %d/%d): %s", delay, retry_count + 1, max_retries, error
    )
    return RetryDecision(RetryAction.retry, delay)
