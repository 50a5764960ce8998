"""
Concurrency-bounded dispatch loop for one batch.

One BatchScheduler exists per active batch and owns all of that batch's
runtime state: its queue, its in-flight attempts, its slot semaphore and its
pause/cancel flags. Nothing here is module-global, so distinct batches run
side by side without sharing locks.

Dispatch:
    pending rows (original URL order) -> wait out delay_between_requests since
    the last dispatch -> acquire slot -> mark running -> launch attempt task

Pacing is measured between dispatch starts, so max_concurrency and
delay_between_requests stay independent knobs. Pause and cancel are
cooperative: they are checked before every dispatch and never interrupt an
attempt that already started. After cancel, results of in-flight attempts
are discarded instead of written back.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from src.core import retry_policy
from src.core.config import settings
from src.core.exceptions import ScrapeTimeoutError
from src.core.page_scraper import PageScraper
from src.dtos.batch_dto import BatchJobRead, UrlResultRead
from src.dtos.scrape_dto import ScrapeResult
from src.entities.base import utcnow
from src.entities.url_result import UrlStatus
from src.repositories.job_store import JobStore
from src.services.statistics_service import StatisticsAggregator

logger = logging.getLogger(__name__)


async def _sleep_unless(event: asyncio.Event, seconds: float) -> None:
    """Sleep for ``seconds`` or until ``event`` is set, whichever is first."""
    if seconds <= 0 or event.is_set():
        return
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class BatchScheduler:
    def __init__(
        self,
        job: BatchJobRead,
        store: JobStore,
        aggregator: StatisticsAggregator,
        scraper: PageScraper,
        *,
        scrape_timeout: float = settings.SCRAPE_TIMEOUT_SECONDS,
        retry_base_delay: float = settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay: float = settings.RETRY_MAX_DELAY_SECONDS,
    ) -> None:
        self.batch_id = job.id
        self.config: dict[str, Any] = job.config
        self.settings = job.settings
        self.store = store
        self.aggregator = aggregator
        self.scraper = scraper
        self.scrape_timeout = scrape_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._queue: deque[UrlResultRead] = deque()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._slots = asyncio.Semaphore(self.settings.max_concurrency)
        self._wakeup = asyncio.Event()
        self._halt = asyncio.Event()  # cuts pacing short on pause or cancel
        self._cancel_event = asyncio.Event()  # cuts retry backoff short
        self._paused = False
        self._closed = False
        self._last_dispatch: float | None = None

    # ------------------------------------------------------------------
    # Control signals
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def pause(self) -> None:
        """Stop dispatching; attempts already running finish normally."""
        self._paused = True
        self._halt.set()
        self._wakeup.set()

    def resume(self) -> bool:
        """
        Continue a paused scheduler that has not shut down yet.

        Returns False when the scheduler is closed or cancelled and a new one
        has to be started instead.
        """
        if self._closed or self.is_cancelled:
            return False
        self._paused = False
        self._halt.clear()
        self._load_queue()
        self._wakeup.set()
        return True

    def cancel(self) -> None:
        """Stop dispatching now and discard the outcome of in-flight attempts."""
        self._cancel_event.set()
        self._queue.clear()
        self._halt.set()
        self._wakeup.set()

    def enqueue(self, url_result: UrlResultRead) -> bool:
        """Add a row that became pending while the scheduler is live."""
        if self._closed or self.is_cancelled:
            return False
        queued = url_result.id in self._in_flight or any(
            item.id == url_result.id for item in self._queue
        )
        if not queued:
            self._queue.append(url_result)
            self._wakeup.set()
        return True

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def _load_queue(self) -> None:
        pending = self.store.get_url_results_by_status(self.batch_id, [UrlStatus.pending])
        self._queue = deque(row for row in pending if row.id not in self._in_flight)

    async def run(self) -> None:
        """Drive the batch until its queue drains, it is paused, or cancelled."""
        try:
            try:
                await self._prepare()
                await self._dispatch_loop()
            except Exception as exc:
                logger.warning(
                    "Batch %s: dispatch stopped (%s); waiting for %d in-flight URLs",
                    self.batch_id,
                    exc,
                    len(self._in_flight),
                )
                await self._drain()
                raise
            await self._drain()
        except asyncio.CancelledError:
            tasks = list(self._in_flight.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._closed = True
            logger.debug("Batch %s: scheduler stopped", self.batch_id)

    async def _prepare(self) -> None:
        # A row still marked running has no live owner: its attempt died with
        # a previous scheduler or process. Requeue it.
        recovered = self.store.transition_url_results(
            self.batch_id, [UrlStatus.running], status=UrlStatus.pending, started_at=None
        )
        if recovered:
            logger.warning(
                "Batch %s: requeued %d stranded running URLs", self.batch_id, recovered
            )
        await self.aggregator.recompute(self.batch_id)
        self._load_queue()
        logger.info(
            "Batch %s: dispatching %d URLs (concurrency=%d, delay=%dms)",
            self.batch_id,
            len(self._queue),
            self.settings.max_concurrency,
            self.settings.delay_between_requests,
        )

    async def _drain(self) -> None:
        """Let attempts that already started write back before closing."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def _pace(self) -> None:
        """Wait out whatever is left of the delay since the last dispatch start."""
        if self._last_dispatch is None:
            return
        loop = asyncio.get_running_loop()
        remaining = (
            self._last_dispatch + self.settings.delay_between_requests / 1000 - loop.time()
        )
        await _sleep_unless(self._halt, remaining)

    async def _dispatch_loop(self) -> None:
        while True:
            if self.is_cancelled:
                return
            if self._paused or not self._queue:
                if not self._in_flight:
                    return
                # Wait for an attempt to finish, a requeue, or resume.
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            await self._pace()
            if self.is_cancelled or self._paused or not self._queue:
                continue

            await self._slots.acquire()
            if self.is_cancelled or self._paused or not self._queue:
                self._slots.release()
                continue

            url_result = self._queue.popleft()
            try:
                url_result = await self._mark_running(url_result)
            except BaseException:
                self._slots.release()
                raise

            self._last_dispatch = asyncio.get_running_loop().time()
            self._in_flight[url_result.id] = asyncio.create_task(
                self._attempt(url_result), name=f"batch-{self.batch_id}-{url_result.id}"
            )

    async def _mark_running(self, url_result: UrlResultRead) -> UrlResultRead:
        updated = self.store.update_url_result(
            url_result.id,
            status=UrlStatus.running,
            started_at=utcnow(),
            completed_at=None,
            error=None,
        )
        await self.aggregator.recompute(self.batch_id)
        return updated

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def _attempt(self, url_result: UrlResultRead) -> None:
        requeue: UrlResultRead | None = None
        try:
            requeue = await self._run_attempt(url_result)
        except Exception:
            # Store failures leave the row running; the next run() requeues it.
            logger.exception(
                "Batch %s: attempt bookkeeping failed for %s", self.batch_id, url_result.url
            )
        finally:
            self._in_flight.pop(url_result.id, None)
            self._slots.release()
            if requeue is not None and not self.is_cancelled:
                self._queue.appendleft(requeue)
            self._wakeup.set()

    async def _run_attempt(self, url_result: UrlResultRead) -> UrlResultRead | None:
        """Scrape once and record the outcome; returns the row if it is retried."""
        logger.debug(
            "Batch %s: scraping %s (retry %d)",
            self.batch_id,
            url_result.url,
            url_result.retry_count,
        )
        try:
            output = await asyncio.wait_for(
                self.scraper.scrape(
                    url_result.url,
                    self.config,
                    disable_js_rendering=self.settings.disable_js_rendering,
                    timeout=self.scrape_timeout,
                ),
                timeout=self.scrape_timeout,
            )
            result = (
                output
                if isinstance(output, ScrapeResult)
                else ScrapeResult.model_validate(output)
            )
        except asyncio.TimeoutError:
            error: Exception = ScrapeTimeoutError(
                f"Timed out after {self.scrape_timeout:g}s"
            )
        except Exception as exc:
            error = exc
        else:
            if self.is_cancelled:
                logger.debug("Batch %s: discarding late result for %s", self.batch_id, url_result.url)
                return None
            self.store.update_url_result(
                url_result.id,
                status=UrlStatus.completed,
                result=result,
                error=None,
                completed_at=utcnow(),
            )
            await self.aggregator.recompute(self.batch_id)
            logger.debug(
                "Batch %s: %s completed with %d rows",
                self.batch_id,
                url_result.url,
                len(result.data),
            )
            return None

        if self.is_cancelled:
            return None

        decision = retry_policy.decide(
            error,
            url_result.retry_count,
            self.settings.max_retries,
            base_delay=self.retry_base_delay,
            cap_delay=self.retry_max_delay,
        )
        if decision.should_retry:
            # The slot stays held through the backoff so running <= max_concurrency.
            await _sleep_unless(self._cancel_event, decision.delay)
            if self.is_cancelled:
                return None
            updated = self.store.update_url_result(
                url_result.id,
                status=UrlStatus.pending,
                retry_count=url_result.retry_count + 1,
                started_at=None,
            )
            await self.aggregator.recompute(self.batch_id)
            return updated

        message = str(error) or error.__class__.__name__
        logger.warning(
            "Batch %s: %s failed after %d retries: %s",
            self.batch_id,
            url_result.url,
            url_result.retry_count,
            message,
        )
        self.store.update_url_result(
            url_result.id,
            status=UrlStatus.failed,
            error=message,
            completed_at=utcnow(),
        )
        await self.aggregator.recompute(self.batch_id)
        return None
