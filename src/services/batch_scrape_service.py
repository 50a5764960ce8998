"""
Service for batch scraping operations with job tracking.

BatchScrapeService is the entry point callers use: it creates batches,
validates and applies lifecycle transitions, and starts/stops one
BatchScheduler per running batch.

Architecture:
    BatchScrapeService -> JobStore -> SQL (batch_jobs, url_results)
    BatchScrapeService -> BatchScheduler -> PageScraper
    BatchScheduler/BatchScrapeService -> StatisticsAggregator -> JobStore

Job lifecycle:
    pending  --start-->  running
    running  --pause-->  paused
    paused   --resume--> running
    running|paused --cancel--> cancelled
    running|paused --(no pending/running URLs left)--> completed

completed and cancelled are terminal for start/pause/resume/cancel.
"completed" means the run finished, not that it succeeded: read
statistics.failed vs statistics.completed to judge outcome quality.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Optional

from src.core.config import settings
from src.core.events import BatchEvent
from src.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreError,
    UrlResultNotFoundError,
)
from src.core.keyed_lock import KeyedLock
from src.core.page_scraper import HtmlPageScraper, PageScraper
from src.dtos.batch_dto import (
    BatchJobRead,
    BatchSettings,
    BatchSettingsUpdate,
    BatchStatistics,
    CombinedRow,
    UrlResultRead,
)
from src.entities.batch_job import BatchStatus
from src.entities.url_result import UrlStatus
from src.repositories.job_store import JobStore
from src.services.batch_scheduler import BatchScheduler
from src.services.statistics_service import StatisticsAggregator, compute_statistics

logger = logging.getLogger(__name__)

TERMINAL_BATCH_STATUSES = frozenset({BatchStatus.completed, BatchStatus.cancelled})


class BatchScrapeService:
    """
    Lifecycle controller and query API for batch scrape jobs.

    Handles:
    - Creating batches (job + one url result per URL, atomically)
    - start/pause/resume/cancel with transition validation
    - Retrying failed URLs
    - Reads: jobs, url results, statistics, combined rows, live events
    """

    def __init__(
        self,
        store: JobStore,
        scraper: Optional[PageScraper] = None,
        aggregator: Optional[StatisticsAggregator] = None,
        *,
        scrape_timeout: float = settings.SCRAPE_TIMEOUT_SECONDS,
        retry_base_delay: float = settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay: float = settings.RETRY_MAX_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.scraper = scraper or HtmlPageScraper()
        self.aggregator = aggregator or StatisticsAggregator(store)
        self.scrape_timeout = scrape_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._schedulers: dict[str, BatchScheduler] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lifecycle_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        config: dict[str, Any],
        urls: list[str],
        name: Optional[str] = None,
        settings: BatchSettings | BatchSettingsUpdate | dict | None = None,
    ) -> BatchJobRead:
        """
        Create a pending batch with one pending url result per URL.

        Raises:
            ValueError: If urls is empty
        """
        if not urls:
            raise ValueError("URL list cannot be empty")

        job, _ = self.store.create_batch(config, urls, name=name, settings=settings)
        logger.info("Created batch %s (%s) with %d URLs", job.id, job.name, len(urls))
        return job

    async def duplicate_batch(self, batch_id: str, name: Optional[str] = None) -> BatchJobRead:
        """New pending batch with the same config, URLs and settings."""
        source = self.store.require_job(batch_id)
        return await self.create_batch(
            source.config, source.urls, name=name, settings=source.settings
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, batch_id: str) -> BatchJobRead:
        async with self._lifecycle_locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            if job.status != BatchStatus.pending:
                raise InvalidTransitionError("start", job.status)
            return await self._run(job)

    async def pause(self, batch_id: str) -> BatchJobRead:
        """Stop dispatching; in-flight URLs still finish. Pausing twice is a no-op."""
        async with self._lifecycle_locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            if job.status == BatchStatus.paused:
                return job
            if job.status != BatchStatus.running:
                raise InvalidTransitionError("pause", job.status)

            scheduler = self._schedulers.get(batch_id)
            if scheduler is not None:
                scheduler.pause()
            self.store.update_job(batch_id, status=BatchStatus.paused)
            logger.info("Paused batch %s", batch_id)
            # In-flight URLs may still land; recompute promotes to completed
            # once nothing is left to run.
            await self.aggregator.recompute(batch_id)
            return self.store.require_job(batch_id)

    async def resume(self, batch_id: str) -> BatchJobRead:
        """
        Continue a paused batch.

        Resuming a running batch is a no-op while its scheduler is alive; a
        running batch that lost its scheduler is relaunched.
        """
        async with self._lifecycle_locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            if job.status == BatchStatus.running and self.is_active(batch_id):
                return job
            if job.status not in (BatchStatus.paused, BatchStatus.running):
                raise InvalidTransitionError("resume", job.status)
            return await self._run(job)

    async def cancel(self, batch_id: str) -> BatchJobRead:
        """Stop the batch for good; open URLs become cancelled."""
        async with self._lifecycle_locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            if job.status not in (BatchStatus.running, BatchStatus.paused):
                raise InvalidTransitionError("cancel", job.status)

            scheduler = self._schedulers.get(batch_id)
            if scheduler is not None:
                scheduler.cancel()
            self.store.update_job(batch_id, status=BatchStatus.cancelled)
            cancelled = self.store.transition_url_results(
                batch_id,
                [UrlStatus.pending, UrlStatus.running],
                status=UrlStatus.cancelled,
            )
            await self.aggregator.recompute(batch_id)
            logger.info("Cancelled batch %s (%d URLs cancelled)", batch_id, cancelled)
            return self.store.require_job(batch_id)

    async def retry_url(self, batch_id: str, url_result_id: str) -> UrlResultRead:
        """
        Put one failed URL back to pending.

        retry_count is kept, so a URL that already used all its retries gets
        exactly one more attempt. A running batch picks it up right away, a
        paused or pending batch on resume/start, and a completed batch is
        reopened to running.

        Raises:
            JobNotFoundError / UrlResultNotFoundError: Unknown ids
            InvalidTransitionError: URL not failed, or batch cancelled
        """
        async with self._lifecycle_locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            url_result = self.store.get_url_result(url_result_id)
            if url_result is None or url_result.batch_id != batch_id:
                raise UrlResultNotFoundError(url_result_id)
            if url_result.status != UrlStatus.failed:
                raise InvalidTransitionError(
                    "retry a URL of", job.status, f"URL is {url_result.status}, not failed"
                )
            if job.status == BatchStatus.cancelled:
                raise InvalidTransitionError("retry a URL of", job.status)

            updated = self._reset_failed(url_result)
            await self._dispatch_reset(job, [updated])
            return self.store.get_url_result(url_result_id) or updated

    async def retry_failed_urls(self, batch_id: str) -> int:
        """Reset every failed URL of the batch; returns how many were reset."""
        async with self._lifecycle_locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            failed = self.store.get_url_results_by_status(batch_id, [UrlStatus.failed])
            if not failed:
                return 0
            if job.status == BatchStatus.cancelled:
                raise InvalidTransitionError("retry URLs of", job.status)

            reset = [self._reset_failed(url_result) for url_result in failed]
            await self._dispatch_reset(job, reset)
            logger.info("Batch %s: reset %d failed URLs", batch_id, len(reset))
            return len(reset)

    def _reset_failed(self, url_result: UrlResultRead) -> UrlResultRead:
        return self.store.update_url_result(
            url_result.id,
            status=UrlStatus.pending,
            error=None,
            started_at=None,
            completed_at=None,
        )

    async def _dispatch_reset(self, job: BatchJobRead, rows: list[UrlResultRead]) -> None:
        if job.status == BatchStatus.completed:
            logger.info("Reopening completed batch %s for retry", job.id)
            self.store.update_job(job.id, status=BatchStatus.running)
            job = self.store.require_job(job.id)

        if job.status != BatchStatus.running:
            # Picked up by the next start/resume.
            await self.aggregator.recompute(job.id)
            return

        scheduler = self._schedulers.get(job.id)
        if scheduler is not None and all(scheduler.enqueue(row) for row in rows):
            await self.aggregator.recompute(job.id)
            return
        self._launch(job)

    async def _run(self, job: BatchJobRead) -> BatchJobRead:
        """Move the job to running and make sure a scheduler drives it."""
        job = self.store.update_job(job.id, status=BatchStatus.running)
        logger.info("Batch %s running", job.id)

        scheduler = self._schedulers.get(job.id)
        if scheduler is not None and scheduler.resume():
            await self.aggregator.recompute(job.id)
        else:
            self._launch(job)
        return self.store.require_job(job.id)

    def _launch(self, job: BatchJobRead) -> BatchScheduler:
        scheduler = BatchScheduler(
            job,
            self.store,
            self.aggregator,
            self.scraper,
            scrape_timeout=self.scrape_timeout,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
        )
        task = asyncio.create_task(scheduler.run(), name=f"batch-{job.id}")
        self._schedulers[job.id] = scheduler
        self._tasks[job.id] = task
        task.add_done_callback(lambda t: self._on_scheduler_done(job.id, scheduler, t))
        return scheduler

    def _on_scheduler_done(
        self, batch_id: str, scheduler: BatchScheduler, task: asyncio.Task
    ) -> None:
        if self._schedulers.get(batch_id) is not scheduler:
            # A newer scheduler already owns the batch.
            return
        del self._schedulers[batch_id]
        del self._tasks[batch_id]
        if task.cancelled():
            logger.info("Batch %s: scheduler task cancelled", batch_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Batch %s: scheduler stopped with error", batch_id, exc_info=exc
            )
        self._park_if_orphaned(batch_id)

    def _park_if_orphaned(self, batch_id: str) -> None:
        """
        A batch still running after its scheduler stopped has nobody driving
        it (a store write failed mid-run). Park it as paused so resume can
        pick it up again.
        """
        try:
            job = self.store.get_job(batch_id)
            if job is None or job.status != BatchStatus.running:
                return
            self.store.update_job(batch_id, status=BatchStatus.paused)
        except StoreError:
            # Still running with no scheduler; resume relaunches it.
            logger.exception("Batch %s: could not park orphaned batch", batch_id)
            return
        logger.warning("Batch %s: scheduler stopped early, batch paused", batch_id)

    def is_active(self, batch_id: str) -> bool:
        """True while a scheduler is attached to the batch."""
        return batch_id in self._schedulers

    async def wait(self, batch_id: str) -> None:
        """Wait until the batch's current scheduler (if any) stops."""
        task = self._tasks.get(batch_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def recover_interrupted_jobs(self) -> int:
        """
        Mark jobs left running by a dead process as paused.

        Their stranded running URLs are requeued when the user resumes.
        """
        recovered = 0
        for job in self.store.list_jobs(status=BatchStatus.running):
            if self.is_active(job.id):
                continue
            self.store.update_job(job.id, status=BatchStatus.paused)
            await self.aggregator.recompute(job.id)
            recovered += 1
        if recovered:
            logger.warning("Paused %d batches interrupted by a restart", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Cancel all scheduler tasks; durable state is recovered on next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_batch(self, batch_id: str) -> None:
        """Delete a batch and its url results, stopping it first if running."""
        async with self._lifecycle_locks.acquire(batch_id):
            self.store.require_job(batch_id)
            scheduler = self._schedulers.get(batch_id)
            if scheduler is not None:
                scheduler.cancel()
            self.store.delete_job(batch_id)
            logger.info("Deleted batch %s", batch_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, batch_id: str) -> Optional[BatchJobRead]:
        return self.store.get_job(batch_id)

    def list_jobs(
        self,
        status: Optional[str] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[BatchJobRead]:
        """Jobs newest first, optionally filtered by status and/or a search term."""
        if query:
            jobs = self.store.search_jobs(query)
            if status:
                jobs = [job for job in jobs if job.status == status]
            return jobs[:limit] if limit else jobs
        return self.store.list_jobs(status=status, limit=limit)

    def get_url_results(self, batch_id: str) -> list[UrlResultRead]:
        self.store.require_job(batch_id)
        return self.store.get_url_results(batch_id)

    def get_statistics(self, batch_id: str) -> BatchStatistics:
        job = self.store.require_job(batch_id)
        if job.statistics is not None:
            return job.statistics
        return compute_statistics(self.store.get_url_results(batch_id))

    def get_combined_results(self, batch_id: str) -> list[CombinedRow]:
        self.store.require_job(batch_id)
        return self.store.get_combined_results(batch_id)

    def subscribe(
        self, batch_id: str, callback: Callable[[BatchEvent], None]
    ) -> Callable[[], None]:
        return self.store.event_bus.subscribe(batch_id, callback)

    def stream(self, batch_id: str) -> AsyncIterator[BatchEvent]:
        if self.store.get_job(batch_id) is None:
            raise JobNotFoundError(batch_id)
        return self.store.event_bus.stream(batch_id)
