"""
Statistics aggregation for batch jobs.

BatchJob.statistics is a materialized view over the batch's url results.
It is never incremented in place: every recompute re-counts all rows, so a
lost or duplicated update cannot drift the counters. Recomputes for the same
batch are serialized with a per-batch lock; different batches never wait on
each other.

Auto-completion: when nothing is pending or running any more and the job is
running or paused, the same write moves the job to completed. A pause that
races with the last in-flight attempts therefore still ends in completed.
"""

from __future__ import annotations

import logging
from typing import Iterable

from src.core.keyed_lock import KeyedLock
from src.dtos.batch_dto import BatchStatistics, UrlResultRead
from src.entities.batch_job import BatchStatus
from src.entities.url_result import UrlStatus
from src.repositories.job_store import JobStore

logger = logging.getLogger(__name__)

AUTO_COMPLETE_FROM = frozenset({BatchStatus.running, BatchStatus.paused})


def compute_statistics(url_results: Iterable[UrlResultRead]) -> BatchStatistics:
    """Count rows per status and sum the rows of completed results."""
    stats = BatchStatistics()
    for url_result in url_results:
        stats.total += 1
        status = UrlStatus(url_result.status)
        setattr(stats, status.value, getattr(stats, status.value) + 1)
        if status is UrlStatus.completed and url_result.result is not None:
            stats.total_rows += len(url_result.result.data)
    return stats


def is_finished(stats: BatchStatistics) -> bool:
    return stats.total > 0 and stats.pending == 0 and stats.running == 0


class StatisticsAggregator:
    def __init__(self, store: JobStore, locks: KeyedLock | None = None) -> None:
        self.store = store
        self._locks = locks or KeyedLock()

    async def recompute(self, batch_id: str) -> BatchStatistics:
        """
        Re-count a batch's url results and persist the statistics.

        Raises:
            JobNotFoundError: If the batch does not exist
            StoreError: If reading or writing fails
        """
        async with self._locks.acquire(batch_id):
            job = self.store.require_job(batch_id)
            stats = compute_statistics(self.store.get_url_results(batch_id))

            changes: dict = {"statistics": stats}
            if is_finished(stats) and job.status in AUTO_COMPLETE_FROM:
                changes["status"] = BatchStatus.completed
                logger.info(
                    "Batch %s completed: %d completed, %d failed, %d cancelled",
                    batch_id,
                    stats.completed,
                    stats.failed,
                    stats.cancelled,
                )
            self.store.update_job(batch_id, **changes)
            return stats

    async def backfill_missing_statistics(self) -> int:
        """Populate statistics for jobs stored before the column existed."""
        batch_ids = self.store.get_jobs_missing_statistics()
        for batch_id in batch_ids:
            await self.recompute(batch_id)
        if batch_ids:
            logger.info("Backfilled statistics for %d batch jobs", len(batch_ids))
        return len(batch_ids)
