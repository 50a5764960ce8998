"""
Repository for batch job rows.

Methods never commit on their own unless asked to; JobStore composes them
inside a single transaction per operation.
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from src.entities.base import utcnow
from src.entities.batch_job import BatchJob
from src.entities.url_result import UrlResult
from src.repositories.base_repo import BaseRepository

UPDATABLE_JOB_FIELDS = frozenset({"name", "status", "settings", "statistics", "config"})


class BatchJobRepository(BaseRepository[BatchJob]):
    def __init__(self, session: Session) -> None:
        super().__init__(session=session, model=BatchJob)

    def apply_changes(self, job: BatchJob, changes: dict, *, commit: bool = False) -> BatchJob:
        """
        Apply a partial update and bump ``updated_at``.

        Raises:
            ValueError: If a field is not updatable
        """
        unknown = set(changes) - UPDATABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Cannot update batch job fields: {sorted(unknown)}")
        for key, value in changes.items():
            setattr(job, key, value)
        job.updated_at = utcnow()
        return self.update(job, commit=commit)

    def get_newest_first(
        self, status: Optional[str] = None, limit: Optional[int] = None
    ) -> List[BatchJob]:
        """
        List jobs ordered by creation time, newest first.

        Args:
            status: Optional status filter
            limit: Optional maximum number of jobs
        """
        stmt = select(BatchJob).order_by(BatchJob.created_at.desc(), BatchJob.id)
        if status:
            stmt = stmt.where(BatchJob.status == status)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def search(self, query: str) -> List[BatchJob]:
        """Case-insensitive match against the job name or any of its URLs."""
        pattern = f"%{query.lower()}%"
        matching_ids = (
            select(UrlResult.batch_id)
            .where(func.lower(UrlResult.url).like(pattern))
            .distinct()
        )
        stmt = (
            select(BatchJob)
            .where(
                or_(
                    func.lower(BatchJob.name).like(pattern),
                    BatchJob.id.in_(matching_ids),
                )
            )
            .order_by(BatchJob.created_at.desc(), BatchJob.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_ids_missing_statistics(self) -> List[str]:
        stmt = select(BatchJob.id).where(BatchJob.statistics.is_(None))
        return list(self.session.execute(stmt).scalars().all())
