"""
Durable store for batch jobs and their per-URL results.

All SQL lives in the repositories; JobStore wraps every public operation in
its own session and transaction so multi-row writes are all-or-nothing, turns
SQLAlchemy failures into StoreError, and publishes one change event per
committed mutation.

Rows leave the store as pydantic read models, never as ORM instances, so
callers can hold them across awaits without touching a closed session.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.core.events import BatchEvent, EventBus, EventType
from src.core.exceptions import JobNotFoundError, StoreError, UrlResultNotFoundError
from src.core.url_utils import generate_batch_name
from src.dtos.batch_dto import (
    BatchJobRead,
    BatchSettings,
    BatchSettingsUpdate,
    BatchStatistics,
    CombinedRow,
    UrlResultRead,
    merge_settings,
)
from src.dtos.scrape_dto import ScrapeResult
from src.entities.batch_job import BatchJob, BatchStatus
from src.entities.url_result import UrlResult, UrlStatus
from src.repositories.batch_job_repo import BatchJobRepository
from src.repositories.url_result_repo import UrlResultRepository

logger = logging.getLogger(__name__)


def _to_json(value: Any) -> Any:
    """Pydantic models are stored as plain JSON-compatible dicts."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def _job_event(job: BatchJobRead, event_type: EventType) -> BatchEvent:
    return BatchEvent(job.id, event_type, {"job": job.model_dump(mode="json")})


class JobStore:
    def __init__(
        self, session_factory: sessionmaker, event_bus: Optional[EventBus] = None
    ) -> None:
        self.session_factory = session_factory
        self.event_bus = event_bus or EventBus()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Store operation failed")
            raise StoreError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _publish(self, events: Iterable[BatchEvent]) -> None:
        for event in events:
            self.event_bus.publish(event)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _build_job(
        self,
        config: dict[str, Any],
        urls: list[str],
        name: Optional[str],
        settings: BatchSettings | BatchSettingsUpdate | dict | None,
    ) -> BatchJob:
        total = len(urls)
        return BatchJob(
            id=str(uuid.uuid4()),
            name=name or generate_batch_name(urls),
            config=config,
            urls=list(urls),
            status=BatchStatus.pending,
            settings=merge_settings(settings).model_dump(),
            statistics=BatchStatistics(total=total, pending=total).model_dump(),
        )

    @staticmethod
    def _build_url_results(batch_id: str, urls: list[str]) -> list[UrlResult]:
        return [
            UrlResult(
                id=str(uuid.uuid4()),
                batch_id=batch_id,
                url=url,
                position=position,
                status=UrlStatus.pending,
                retry_count=0,
            )
            for position, url in enumerate(urls)
        ]

    def create_job(
        self,
        config: dict[str, Any],
        urls: list[str],
        name: Optional[str] = None,
        settings: BatchSettings | BatchSettingsUpdate | dict | None = None,
    ) -> BatchJobRead:
        """
        Insert a pending job with all-pending statistics.

        The url result rows are written separately by create_url_results;
        use create_batch to write both at once.
        """
        with self._transaction() as session:
            job = BatchJobRepository(session).create(
                self._build_job(config, urls, name, settings), commit=False
            )
            session.flush()
            read = BatchJobRead.model_validate(job)
        logger.debug("Created batch job %s", read.id)
        self._publish([_job_event(read, EventType.job_created)])
        return read

    def create_url_results(self, batch_id: str, urls: list[str]) -> list[UrlResultRead]:
        """Bulk insert one pending row per URL, preserving order."""
        with self._transaction() as session:
            if BatchJobRepository(session).get_by_id(batch_id) is None:
                raise JobNotFoundError(batch_id)
            rows = UrlResultRepository(session).create_all(
                self._build_url_results(batch_id, urls), commit=False
            )
            reads = [UrlResultRead.model_validate(row) for row in rows]
        logger.debug("Created %d URL results for batch %s", len(reads), batch_id)
        self._publish(
            [BatchEvent(batch_id, EventType.url_results_created, {"count": len(reads)})]
        )
        return reads

    def create_batch(
        self,
        config: dict[str, Any],
        urls: list[str],
        name: Optional[str] = None,
        settings: BatchSettings | BatchSettingsUpdate | dict | None = None,
    ) -> tuple[BatchJobRead, list[UrlResultRead]]:
        """Create the job and its url results in one transaction."""
        with self._transaction() as session:
            job = BatchJobRepository(session).create(
                self._build_job(config, urls, name, settings), commit=False
            )
            rows = UrlResultRepository(session).create_all(
                self._build_url_results(job.id, urls), commit=False
            )
            job_read = BatchJobRead.model_validate(job)
            row_reads = [UrlResultRead.model_validate(row) for row in rows]
        logger.debug("Created batch %s with %d URLs", job_read.id, len(row_reads))
        self._publish(
            [
                _job_event(job_read, EventType.job_created),
                BatchEvent(
                    job_read.id, EventType.url_results_created, {"count": len(row_reads)}
                ),
            ]
        )
        return job_read, row_reads

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def get_job(self, batch_id: str) -> Optional[BatchJobRead]:
        with self._transaction() as session:
            job = BatchJobRepository(session).get_by_id(batch_id)
            return BatchJobRead.model_validate(job) if job else None

    def require_job(self, batch_id: str) -> BatchJobRead:
        job = self.get_job(batch_id)
        if job is None:
            raise JobNotFoundError(batch_id)
        return job

    def list_jobs(
        self, status: Optional[str] = None, limit: Optional[int] = None
    ) -> list[BatchJobRead]:
        """Jobs newest first, optionally filtered by status."""
        with self._transaction() as session:
            jobs = BatchJobRepository(session).get_newest_first(status, limit)
            return [BatchJobRead.model_validate(job) for job in jobs]

    def search_jobs(self, query: str) -> list[BatchJobRead]:
        with self._transaction() as session:
            jobs = BatchJobRepository(session).search(query)
            return [BatchJobRead.model_validate(job) for job in jobs]

    def update_job(self, batch_id: str, **changes: Any) -> BatchJobRead:
        """Partial update; always refreshes ``updated_at``."""
        changes = {key: _to_json(value) for key, value in changes.items()}
        with self._transaction() as session:
            repo = BatchJobRepository(session)
            job = repo.get_by_id(batch_id)
            if job is None:
                raise JobNotFoundError(batch_id)
            job = repo.apply_changes(job, changes)
            session.flush()
            read = BatchJobRead.model_validate(job)
        self._publish([_job_event(read, EventType.job_updated)])
        return read

    def delete_job(self, batch_id: str) -> None:
        """Delete the job and every url result of it, atomically."""
        with self._transaction() as session:
            repo = BatchJobRepository(session)
            job = repo.get_by_id(batch_id)
            if job is None:
                raise JobNotFoundError(batch_id)
            # Explicit so the cascade does not rely on database FK support.
            for row in UrlResultRepository(session).get_by_batch(batch_id):
                session.delete(row)
            repo.delete(job, commit=False)
        logger.debug("Deleted batch job %s", batch_id)
        self._publish([BatchEvent(batch_id, EventType.job_deleted)])

    def get_jobs_missing_statistics(self) -> list[str]:
        with self._transaction() as session:
            return BatchJobRepository(session).get_ids_missing_statistics()

    # ------------------------------------------------------------------
    # URL results
    # ------------------------------------------------------------------

    def get_url_results(self, batch_id: str) -> list[UrlResultRead]:
        """Rows of a batch in original URL order."""
        with self._transaction() as session:
            rows = UrlResultRepository(session).get_by_batch(batch_id)
            return [UrlResultRead.model_validate(row) for row in rows]

    def get_url_results_by_status(
        self, batch_id: str, statuses: Iterable[str]
    ) -> list[UrlResultRead]:
        with self._transaction() as session:
            rows = UrlResultRepository(session).get_by_batch_and_status(
                batch_id, statuses
            )
            return [UrlResultRead.model_validate(row) for row in rows]

    def get_url_result(self, url_result_id: str) -> Optional[UrlResultRead]:
        with self._transaction() as session:
            row = UrlResultRepository(session).get_by_id(url_result_id)
            return UrlResultRead.model_validate(row) if row else None

    def update_url_result(self, url_result_id: str, **changes: Any) -> UrlResultRead:
        changes = {key: _to_json(value) for key, value in changes.items()}
        with self._transaction() as session:
            repo = UrlResultRepository(session)
            row = repo.get_by_id(url_result_id)
            if row is None:
                raise UrlResultNotFoundError(url_result_id)
            row = repo.apply_changes(row, changes)
            session.flush()
            read = UrlResultRead.model_validate(row)
        self._publish(
            [
                BatchEvent(
                    read.batch_id,
                    EventType.url_result_updated,
                    {"url_result": read.model_dump(mode="json")},
                )
            ]
        )
        return read

    def transition_url_results(
        self, batch_id: str, from_statuses: Iterable[str], **changes: Any
    ) -> int:
        """Bulk-move every row in ``from_statuses``; returns the row count."""
        from_statuses = list(from_statuses)
        changes = {key: _to_json(value) for key, value in changes.items()}
        with self._transaction() as session:
            count = UrlResultRepository(session).bulk_transition(
                batch_id, from_statuses, changes
            )
        if count:
            self._publish(
                [
                    BatchEvent(
                        batch_id,
                        EventType.url_results_updated,
                        {
                            "from": [str(s) for s in from_statuses],
                            "changes": {k: v for k, v in changes.items() if k == "status"},
                            "count": count,
                        },
                    )
                ]
            )
        return count

    def get_combined_results(self, batch_id: str) -> list[CombinedRow]:
        """
        Rows of every completed URL, tagged with the source URL.

        URLs are emitted in original batch order regardless of the order in
        which they finished.
        """
        combined: list[CombinedRow] = []
        for url_result in self.get_url_results_by_status(batch_id, [UrlStatus.completed]):
            result: ScrapeResult | None = url_result.result
            if result is None:
                continue
            for row in result.data:
                combined.append(
                    CombinedRow(data={"url": url_result.url, **row.data}, metadata=row.metadata)
                )
        return combined
