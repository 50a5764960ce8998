"""
Repository for per-URL result rows.
"""
from __future__ import annotations

from typing import Iterable, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.entities.url_result import UrlResult
from src.repositories.base_repo import BaseRepository

UPDATABLE_URL_RESULT_FIELDS = frozenset(
    {"status", "result", "error", "retry_count", "started_at", "completed_at"}
)


def check_url_result_fields(changes: dict) -> None:
    unknown = set(changes) - UPDATABLE_URL_RESULT_FIELDS
    if unknown:
        raise ValueError(f"Cannot update URL result fields: {sorted(unknown)}")


class UrlResultRepository(BaseRepository[UrlResult]):
    def __init__(self, session: Session) -> None:
        super().__init__(session=session, model=UrlResult)

    def apply_changes(
        self, url_result: UrlResult, changes: dict, *, commit: bool = False
    ) -> UrlResult:
        check_url_result_fields(changes)
        for key, value in changes.items():
            setattr(url_result, key, value)
        return self.update(url_result, commit=commit)

    def get_by_batch(self, batch_id: str) -> List[UrlResult]:
        """All rows of a batch in original URL order."""
        stmt = (
            select(UrlResult)
            .where(UrlResult.batch_id == batch_id)
            .order_by(UrlResult.position)
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_by_batch_and_status(
        self, batch_id: str, statuses: Iterable[str]
    ) -> List[UrlResult]:
        stmt = (
            select(UrlResult)
            .where(UrlResult.batch_id == batch_id, UrlResult.status.in_(list(statuses)))
            .order_by(UrlResult.position)
        )
        return list(self.session.execute(stmt).scalars().all())

    def bulk_transition(
        self, batch_id: str, from_statuses: Iterable[str], changes: dict
    ) -> int:
        """
        Move every row of the batch in ``from_statuses`` to ``changes``.

        Returns:
            Number of rows updated
        """
        check_url_result_fields(changes)
        stmt = (
            update(UrlResult)
            .where(
                UrlResult.batch_id == batch_id,
                UrlResult.status.in_(list(from_statuses)),
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount
