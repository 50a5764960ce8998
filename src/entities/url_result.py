"""
Entity for the per-URL unit of work inside a batch.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.entities.base import Base


class UrlStatus(StrEnum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_URL_STATUSES = frozenset(
    {UrlStatus.completed, UrlStatus.failed, UrlStatus.cancelled}
)


class UrlResult(Base):
    __tablename__ = "url_results"
    __table_args__ = (Index("ix_url_results_batch_id_status", "batch_id", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("batch_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)  # index in BatchJob.urls
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UrlStatus.pending, index=True
    )

    result: Mapped[dict | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )  # rows + column order
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )

    batch: Mapped["BatchJob"] = relationship(back_populates="url_results")  # noqa: F821
