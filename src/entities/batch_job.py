"""
Entity for batch scrape jobs.

A batch job scrapes a fixed, ordered list of URLs with one scrape config and
one settings object. Per-URL progress lives in url_results; the statistics
column is a materialized summary of those rows, rewritten after every
url result mutation.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.entities.base import Base, utcnow


class BatchStatus(StrEnum):
    pending = "pending"
    running = "running"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    urls: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchStatus.pending, index=True
    )
    settings: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Null only for jobs written before the column existed (see migration 002)
    statistics: Mapped[dict | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    url_results: Mapped[list["UrlResult"]] = relationship(  # noqa: F821
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
