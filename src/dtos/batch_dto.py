"""
DTOs for batch scrape jobs and their per-URL results.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.dtos.scrape_dto import ScrapedRowMetadata, ScrapeResult
from src.entities.batch_job import BatchStatus
from src.entities.url_result import UrlStatus


class BatchSettings(BaseModel):
    """Concurrency, pacing and retry knobs of one batch."""

    max_concurrency: int = Field(3, ge=1, le=10, description="Parallel page attempts")
    delay_between_requests: int = Field(
        1000, ge=0, description="Milliseconds between dispatch starts"
    )
    max_retries: int = Field(3, ge=0, le=10, description="Retries per URL")
    disable_js_rendering: bool = Field(
        False, description="Hint to fetch raw HTML instead of rendering"
    )


class BatchSettingsUpdate(BaseModel):
    """Partial settings; unset fields fall back to BatchSettings defaults."""

    max_concurrency: int | None = Field(None, ge=1, le=10)
    delay_between_requests: int | None = Field(None, ge=0)
    max_retries: int | None = Field(None, ge=0, le=10)
    disable_js_rendering: bool | None = None


def merge_settings(
    settings: "BatchSettings | BatchSettingsUpdate | dict[str, Any] | None",
) -> BatchSettings:
    """Overlay partial settings on the defaults."""
    if settings is None:
        return BatchSettings()
    if isinstance(settings, BatchSettings):
        return settings
    if isinstance(settings, dict):
        settings = BatchSettingsUpdate.model_validate(settings)
    overrides = settings.model_dump(exclude_none=True)
    return BatchSettings(**overrides)


class BatchStatistics(BaseModel):
    """Materialized counters derived from a batch's url results."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total_rows: int = 0


class BatchCreate(BaseModel):
    """DTO for creating a batch."""

    config: dict[str, Any]
    urls: list[str] = Field(..., min_length=1)
    name: str | None = Field(None, max_length=255)
    settings: BatchSettingsUpdate | None = None


class BatchDuplicate(BaseModel):
    name: str | None = Field(None, max_length=255)


class BatchJobRead(BaseModel):
    """DTO for reading a batch job."""

    id: str
    name: str
    config: dict[str, Any]
    urls: list[str]
    status: BatchStatus
    settings: BatchSettings
    statistics: BatchStatistics | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UrlResultRead(BaseModel):
    """DTO for reading a per-URL result."""

    id: str
    batch_id: str
    url: str
    position: int
    status: UrlStatus
    result: ScrapeResult | None = None
    error: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class CombinedRow(BaseModel):
    """A scraped row tagged with the URL it came from (``data['url']``)."""

    data: dict[str, str]
    metadata: ScrapedRowMetadata | None = None


class UrlValidationRequest(BaseModel):
    text: str


class ValidatedUrls(BaseModel):
    valid: list[str]
    invalid: list[str]
    duplicates_removed: int
