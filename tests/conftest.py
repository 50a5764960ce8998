"""
Shared test fixtures for the batch scrape engine.

Provides:
- engine / session_factory: In-memory SQLite with all tables created
- job_store, aggregator: store + statistics on that database
- FakeScraper / service: a BatchScrapeService driving an in-process scraper
"""

import os

# Force sqlite for tests; must be set before any src imports.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import asyncio

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.core.events import EventBus
from src.core.exceptions import NonRetryableScrapeError, ScrapeError
from src.dtos.scrape_dto import ScrapedRow, ScrapedRowMetadata, ScrapeResult
from src.entities.base import Base
from src.repositories.job_store import JobStore
from src.services.batch_scrape_service import BatchScrapeService
from src.services.statistics_service import StatisticsAggregator

# Import ALL entity modules so Base.metadata.create_all() registers them.
import src.entities.batch_job  # noqa: F401
import src.entities.url_result  # noqa: F401

SCRAPE_CONFIG = {
    "main_selector": "//table[@id='items']//tr",
    "columns": [{"name": "title", "selector": "./td[1]"}],
}


class FakeScraper:
    """In-process PageScraper with scripted outcomes per URL."""

    def __init__(self, rows_per_url=2, fail_urls=(), terminal_urls=(), hook=None):
        self.rows_per_url = rows_per_url
        self.fail_urls = set(fail_urls)
        self.terminal_urls = set(terminal_urls)
        self.hook = hook
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def scrape(self, url, config, *, disable_js_rendering=False, timeout=None):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hook is not None:
                await self.hook(url)
            await asyncio.sleep(0)
            if url in self.terminal_urls:
                raise NonRetryableScrapeError(f"Malformed URL: {url}")
            if url in self.fail_urls:
                raise ScrapeError(f"Connection reset: {url}")
            return ScrapeResult(
                data=[
                    ScrapedRow(
                        data={"title": f"{url} #{i}"},
                        metadata=ScrapedRowMetadata(original_index=i),
                    )
                    for i in range(self.rows_per_url)
                ],
                column_order=["title"],
            )
        finally:
            self.active -= 1


@pytest.fixture
def engine():
    """In-memory SQLite for unit tests. Never hits production DB."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def job_store(session_factory, event_bus):
    return JobStore(session_factory, event_bus)


@pytest.fixture
def aggregator(job_store):
    return StatisticsAggregator(job_store)


@pytest.fixture
def scraper():
    return FakeScraper()


@pytest.fixture
def make_service(job_store, aggregator):
    """Build a service around a given scraper with instant retries."""

    def _make(scraper, **kwargs):
        kwargs.setdefault("retry_base_delay", 0)
        kwargs.setdefault("retry_max_delay", 0)
        kwargs.setdefault("scrape_timeout", 5)
        return BatchScrapeService(job_store, scraper, aggregator, **kwargs)

    return _make


@pytest.fixture
def service(make_service, scraper):
    return make_service(scraper)


@pytest.fixture
def fast_settings():
    return {"max_concurrency": 2, "delay_between_requests": 0, "max_retries": 0}
