"""
PageScraper: turns one URL + scrape config into rows.

The scheduler only depends on the ``PageScraper`` protocol. ``HtmlPageScraper``
is the bundled implementation: it fetches the page (plain HTTP when JS
rendering is disabled, headless Chrome otherwise) and evaluates the config's
XPath selectors with lxml. Errors are classified for the retry policy:
malformed URLs, bad configs and most 4xx responses are terminal; network
failures, timeouts and 5xx responses are retryable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Protocol

import requests
from lxml import etree, html
from pydantic import ValidationError
from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from src.core.config import settings
from src.core.exceptions import NonRetryableScrapeError, ScrapeError
from src.core.scraper_utils import get_random_user_agent
from src.core.url_utils import is_valid_url
from src.dtos.scrape_dto import ScrapeConfig, ScrapedRow, ScrapedRowMetadata, ScrapeResult

logger = logging.getLogger(__name__)

# Client errors that may succeed later
RETRYABLE_CLIENT_STATUSES = {408, 425, 429}

# Share of the caller's timeout handed to the blocking loader, so the loader
# gives up on its own before the caller stops waiting.
LOADER_TIMEOUT_FRACTION = 0.8


class PageScraper(Protocol):
    async def scrape(
        self,
        url: str,
        config: dict[str, Any],
        *,
        disable_js_rendering: bool = False,
        timeout: float | None = None,
    ) -> ScrapeResult: ...


def classify_http_status(status_code: int) -> bool:
    """Return True when a failed HTTP status is worth retrying."""
    if status_code in RETRYABLE_CLIENT_STATUSES:
        return True
    return status_code >= 500


def fetch_html(url: str, timeout: float | None = None) -> str:
    """GET with a random user-agent; raises ScrapeError on any failure."""
    headers = {"User-Agent": get_random_user_agent()}
    try:
        res = requests.get(
            url, headers=headers, timeout=timeout or settings.SCRAPE_REQUEST_TIMEOUT
        )
    except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema) as exc:
        raise NonRetryableScrapeError(f"Malformed URL: {url}") from exc
    except requests.RequestException as exc:
        raise ScrapeError(f"Request failed: {exc}") from exc

    if res.status_code >= 400:
        raise ScrapeError(
            f"HTTP {res.status_code} for {url}",
            retryable=classify_http_status(res.status_code),
        )
    return res.text


def render_html(url: str, timeout: float | None = None) -> str:
    """
    Load ``url`` in headless Chrome and return the rendered DOM.

    The page load plus the render wait stay within ``timeout`` seconds.
    """
    wait_seconds = settings.SELENIUM_RENDER_WAIT_SECONDS
    page_load_timeout = (timeout or settings.SCRAPE_TIMEOUT_SECONDS) - wait_seconds
    options = Options()
    options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument(f"--user-agent={get_random_user_agent()}")

    try:
        driver = webdriver.Chrome(
            service=Service(ChromeDriverManager().install()),
            options=options,
        )
    except WebDriverException as exc:
        raise ScrapeError(f"Could not start browser: {exc.msg}") from exc

    try:
        driver.set_page_load_timeout(max(page_load_timeout, 1.0))
        driver.get(url)
        # Give client-side rendering a moment to populate the DOM.
        time.sleep(wait_seconds)
        return driver.page_source
    except TimeoutException as exc:
        raise ScrapeError(f"Page load timed out: {url}") from exc
    except WebDriverException as exc:
        raise ScrapeError(f"Browser error: {exc.msg}") from exc
    finally:
        driver.quit()


def _text_of(value: Any) -> str:
    if isinstance(value, etree._Element):
        return " ".join(value.text_content().split())
    return " ".join(str(value).split())


def extract_rows(page: str, config: ScrapeConfig) -> ScrapeResult:
    """Evaluate the row selector, then every column selector per row."""
    try:
        tree = html.fromstring(page)
    except (etree.ParserError, ValueError) as exc:
        raise ScrapeError(f"Could not parse page: {exc}") from exc

    column_order = [column.name for column in config.columns]
    try:
        elements = tree.xpath(config.main_selector)
        if not isinstance(elements, list):
            # count(), string() and friends return a scalar, not row nodes.
            raise NonRetryableScrapeError(
                f"Selector must select elements: {config.main_selector}"
            )
        rows: list[ScrapedRow] = []
        for index, element in enumerate(elements):
            data: dict[str, str] = {}
            for column in config.columns:
                if isinstance(element, etree._Element):
                    matches = element.xpath(column.selector)
                else:
                    matches = [element]
                if not isinstance(matches, list):
                    matches = [matches]
                data[column.name] = _text_of(matches[0]) if matches else ""
            rows.append(
                ScrapedRow(
                    data=data,
                    metadata=ScrapedRowMetadata(
                        original_index=index,
                        is_empty=all(value == "" for value in data.values()),
                    ),
                )
            )
    except etree.XPathError as exc:
        raise NonRetryableScrapeError(f"Invalid selector: {exc}") from exc

    return ScrapeResult(data=rows, column_order=column_order)


class HtmlPageScraper:
    """Default PageScraper backed by requests/Selenium and lxml."""

    def __init__(
        self,
        fetch: Callable[[str, float | None], str] = fetch_html,
        render: Callable[[str, float | None], str] = render_html,
    ) -> None:
        self._fetch = fetch
        self._render = render

    async def scrape(
        self,
        url: str,
        config: dict[str, Any],
        *,
        disable_js_rendering: bool = False,
        timeout: float | None = None,
    ) -> ScrapeResult:
        if not is_valid_url(url):
            raise NonRetryableScrapeError(f"Malformed URL: {url}")
        try:
            scrape_config = ScrapeConfig.model_validate(config)
        except ValidationError as exc:
            raise NonRetryableScrapeError(f"Invalid scrape config: {exc}") from exc

        loader = self._fetch if disable_js_rendering else self._render
        logger.debug(
            "Loading %s via %s", url, "http" if disable_js_rendering else "browser"
        )
        loader_timeout = timeout * LOADER_TIMEOUT_FRACTION if timeout else None
        page = await self._load(loader, url, loader_timeout)
        result = extract_rows(page, scrape_config)
        logger.debug("Extracted %d rows from %s", len(result.data), url)
        return result

    @staticmethod
    async def _load(
        loader: Callable[[str, float | None], str], url: str, timeout: float | None
    ) -> str:
        """
        Run the blocking loader in a worker thread.

        A thread cannot be interrupted, so when the caller gives up (timeout or
        cancel) this still waits for the load to end before propagating. The
        caller's concurrency slot therefore covers the whole load.
        """
        load = asyncio.ensure_future(asyncio.to_thread(loader, url, timeout))
        try:
            return await asyncio.shield(load)
        except asyncio.CancelledError:
            await asyncio.wait([load])
            if not load.cancelled():
                load.exception()  # consumed; the caller already gave up
            raise
