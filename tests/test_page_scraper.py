"""Unit tests for the bundled HTML page scraper."""

import asyncio
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from src.core.exceptions import NonRetryableScrapeError, ScrapeError
from src.core.page_scraper import (
    HtmlPageScraper,
    classify_http_status,
    extract_rows,
    fetch_html,
)
from src.dtos.scrape_dto import ScrapeConfig

PAGE = """
<html><body>
<table id="items">
  <tr><td>Red shoe</td><td><span>49.90</span></td></tr>
  <tr><td>  Blue
      hat </td><td>12.00</td></tr>
  <tr><td></td><td></td></tr>
</table>
</body></html>
"""

CONFIG = {
    "main_selector": "//table[@id='items']//tr",
    "columns": [
        {"name": "title", "selector": "./td[1]"},
        {"name": "price", "selector": "./td[2]"},
    ],
}


def _response(status_code, text=""):
    res = MagicMock()
    res.status_code = status_code
    res.text = text
    return res


class TestExtractRows:
    def test_extracts_rows_in_document_order(self):
        result = extract_rows(PAGE, ScrapeConfig.model_validate(CONFIG))

        assert result.column_order == ["title", "price"]
        assert [r.data for r in result.data] == [
            {"title": "Red shoe", "price": "49.90"},
            {"title": "Blue hat", "price": "12.00"},
            {"title": "", "price": ""},
        ]
        assert [r.metadata.original_index for r in result.data] == [0, 1, 2]
        assert result.data[2].metadata.is_empty is True
        assert result.data[0].metadata.is_empty is False

    def test_missing_column_is_empty_string(self):
        config = dict(CONFIG, columns=[{"name": "sku", "selector": "./td[9]"}])
        result = extract_rows(PAGE, ScrapeConfig.model_validate(config))
        assert [r.data["sku"] for r in result.data] == ["", "", ""]

    def test_no_matching_rows(self):
        config = dict(CONFIG, main_selector="//ul/li")
        result = extract_rows(PAGE, ScrapeConfig.model_validate(config))
        assert result.data == []

    def test_invalid_xpath_is_not_retryable(self):
        config = dict(CONFIG, main_selector="//tr[")
        with pytest.raises(NonRetryableScrapeError, match="Invalid selector"):
            extract_rows(PAGE, ScrapeConfig.model_validate(config))

    @pytest.mark.parametrize("selector", ["count(//tr)", "string(//td)", "boolean(//tr)"])
    def test_scalar_row_selector_is_not_retryable(self, selector):
        config = dict(CONFIG, main_selector=selector)
        with pytest.raises(NonRetryableScrapeError, match="Selector must select elements"):
            extract_rows(PAGE, ScrapeConfig.model_validate(config))


class TestFetchHtml:
    @patch("src.core.page_scraper.requests.get")
    def test_returns_body(self, mock_get):
        mock_get.return_value = _response(200, PAGE)

        assert fetch_html("https://shop.example.com/a", timeout=5) == PAGE
        _, kwargs = mock_get.call_args
        assert kwargs["timeout"] == 5
        assert kwargs["headers"]["User-Agent"]

    @pytest.mark.parametrize(
        "status, retryable",
        [(404, False), (403, False), (429, True), (408, True), (500, True), (503, True)],
    )
    @patch("src.core.page_scraper.requests.get")
    def test_http_errors_are_classified(self, mock_get, status, retryable):
        mock_get.return_value = _response(status)

        with pytest.raises(ScrapeError) as exc_info:
            fetch_html("https://shop.example.com/a")

        assert exc_info.value.retryable is retryable
        assert classify_http_status(status) is retryable

    @patch("src.core.page_scraper.requests.get")
    def test_connection_error_is_retryable(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(ScrapeError) as exc_info:
            fetch_html("https://shop.example.com/a")

        assert exc_info.value.retryable is True

    @patch("src.core.page_scraper.requests.get")
    def test_malformed_url_is_not_retryable(self, mock_get):
        mock_get.side_effect = requests.exceptions.InvalidURL("bad")

        with pytest.raises(NonRetryableScrapeError):
            fetch_html("https://")


class TestHtmlPageScraper:
    @pytest.mark.asyncio
    async def test_uses_fetch_when_js_disabled(self):
        fetch = MagicMock(return_value=PAGE)
        render = MagicMock(return_value=PAGE)
        scraper = HtmlPageScraper(fetch=fetch, render=render)

        result = await scraper.scrape(
            "https://shop.example.com/a", CONFIG, disable_js_rendering=True
        )

        assert len(result.data) == 3
        fetch.assert_called_once_with("https://shop.example.com/a", None)
        render.assert_not_called()

    @pytest.mark.asyncio
    async def test_renders_by_default(self):
        fetch = MagicMock(return_value=PAGE)
        render = MagicMock(return_value=PAGE)
        scraper = HtmlPageScraper(fetch=fetch, render=render)

        await scraper.scrape("https://shop.example.com/a", CONFIG)

        render.assert_called_once_with("https://shop.example.com/a", None)
        fetch.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["not a url", "ftp://shop.example.com/a", ""])
    async def test_malformed_url_fails_fast(self, url):
        fetch = MagicMock()
        scraper = HtmlPageScraper(fetch=fetch, render=fetch)

        with pytest.raises(NonRetryableScrapeError, match="Malformed URL"):
            await scraper.scrape(url, CONFIG)
        fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_config_is_not_retryable(self):
        scraper = HtmlPageScraper(fetch=MagicMock(return_value=PAGE))

        with pytest.raises(NonRetryableScrapeError, match="Invalid scrape config"):
            await scraper.scrape(
                "https://shop.example.com/a",
                {"columns": []},
                disable_js_rendering=True,
            )

    @pytest.mark.asyncio
    async def test_loader_gets_share_of_timeout(self):
        fetch = MagicMock(return_value=PAGE)
        scraper = HtmlPageScraper(fetch=fetch)

        await scraper.scrape(
            "https://shop.example.com/a", CONFIG, disable_js_rendering=True, timeout=10
        )

        url, loader_timeout = fetch.call_args.args
        assert url == "https://shop.example.com/a"
        assert 0 < loader_timeout < 10

    @pytest.mark.asyncio
    async def test_timed_out_caller_waits_for_load_to_end(self):
        finished = threading.Event()

        def slow_fetch(url, timeout):
            time.sleep(0.2)
            finished.set()
            return PAGE

        scraper = HtmlPageScraper(fetch=slow_fetch)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                scraper.scrape(
                    "https://shop.example.com/a", CONFIG, disable_js_rendering=True
                ),
                timeout=0.02,
            )

        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_loader_errors_propagate(self):
        fetch = MagicMock(side_effect=ScrapeError("HTTP 502", retryable=True))
        scraper = HtmlPageScraper(fetch=fetch)

        with pytest.raises(ScrapeError, match="HTTP 502"):
            await scraper.scrape(
                "https://shop.example.com/a", CONFIG, disable_js_rendering=True
            )
