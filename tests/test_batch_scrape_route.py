"""Tests for the /batches HTTP endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreError,
    UrlResultNotFoundError,
)
from src.main import app
from src.routers.batches import get_batch_service
from src.services.batch_scrape_service import BatchScrapeService
from tests.conftest import SCRAPE_CONFIG, FakeScraper

URLS = ["https://shop.example.com/a", "https://shop.example.com/b"]


@pytest.fixture()
def real_service(job_store, aggregator):
    return BatchScrapeService(job_store, FakeScraper(), aggregator)


@pytest.fixture()
def client(real_service):
    """Client wired to a service on the in-memory store (no lifespan)."""
    app.dependency_overrides[get_batch_service] = lambda: real_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def mock_service():
    return MagicMock(spec=BatchScrapeService)


@pytest.fixture()
def mock_client(mock_service):
    app.dependency_overrides[get_batch_service] = lambda: mock_service
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


class TestCreateAndRead:
    def test_create_batch_returns_201(self, client):
        resp = client.post(
            "/batches",
            json={
                "config": SCRAPE_CONFIG,
                "urls": URLS,
                "name": "Shop",
                "settings": {"max_concurrency": 5},
            },
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "pending"
        assert body["name"] == "Shop"
        assert body["settings"]["max_concurrency"] == 5
        assert body["settings"]["delay_between_requests"] == 1000
        assert body["statistics"]["total"] == 2

        resp = client.get(f"/batches/{body['id']}")
        assert resp.status_code == 200
        assert resp.json()["urls"] == URLS

        resp = client.get(f"/batches/{body['id']}/urls")
        assert [r["url"] for r in resp.json()] == URLS
        assert all(r["status"] == "pending" for r in resp.json())

    def test_create_batch_invalid_settings(self, client):
        resp = client.post(
            "/batches",
            json={"config": SCRAPE_CONFIG, "urls": URLS, "settings": {"max_concurrency": 0}},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    def test_create_batch_empty_urls(self, client):
        resp = client.post("/batches", json={"config": SCRAPE_CONFIG, "urls": []})
        assert resp.status_code == 422

    def test_list_batches_filters(self, client):
        client.post("/batches", json={"config": SCRAPE_CONFIG, "urls": URLS, "name": "Shoes"})
        client.post("/batches", json={"config": SCRAPE_CONFIG, "urls": URLS, "name": "Hats"})

        assert len(client.get("/batches").json()) == 2
        names = [j["name"] for j in client.get("/batches", params={"q": "hat"}).json()]
        assert names == ["Hats"]
        assert client.get("/batches", params={"status": "running"}).json() == []

    def test_list_batches_rejects_unknown_status(self, client):
        resp = client.get("/batches", params={"status": "sleeping"})
        assert resp.status_code == 422

    def test_get_missing_batch_is_404(self, client):
        resp = client.get("/batches/missing")
        assert resp.status_code == 404
        assert "missing" in resp.json()["message"]

    def test_statistics_and_results_of_new_batch(self, client):
        batch_id = client.post(
            "/batches", json={"config": SCRAPE_CONFIG, "urls": URLS}
        ).json()["id"]

        stats = client.get(f"/batches/{batch_id}/statistics").json()
        assert stats["pending"] == 2
        assert client.get(f"/batches/{batch_id}/results").json() == []

    def test_delete_batch(self, client):
        batch_id = client.post(
            "/batches", json={"config": SCRAPE_CONFIG, "urls": URLS}
        ).json()["id"]

        assert client.delete(f"/batches/{batch_id}").status_code == 204
        assert client.get(f"/batches/{batch_id}").status_code == 404
        assert client.delete(f"/batches/{batch_id}").status_code == 404

    def test_start_from_cancelled_is_409(self, client, job_store):
        batch_id = client.post(
            "/batches", json={"config": SCRAPE_CONFIG, "urls": URLS}
        ).json()["id"]
        job_store.update_job(batch_id, status="cancelled")

        resp = client.post(f"/batches/{batch_id}/start")
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"


class TestValidateUrls:
    def test_validate_urls(self, client):
        text = "https://a.example.com/1\nnot a url\nhttps://A.example.com/1, http://b.example.com"
        resp = client.post("/batches/validate-urls", json={"text": text})
        assert resp.status_code == 200
        assert resp.json() == {
            "valid": ["https://a.example.com/1", "http://b.example.com"],
            "invalid": ["not a url"],
            "duplicates_removed": 1,
        }


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc, status, error",
        [
            (JobNotFoundError("b1"), 404, "not_found"),
            (InvalidTransitionError("pause", "completed"), 409, "invalid_transition"),
            (StoreError("disk I/O error"), 503, "store_error"),
            (ValueError("URL list cannot be empty"), 400, "bad_request"),
            (RuntimeError("boom"), 500, "internal_error"),
        ],
    )
    def test_lifecycle_errors(self, mock_client, mock_service, exc, status, error):
        mock_service.pause = AsyncMock(side_effect=exc)

        resp = mock_client.post("/batches/b1/pause")

        assert resp.status_code == status
        body = resp.json()
        assert body["error"] == error
        assert body["request_id"]

    def test_retry_url_unknown_row(self, mock_client, mock_service):
        mock_service.retry_url = AsyncMock(side_effect=UrlResultNotFoundError("u1"))

        resp = mock_client.post("/batches/b1/urls/u1/retry")

        assert resp.status_code == 404
        mock_service.retry_url.assert_awaited_once_with("b1", "u1")

    def test_retry_failed_reports_count(self, mock_client, mock_service):
        mock_service.retry_failed_urls = AsyncMock(return_value=3)

        resp = mock_client.post("/batches/b1/retry-failed")

        assert resp.status_code == 200
        assert resp.json() == {"batch_id": "b1", "reset": 3}

    def test_events_for_missing_batch(self, mock_client, mock_service):
        mock_service.stream.side_effect = JobNotFoundError("b1")

        assert mock_client.get("/batches/b1/events").status_code == 404


class TestMiddlewareAndHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_request_id_header(self, client):
        resp = client.get("/health")
        assert "x-request-id" in resp.headers

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr("src.core.auth.settings.API_KEY", "secret")

        assert client.get("/batches").status_code == 403
        assert client.get("/batches", headers={"X-API-Key": "secret"}).status_code == 200
        assert client.get("/health").status_code == 200
