"""Integration tests for the HTTP surface (simulator-backed)."""
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from mosaic_match.config import get_settings
from mosaic_match.services.backend_client import MatchBackendClient
from mosaic_match.services.session_registry import SessionRegistry

HEADERS = {"X-User-Id": "user-abc", "Authorization": "Bearer token-abc"}


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("BACKEND_BASE_URL", "")
    monkeypatch.setenv("EMBEDDING_API_BASE_URL", "")
    monkeypatch.setenv("GCS_BUCKET_NAME", "")
    monkeypatch.setenv("RECORD_BASE_URL", "")
    monkeypatch.setenv("SIMULATOR_SIMULATE_NETWORK_DELAY", "false")
    monkeypatch.setenv("SIMULATOR_INJECT_RANDOM_ERRORS", "false")
    get_settings.cache_clear()

    from mosaic_match.main import app as fastapi_app

    yield fastapi_app
    get_settings.cache_clear()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestMatchingEndpoints:
    def test_anonymous_user_is_not_eligible(self, client):
        response = client.get("/api/v1/matching/status")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "not-eligible"
        assert body["isEligible"] is False

    def test_new_user_is_eligible(self, client):
        body = client.get("/api/v1/matching/status", headers=HEADERS).json()
        assert body["status"] == "eligible"
        assert body["isLoading"] is False
        assert body["waitTimeText"] == "Less than a minute"
        assert body["lastRefreshTime"] is not None

    def test_opt_in_wait_opt_out_cycle(self, client):
        response = client.post("/api/v1/matching/opt-in", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "processing", "message": None}

        # A second opt-in is a no-op
        again = client.post("/api/v1/matching/opt-in", headers=HEADERS).json()
        assert again["success"] is False
        assert again["status"] == "processing"

        forced = client.post(
            "/api/v1/matching/simulator/state",
            headers=HEADERS,
            json={"state": "waiting", "timeInState": 600},
        ).json()
        assert forced["status"] == "waiting"
        assert forced["waitTimeMinutes"] == 10
        assert forced["waitTimeText"] == "10 minutes"

        out = client.post("/api/v1/matching/opt-out", headers=HEADERS).json()
        assert out["success"] is True
        assert out["status"] == "eligible"

    def test_forced_match_reports_score(self, client):
        body = client.post(
            "/api/v1/matching/simulator/state",
            headers=HEADERS,
            json={"state": "matched", "matchScore": 0.92},
        ).json()
        assert body["status"] == "matched"
        assert body["matchScore"] == pytest.approx(0.92)
        assert body["currentMatch"]["user1Id"] == "user-abc"
        assert body["currentMatch"]["channelId"] == "sim-channel-123"

    def test_simulator_state_validation(self, client):
        response = client.post(
            "/api/v1/matching/simulator/state",
            headers=HEADERS,
            json={"state": "exploded"},
        )
        assert response.status_code == 422

    def test_refresh(self, client):
        body = client.post("/api/v1/matching/refresh", headers=HEADERS).json()
        assert body["status"] == "eligible"
        assert body["lastError"] is None

    def test_similar_requires_pipeline(self, client):
        response = client.get("/api/v1/matching/similar", headers=HEADERS)
        assert response.status_code == 503


class TestTraitsEndpoint:
    def test_requires_identity(self, client):
        response = client.post("/api/v1/traits/process", json={"sourceIds": ["conv-0001"]})
        assert response.status_code == 401

    def test_requires_source_ids(self, client):
        response = client.post("/api/v1/traits/process", headers=HEADERS, json={"sourceIds": []})
        assert response.status_code == 422

    def test_unconfigured_pipeline(self, client):
        response = client.post(
            "/api/v1/traits/process", headers=HEADERS, json={"sourceIds": ["conv-0001"]}
        )
        assert response.status_code == 503

    def test_process_with_configured_pipeline(self, app, client, fetcher):
        fetcher.add_source(
            "conv-0001",
            [{"username": "me", "isMe": True}, {"username": "alex"}],
            {"me": {"essence_profile": ["kind", "funny"]}},
        )
        fetcher.add_source(
            "conv-0002",
            [{"username": "sam"}, {"username": "me"}],
            {"X": {"essence_profile": ["loud"]}, "Z": {"essence_profile": ["kind", "curious"]}},
        )
        submitted = {}

        def handler(request):
            submitted.update(json.loads(request.content))
            return httpx.Response(
                200, json={"success": True, "embeddingDimension": 1536, "traitsCount": 3}
            )

        backend = MatchBackendClient(
            "https://backend.test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        app.state.registry = SessionRegistry(
            get_settings(), client=backend, fetcher=fetcher, autostart=False
        )

        response = client.post(
            "/api/v1/traits/process",
            headers=HEADERS,
            json={"sourceIds": ["conv-0001", "conv-0002"]},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["combinedTraits"] == ["kind", "funny", "curious"]
        assert body["data"]["embeddingDimension"] == 1536
        assert submitted == {"userId": "user-abc", "traits": ["kind", "funny", "curious"]}
